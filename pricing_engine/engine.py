"""
Pricing Engine

Computes billed amounts for attributed transactions against a frozen
RuleSetSnapshot. Evaluation is pure: the same transaction and snapshot
always give the same billed amount.

- percentage rule: billed = base * (1 + value / 100)
- fixed rule:      billed = base + value (negative value = waiver)
- no rule:         billed = base, reported as an unconfigured rate

Example:
    snapshot = RuleSetSnapshot.freeze(store.list_pricing_rules(), as_of=run_date)
    engine = PricingEngine(snapshot)
    result = engine.price(txn)
"""

from typing import Iterable, List, Optional

from core.errors import RuleAmbiguity, UnconfiguredRate
from core.observability.logging import get_logger
from models.canonical import PricingStatus, Transaction
from pricing_engine.models import PricingResult, PricingStats, RuleSetSnapshot
from pricing_engine.rules import apply_rule, select_rule


logger = get_logger(__name__)


class PricingEngine:
    """Prices transactions against one rule snapshot."""

    def __init__(self, snapshot: RuleSetSnapshot):
        self.snapshot = snapshot
        self._rules = list(snapshot.rules)

    def price(self, txn: Transaction) -> PricingResult:
        """Price one attributed transaction. Writes nothing."""
        if txn.tenant_id is None:
            raise ValueError(f"Transaction {txn.transaction_id} is not attributed")

        rule, tied = select_rule(self._rules, txn)

        if rule is None:
            return PricingResult(
                transaction_id=txn.transaction_id,
                base_amount=txn.amount,
                billed_amount=txn.amount,
                rule_id=None,
                status=PricingStatus.UNCONFIGURED,
            )

        return PricingResult(
            transaction_id=txn.transaction_id,
            base_amount=txn.amount,
            billed_amount=apply_rule(txn.amount, rule),
            rule_id=rule.rule_id,
            status=PricingStatus.PRICED,
            tied_rule_ids=tuple(tied),
        )

    def price_batch(self, transactions: Iterable[Transaction]) -> PricingStats:
        """Price every attributed, unclaimed transaction in the batch.

        Claimed or unattributed transactions are skipped.
        """
        stats = PricingStats()
        for txn in transactions:
            if txn.tenant_id is None or txn.is_claimed:
                stats.skipped += 1
                continue

            result = self.price(txn)
            stats.results.append(result)

            if result.status == PricingStatus.UNCONFIGURED:
                stats.unconfigured += 1
                warning = UnconfiguredRate(txn.transaction_id, txn.tenant_id, txn.fee_category.value)
                logger.warning(
                    f"{warning.message}; billing at cost",
                    extra_fields=warning.details,
                )
            else:
                stats.priced += 1

            if result.is_ambiguous:
                stats.ambiguous += 1
                warning = RuleAmbiguity(txn.transaction_id, result.rule_id, list(result.tied_rule_ids))
                logger.warning(warning.message, extra_fields=warning.details)

        return stats

    def run(self, store, tenant_ids: Optional[List[str]] = None) -> PricingStats:
        """Price and persist every attributed, unclaimed ledger transaction."""
        transactions = store.list_transactions(unclaimed_only=True)
        transactions = [t for t in transactions if t.tenant_id is not None]
        if tenant_ids is not None:
            wanted = set(tenant_ids)
            transactions = [t for t in transactions if t.tenant_id in wanted]

        stats = self.price_batch(transactions)
        for result in stats.results:
            store.save_pricing(result.transaction_id, result.billed_amount, result.rule_id, result.status)

        logger.info(
            "Pricing pass complete",
            extra_fields={**stats.to_dict(), "rule_snapshot_id": self.snapshot.snapshot_id},
        )
        return stats
