"""Attribution Resolver.

Assigns an owning tenant to each unattributed transaction by walking the
strategy chain for its reference type:

- first Resolved wins
- otherwise, any Pending sends the transaction to the pending queue
- otherwise the transaction is unattributable (reviewed, never billed)

A tenant, once set, is never changed here.

Example:
    resolver = TenantResolver(store, queue=PendingQueue(store))
    stats = resolver.run_pass()
"""

from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from core.errors import UnattributableTransaction
from core.observability.logging import get_logger, with_correlation
from models.canonical import AttributionStatus, OwnedEntityKind, ReferenceType, Transaction
from tenant_resolver.models import (
    AttributionDecision,
    AttributionStats,
    AttributionStrategy,
    NoMatch,
    OwnedEntityLookup,
    Pending,
    Resolved,
)
from tenant_resolver.queue import PendingQueue
from tenant_resolver.strategies import DEFAULT_CHAINS


logger = get_logger(__name__)


class MemoizedLookup:
    """Per-pass lookup cache.

    Every transaction sharing a reference within one pass sees the same
    lookup result.
    """

    def __init__(self, lookup: OwnedEntityLookup):
        self._lookup = lookup
        self._owners: Dict[Tuple[OwnedEntityKind, str], Optional[str]] = {}
        self._accounts: Dict[str, Optional[str]] = {}

    def owner_of(self, kind: OwnedEntityKind, entity_id: str) -> Optional[str]:
        key = (kind, entity_id)
        if key not in self._owners:
            self._owners[key] = self._lookup.owner_of(kind, entity_id)
        return self._owners[key]

    def tenant_for_account(self, external_account_id: str) -> Optional[str]:
        if external_account_id not in self._accounts:
            self._accounts[external_account_id] = self._lookup.tenant_for_account(external_account_id)
        return self._accounts[external_account_id]


class TenantResolver:
    """Resolves owning tenants for ledger transactions."""

    def __init__(
        self,
        store,
        queue: Optional[PendingQueue] = None,
        chains: Optional[Dict[ReferenceType, List[AttributionStrategy]]] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Args:
            store: LedgerStore (transactions + owned-entity lookups)
            queue: Pending-dependency queue; defaults to one over ``store``
            chains: Strategy chain per reference type
            clock: Source of "now" for queue scheduling
        """
        self.store = store
        self.queue = queue or PendingQueue(store)
        self.chains = chains or DEFAULT_CHAINS
        self.clock = clock

    def resolve(self, txn: Transaction, lookup: OwnedEntityLookup) -> AttributionDecision:
        """Walk the chain for one transaction. Does not write anything."""
        if txn.tenant_id is not None:
            return AttributionDecision(
                transaction_id=txn.transaction_id,
                status=AttributionStatus.ATTRIBUTED,
                tenant_id=txn.tenant_id,
                strategy=txn.attribution_strategy,
            )

        reasons: List[str] = []
        pending: Optional[Pending] = None

        for strategy in self.chains.get(txn.reference_type, []):
            if not strategy.applies(txn):
                reasons.append(f"{strategy.name}: not applicable")
                continue
            outcome = strategy.resolve(txn, lookup)
            if isinstance(outcome, Resolved):
                return AttributionDecision(
                    transaction_id=txn.transaction_id,
                    status=AttributionStatus.ATTRIBUTED,
                    tenant_id=outcome.tenant_id,
                    strategy=strategy.name,
                    reasons=reasons,
                )
            if isinstance(outcome, Pending):
                reasons.append(f"{strategy.name}: {outcome.reason}")
                if pending is None:
                    pending = outcome
            elif isinstance(outcome, NoMatch):
                reasons.append(f"{strategy.name}: {outcome.reason}")

        if pending is not None:
            return AttributionDecision(
                transaction_id=txn.transaction_id,
                status=AttributionStatus.PENDING,
                dependency_key=pending.dependency_key,
                reasons=reasons,
            )
        return AttributionDecision(
            transaction_id=txn.transaction_id,
            status=AttributionStatus.UNATTRIBUTABLE,
            reasons=reasons or ["no strategy for reference type"],
        )

    def run_pass(self, transaction_ids: Optional[List[str]] = None) -> AttributionStats:
        """Attribute every unresolved or pending transaction that is due."""
        now = self.clock()
        lookup = MemoizedLookup(self.store)
        stats = AttributionStats()

        candidates = self.store.list_transactions(
            attribution_statuses=[AttributionStatus.UNRESOLVED, AttributionStatus.PENDING],
        )
        if transaction_ids is not None:
            wanted = set(transaction_ids)
            candidates = [t for t in candidates if t.transaction_id in wanted]

        for txn in sorted(candidates, key=lambda t: t.transaction_id):
            if txn.tenant_id is not None:
                continue
            if txn.attribution_status == AttributionStatus.PENDING and not self.queue.is_due(txn.transaction_id, now):
                stats.deferred += 1
                continue

            with with_correlation(stage="attribute", transaction_id=txn.transaction_id):
                decision = self.resolve(txn, lookup)
                self._apply(txn, decision, now, stats)

        logger.info("Attribution pass complete", extra_fields=stats.to_dict())
        return stats

    def _apply(self, txn: Transaction, decision: AttributionDecision, now: datetime, stats: AttributionStats) -> None:
        if decision.status == AttributionStatus.ATTRIBUTED:
            self.store.save_attribution(
                txn.transaction_id,
                AttributionStatus.ATTRIBUTED,
                tenant_id=decision.tenant_id,
                strategy=decision.strategy,
            )
            self.queue.clear(txn.transaction_id)
            stats.attributed += 1
            return

        if decision.status == AttributionStatus.PENDING:
            item = self.queue.defer(
                txn.transaction_id,
                decision.dependency_key or "",
                "; ".join(decision.reasons),
                now,
            )
            if item is not None:
                self.store.save_attribution(txn.transaction_id, AttributionStatus.PENDING)
                stats.pending += 1
                return
            decision.reasons.append("pending dependency budget exhausted")

        error = UnattributableTransaction(txn.transaction_id, decision.reasons)
        logger.warning(
            error.message,
            extra_fields={
                "transaction_id": txn.transaction_id,
                "reference_type": txn.reference_type.value,
                "reference_id": txn.reference_id,
                "reasons": decision.reasons,
            },
        )
        self.store.save_attribution(txn.transaction_id, AttributionStatus.UNATTRIBUTABLE)
        self.queue.clear(txn.transaction_id)
        stats.unattributable += 1
        stats.unattributable_ids.append(txn.transaction_id)
