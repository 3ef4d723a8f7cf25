"""
Rule matching and specificity.

A rule is a candidate for a transaction when its tenant is the
transaction's tenant or global, its fee category is the transaction's or a
wildcard, and its condition (if any) holds.

Candidates are ranked lexicographically, never additively:
    1. tenant-specific beats global
    2. category-specific beats wildcard
    3. a condition constraining more fields beats one constraining fewer,
       which beats no condition
The lowest rule id breaks any remaining tie.
"""

from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from models.canonical import (
    PricingRule,
    RuleCondition,
    RuleType,
    Transaction,
    parse_decimal,
)


HUNDRED = Decimal("100")


def _detail_decimal(txn: Transaction, key: str) -> Optional[Decimal]:
    value = txn.details.get(key)
    if value is None:
        return None
    try:
        return parse_decimal(value)
    except (InvalidOperation, ValueError):
        return None


def _detail_str(txn: Transaction, key: str) -> Optional[str]:
    value = txn.details.get(key)
    if value is None or value == "":
        return None
    return str(value)


def condition_matches(condition: RuleCondition, txn: Transaction) -> bool:
    """All constrained fields must hold. A constrained field the transaction
    carries no value for does not hold.

    Ranges are half-open: ``min <= x < max``.
    """
    if condition.reference_types and txn.reference_type not in condition.reference_types:
        return False

    if condition.min_amount is not None and txn.amount < condition.min_amount:
        return False
    if condition.max_amount is not None and txn.amount >= condition.max_amount:
        return False

    if condition.weight_min_oz is not None or condition.weight_max_oz is not None:
        weight = _detail_decimal(txn, "weight_oz")
        if weight is None:
            return False
        if condition.weight_min_oz is not None and weight < condition.weight_min_oz:
            return False
        if condition.weight_max_oz is not None and weight >= condition.weight_max_oz:
            return False

    if condition.ship_option_ids:
        ship_option = _detail_str(txn, "ship_option_id")
        if ship_option is None or ship_option not in condition.ship_option_ids:
            return False

    if condition.states:
        state = _detail_str(txn, "state")
        if state is None or state not in condition.states:
            return False

    if condition.countries:
        country = _detail_str(txn, "country")
        if country is None or country not in condition.countries:
            return False

    return True


def rule_applies(rule: PricingRule, txn: Transaction) -> bool:
    if rule.tenant_id is not None and rule.tenant_id != txn.tenant_id:
        return False
    if rule.fee_category is not None and rule.fee_category != txn.fee_category:
        return False
    if rule.condition is not None and not condition_matches(rule.condition, txn):
        return False
    return True


def specificity(rule: PricingRule) -> Tuple[int, int, int]:
    """Lexicographic specificity key; larger is more specific."""
    return (
        1 if rule.tenant_id is not None else 0,
        1 if rule.fee_category is not None else 0,
        rule.condition.constrained_fields() if rule.condition is not None else 0,
    )


def select_rule(
    rules: List[PricingRule], txn: Transaction
) -> Tuple[Optional[PricingRule], List[int]]:
    """Pick the most specific applicable rule.

    Returns (winner, ids of every rule tied at the winner's specificity).
    More than one tied id means the choice fell to the lowest-id tie-break.
    """
    candidates = [r for r in rules if rule_applies(r, txn)]
    if not candidates:
        return None, []

    best = max(specificity(r) for r in candidates)
    tied = sorted(r.rule_id for r in candidates if specificity(r) == best)
    winner = next(r for r in candidates if r.rule_id == tied[0])
    return winner, tied


def apply_rule(base: Decimal, rule: Optional[PricingRule]) -> Decimal:
    """Billed amount for ``base`` under ``rule``. No rounding happens here."""
    if rule is None:
        return base
    if rule.rule_type == RuleType.PERCENTAGE:
        return base * (1 + rule.value / HUNDRED)
    return base + rule.value
