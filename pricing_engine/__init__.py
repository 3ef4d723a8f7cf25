"""Pricing Engine - most-specific-rule markup over a frozen rule snapshot."""

from pricing_engine.engine import PricingEngine
from pricing_engine.models import PricingResult, PricingStats, RuleSetSnapshot
from pricing_engine.rules import (
    apply_rule,
    condition_matches,
    rule_applies,
    select_rule,
    specificity,
)

__all__ = [
    "PricingEngine",
    "PricingResult",
    "PricingStats",
    "RuleSetSnapshot",
    "apply_rule",
    "condition_matches",
    "rule_applies",
    "select_rule",
    "specificity",
]
