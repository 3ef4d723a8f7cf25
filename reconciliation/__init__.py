"""Reconciliation - ledger totals against the provider's authoritative invoices."""

from reconciliation.engine import (
    DriftThresholds,
    build_report,
    classify_drift,
    reconcile_period,
    save_report,
)

__all__ = [
    "DriftThresholds",
    "build_report",
    "classify_drift",
    "reconcile_period",
    "save_report",
]
