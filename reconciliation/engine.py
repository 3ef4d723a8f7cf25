"""Reconciliation Validator.

Independently compares what the ledger holds under each upstream invoice
with the provider's authoritative total for it. Strictly read-only: it never
touches billing state, and drift is reported, never corrected.

Exposes high-level functions:
- build_report(upstream_invoices, transactions, thresholds) -> DiscrepancyReport
- reconcile_period(store, start, end, thresholds) -> DiscrepancyReport
- save_report(report, store, artifacts_dir) -> DataReference
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from core.config import AMOUNT_TOLERANCE
from core.errors import ReconciliationDrift
from core.observability.logging import get_logger, with_correlation
from models.canonical import (
    CategoryDiscrepancy,
    DiscrepancyLine,
    DiscrepancyReport,
    DriftClassification,
    Transaction,
    UpstreamInvoice,
)
from models.refs import DataReference
from storage.artifacts import put_json


logger = get_logger(__name__)

HUNDRED = Decimal("100")
PCT_PLACES = Decimal("0.0001")


# =============================================================================
# Configuration
# =============================================================================

@dataclass(frozen=True)
class DriftThresholds:
    """Classification thresholds (percentages are in percent, e.g. 1.0 = 1%)."""
    tolerance_pct: Decimal = Decimal("1.0")
    absolute_tolerance: Decimal = AMOUNT_TOLERANCE
    upstream_only_pct: Decimal = Decimal("10.0")

    @classmethod
    def from_settings(cls, settings) -> "DriftThresholds":
        return cls(
            tolerance_pct=settings.tolerance_pct,
            absolute_tolerance=settings.absolute_tolerance,
            upstream_only_pct=settings.upstream_only_pct,
        )


# =============================================================================
# Utility Functions
# =============================================================================

def amounts_match(a: Decimal, b: Decimal, tolerance: Decimal = AMOUNT_TOLERANCE) -> bool:
    """Check if two amounts match within tolerance."""
    return abs(a - b) <= tolerance


def percent_delta(local: Decimal, authoritative: Decimal) -> Decimal:
    """(local - authoritative) as a percentage of authoritative.

    A zero authoritative total gives 0 when nothing is held locally either,
    otherwise +/-100.
    """
    delta = local - authoritative
    if authoritative == 0:
        if delta == 0:
            return Decimal("0")
        return HUNDRED if delta > 0 else -HUNDRED
    return delta / abs(authoritative) * HUNDRED


def classify_drift(
    local: Decimal,
    authoritative: Decimal,
    thresholds: DriftThresholds,
    has_local_transactions: bool = True,
) -> Tuple[Decimal, Decimal, DriftClassification]:
    """Return (delta, pct_delta, classification)."""
    delta = local - authoritative
    pct = percent_delta(local, authoritative)

    if amounts_match(local, authoritative, thresholds.absolute_tolerance) or abs(pct) <= thresholds.tolerance_pct:
        classification = DriftClassification.WITHIN_TOLERANCE
    elif delta < 0 and (not has_local_transactions or abs(pct) >= thresholds.upstream_only_pct):
        classification = DriftClassification.UPSTREAM_ONLY_CHARGE_SUSPECTED
    else:
        classification = DriftClassification.NEEDS_REVIEW

    return delta, pct.quantize(PCT_PLACES, rounding=ROUND_HALF_UP), classification


def _sum(values) -> Decimal:
    return sum(values, Decimal("0"))


# =============================================================================
# Report building
# =============================================================================

def build_report(
    upstream_invoices: List[UpstreamInvoice],
    transactions: List[Transaction],
    thresholds: DriftThresholds,
    period_start: date,
    period_end: date,
    run_id: Optional[str] = None,
) -> DiscrepancyReport:
    """Compare local sums per upstream invoice and per invoice type."""
    by_upstream: Dict[str, List[Transaction]] = defaultdict(list)
    for txn in transactions:
        if txn.upstream_invoice_id:
            by_upstream[txn.upstream_invoice_id].append(txn)

    lines: List[DiscrepancyLine] = []
    for upstream in upstream_invoices:
        local_txns = by_upstream.get(upstream.upstream_invoice_id, [])
        local_total = _sum(t.amount for t in local_txns)
        delta, pct, classification = classify_drift(
            local_total, upstream.total_amount, thresholds, has_local_transactions=bool(local_txns)
        )
        lines.append(DiscrepancyLine(
            upstream_invoice_id=upstream.upstream_invoice_id,
            invoice_type=upstream.invoice_type,
            authoritative_total=upstream.total_amount,
            local_total=local_total,
            claimed_billed_total=_sum(t.billed_amount for t in local_txns if t.is_claimed),
            delta=delta,
            pct_delta=pct,
            classification=classification,
            transaction_count=len(local_txns),
            unattributed_count=sum(1 for t in local_txns if t.tenant_id is None),
            unclaimed_count=sum(1 for t in local_txns if not t.is_claimed),
        ))

    categories: List[CategoryDiscrepancy] = []
    by_type: Dict[str, List[DiscrepancyLine]] = defaultdict(list)
    for line in lines:
        by_type[line.invoice_type].append(line)
    for invoice_type in sorted(by_type):
        group = by_type[invoice_type]
        local_total = _sum(l.local_total for l in group)
        authoritative = _sum(l.authoritative_total for l in group)
        delta, pct, classification = classify_drift(
            local_total, authoritative, thresholds,
            has_local_transactions=any(l.transaction_count for l in group),
        )
        categories.append(CategoryDiscrepancy(
            invoice_type=invoice_type,
            authoritative_total=authoritative,
            local_total=local_total,
            delta=delta,
            pct_delta=pct,
            classification=classification,
        ))

    return DiscrepancyReport(
        report_id=str(uuid.uuid4()),
        run_id=run_id,
        period_start=period_start,
        period_end=period_end,
        tolerance_pct=thresholds.tolerance_pct,
        absolute_tolerance=thresholds.absolute_tolerance,
        upstream_only_pct=thresholds.upstream_only_pct,
        lines=lines,
        categories=categories,
    )


def reconcile_period(
    store,
    period_start: date,
    period_end: date,
    thresholds: Optional[DriftThresholds] = None,
    run_id: Optional[str] = None,
) -> DiscrepancyReport:
    """Reconcile every upstream invoice dated within the period.

    Reads from ``store`` only. Each drifted line is logged as a
    ReconciliationDrift warning.
    """
    thresholds = thresholds or DriftThresholds()

    with with_correlation(stage="reconcile", run_id=run_id, period=f"{period_start}..{period_end}"):
        upstream_invoices = store.list_upstream_invoices(start_date=period_start, end_date=period_end)
        transactions = store.list_transactions(
            upstream_invoice_ids=[u.upstream_invoice_id for u in upstream_invoices]
        )
        report = build_report(upstream_invoices, transactions, thresholds, period_start, period_end, run_id)

        for line in report.drifted:
            drift = ReconciliationDrift(
                line.upstream_invoice_id, line.delta, line.pct_delta, line.classification.value
            )
            logger.warning(drift.message, extra_fields=drift.details)

        logger.info(
            "Reconciliation complete",
            extra_fields={
                "upstream_invoices": len(report.lines),
                "drifted": len(report.drifted),
                "report_id": report.report_id,
            },
        )
    return report


def save_report(
    report: DiscrepancyReport,
    store=None,
    artifacts_dir: Optional[Path] = None,
) -> Optional[DataReference]:
    """Persist a report to the ledger and/or export it as a JSON artifact."""
    if store is not None:
        store.save_discrepancy_report(report)
    if artifacts_dir is None:
        return None
    path = Path(artifacts_dir) / "reconciliation" / f"{report.period_start}_{report.period_end}_{report.report_id}.json"
    return put_json(report, path)
