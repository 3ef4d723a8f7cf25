"""Preflight data-quality checks for one tenant-period.

Run before assembly. BLOCK checks mean the invoice would be wrong or
incomplete if drafted now; WARN checks are reported but do not stop it.

Checks:
    P1 unpriced         attributed lines the pricing stage has not reached (BLOCK)
    P2 unconfigured     lines billed at base because no rule matched (WARN)
    P3 storage_item     storage lines without an inventory item (BLOCK)
    P4 return_order     return lines without an order reference (BLOCK)
    P5 reference_id     shipping, receiving and service lines without a reference (BLOCK)
    P6 credit_reason    credits without a reason (WARN)
    P7 pending          period lines waiting on an owned entity to sync (WARN)
    P8 unattributable   period lines no strategy could attribute (WARN)
    P9 unresolved       period lines attribution has not reached (WARN)

P7-P9 cover lines with no tenant yet, so they count the whole period.
"""

from dataclasses import dataclass, field
from typing import Callable, List

from core.observability.logging import get_logger
from invoice_assembler.models import AssemblyPeriod
from models.canonical import AttributionStatus, FeeCategory, PricingStatus, Transaction
from tenant_resolver.strategies import extract_order_reference, storage_inventory_item


logger = get_logger(__name__)

SAMPLE_SIZE = 10

BLOCK = "BLOCK"
WARN = "WARN"

REFERENCE_REQUIRED = {
    FeeCategory.SHIPPING,
    FeeCategory.PICK_FEE,
    FeeCategory.B2B_FEE,
    FeeCategory.RECEIVING,
    FeeCategory.ADDITIONAL_SERVICE,
}
RETURN_CATEGORIES = {FeeCategory.RETURN_PROCESSING, FeeCategory.RETURN_LABEL}


@dataclass
class PreflightCheck:
    check_id: str
    severity: str
    message: str
    count: int = 0
    sample_ids: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.count == 0

    def to_dict(self) -> dict:
        return {
            "check_id": self.check_id,
            "severity": self.severity,
            "passed": self.passed,
            "message": self.message,
            "evidence": {"count": self.count, "sample_ids": self.sample_ids},
        }


@dataclass
class PreflightReport:
    tenant_id: str
    period_key: str
    line_count: int = 0
    checks: List[PreflightCheck] = field(default_factory=list)

    @property
    def blocking(self) -> List[PreflightCheck]:
        return [c for c in self.checks if c.severity == BLOCK and not c.passed]

    @property
    def warnings(self) -> List[PreflightCheck]:
        return [c for c in self.checks if c.severity == WARN and not c.passed]

    @property
    def passed(self) -> bool:
        return not self.blocking

    def check(self, check_id: str) -> PreflightCheck:
        for c in self.checks:
            if c.check_id == check_id:
                return c
        raise KeyError(check_id)

    def to_dict(self) -> dict:
        return {
            "tenant_id": self.tenant_id,
            "period_key": self.period_key,
            "passed": self.passed,
            "line_count": self.line_count,
            "checks": [c.to_dict() for c in self.checks],
        }


def _check(
    check_id: str,
    severity: str,
    message: str,
    lines: List[Transaction],
    failing: Callable[[Transaction], bool],
) -> PreflightCheck:
    hits = [t.transaction_id for t in lines if failing(t)]
    return PreflightCheck(
        check_id=check_id,
        severity=severity,
        message=f"{len(hits)} {message}" if hits else f"No {message}",
        count=len(hits),
        sample_ids=hits[:SAMPLE_SIZE],
    )


def _has_credit_reason(txn: Transaction) -> bool:
    return any(txn.details.get(key) not in (None, "") for key in ("Comment", "CreditReason"))


def run_preflight(store, tenant_id: str, period: AssemblyPeriod) -> PreflightReport:
    """Check the lines the next assembly of ``tenant_id`` would claim."""
    upstream_ids = list(period.upstream_invoice_ids) if period.upstream_invoice_ids else None
    lines = store.list_transactions(
        tenant_id=tenant_id,
        attribution_statuses=[AttributionStatus.ATTRIBUTED],
        upstream_invoice_ids=upstream_ids,
        start_date=period.period_start,
        end_date=period.period_end,
        unclaimed_only=True,
    )
    unassigned = store.list_transactions(
        attribution_statuses=[
            AttributionStatus.PENDING,
            AttributionStatus.UNATTRIBUTABLE,
            AttributionStatus.UNRESOLVED,
        ],
        upstream_invoice_ids=upstream_ids,
        start_date=period.period_start,
        end_date=period.period_end,
    )

    def in_status(status: AttributionStatus) -> Callable[[Transaction], bool]:
        return lambda t: t.attribution_status == status

    report = PreflightReport(tenant_id=tenant_id, period_key=period.key, line_count=len(lines))
    report.checks = [
        _check("P1", BLOCK, "lines not priced yet", lines,
               lambda t: t.pricing_status == PricingStatus.UNPRICED),
        _check("P2", WARN, "lines billed at base amount (no matching rule)", lines,
               lambda t: t.pricing_status == PricingStatus.UNCONFIGURED),
        _check("P3", BLOCK, "storage lines without an inventory item", lines,
               lambda t: t.fee_category == FeeCategory.STORAGE and storage_inventory_item(t) is None),
        _check("P4", BLOCK, "return lines without an order reference", lines,
               lambda t: t.fee_category in RETURN_CATEGORIES and not extract_order_reference(t)),
        _check("P5", BLOCK, "lines without a reference id", lines,
               lambda t: t.fee_category in REFERENCE_REQUIRED and not (t.reference_id or "").strip()),
        _check("P6", WARN, "credits without a reason", lines,
               lambda t: t.fee_category == FeeCategory.CREDIT and not _has_credit_reason(t)),
        _check("P7", WARN, "period lines pending an owned-entity sync", unassigned,
               in_status(AttributionStatus.PENDING)),
        _check("P8", WARN, "period lines left unattributable", unassigned,
               in_status(AttributionStatus.UNATTRIBUTABLE)),
        _check("P9", WARN, "period lines not attributed yet", unassigned,
               in_status(AttributionStatus.UNRESOLVED)),
    ]

    log = logger.info if report.passed else logger.warning
    log(
        f"Preflight {'passed' if report.passed else 'blocked'} for {tenant_id}",
        extra_fields={
            "tenant_id": tenant_id,
            "period": report.period_key,
            "lines": report.line_count,
            "blocking": [c.check_id for c in report.blocking],
            "warnings": [c.check_id for c in report.warnings],
        },
    )
    return report
