"""Billing run activities.

Each activity opens the ledger, runs one stage of a BillingRun and returns
plain counts. Raw feed pages reach ``ingest_snapshots`` as serialized
DataReferences so the workflow history never carries charge records.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from temporalio import activity

from core.audit.events import AuditEventType, AuditLogger, LedgerAuditBackend
from core.config import get_settings
from invoice_assembler.models import AssemblyPeriod
from ledger.db import LedgerStore
from models.canonical import parse_date
from models.refs import DataReference
from pipeline.run import BillingRun


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class PeriodInput:
    """Billing period as passed through Temporal (ISO dates)."""
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    upstream_invoice_ids: List[str] = field(default_factory=list)

    def to_period(self) -> AssemblyPeriod:
        return AssemblyPeriod(
            period_start=parse_date(self.period_start),
            period_end=parse_date(self.period_end),
            upstream_invoice_ids=tuple(self.upstream_invoice_ids),
        )


@dataclass
class IngestSnapshotsInput:
    """Input for ingest_snapshots.

    Attributes:
        run_id: Billing run id
        snapshot_refs: Serialized DataReferences to raw feed snapshots
        upstream_invoices: Raw provider invoices for reconciliation
        db_path: Ledger path override
    """
    run_id: str
    snapshot_refs: List[dict] = field(default_factory=list)
    upstream_invoices: List[dict] = field(default_factory=list)
    db_path: Optional[str] = None


@dataclass
class IngestSnapshotsOutput:
    ingested: int
    updated: int
    skipped_claimed: int
    malformed: int
    duplicates: int
    upstream_invoices: int


@dataclass
class StageInput:
    run_id: str
    db_path: Optional[str] = None


@dataclass
class AttributeOutput:
    attributed: int
    pending: int
    deferred: int
    unattributable: int


@dataclass
class PriceInput:
    run_id: str
    as_of: str
    db_path: Optional[str] = None


@dataclass
class PriceOutput:
    rule_snapshot_id: str
    rule_count: int
    priced: int
    unconfigured: int
    ambiguous: int


@dataclass
class AssembleInput:
    run_id: str
    period: PeriodInput
    rule_snapshot_id: Optional[str] = None
    db_path: Optional[str] = None


@dataclass
class AssembleOutput:
    claimed: int
    invoices: List[str]
    conflicts: List[str]
    blocked: List[str] = field(default_factory=list)


@dataclass
class ReconcileInput:
    run_id: str
    period: PeriodInput
    db_path: Optional[str] = None


@dataclass
class ReconcileOutput:
    report_id: str
    upstream_invoices: int
    drifted: int
    report_ref: Optional[dict] = None


@dataclass
class RunOutcomeInput:
    run_id: str
    status: str
    summary: dict
    db_path: Optional[str] = None


# =============================================================================
# Helpers
# =============================================================================

def _open_run(run_id: str, db_path: Optional[str]) -> BillingRun:
    settings = get_settings()
    store = LedgerStore(Path(db_path) if db_path else settings.db_path)
    store.init_schema()
    audit = AuditLogger()
    audit.add_backend(LedgerAuditBackend(store))
    return BillingRun(store, settings=settings, audit=audit, run_id=run_id)


# =============================================================================
# Activity Definitions
# =============================================================================

@activity.defn
async def ingest_snapshots(input: IngestSnapshotsInput) -> IngestSnapshotsOutput:
    """Normalize snapshotted feed pages into the ledger."""
    run = _open_run(input.run_id, input.db_path)
    refs = [DataReference.model_validate(r) for r in input.snapshot_refs]
    activity.logger.info(f"Ingesting {len(refs)} feed snapshots for run {input.run_id}")

    stats = run.ingest_snapshots(refs)
    upstream = run.ingest_upstream_invoices(input.upstream_invoices)

    activity.logger.info(
        f"Ingested {stats.ingested} new, {stats.updated} updated, "
        f"{stats.malformed} malformed, {stats.skipped_claimed} claimed rows untouched"
    )
    return IngestSnapshotsOutput(
        ingested=stats.ingested,
        updated=stats.updated,
        skipped_claimed=stats.skipped_claimed,
        malformed=stats.malformed,
        duplicates=stats.duplicates,
        upstream_invoices=upstream,
    )


@activity.defn
async def attribute_transactions(input: StageInput) -> AttributeOutput:
    run = _open_run(input.run_id, input.db_path)
    stats = run.attribute()
    if stats.unattributable:
        activity.logger.warning(f"{stats.unattributable} transactions are unattributable and need review")
    return AttributeOutput(
        attributed=stats.attributed,
        pending=stats.pending,
        deferred=stats.deferred,
        unattributable=stats.unattributable,
    )


@activity.defn
async def price_transactions(input: PriceInput) -> PriceOutput:
    """Freeze the rule set as of the run date and price every unclaimed transaction."""
    run = _open_run(input.run_id, input.db_path)
    snapshot = run.snapshot_rules(parse_date(input.as_of))
    stats = run.price(snapshot)
    activity.logger.info(
        f"Priced {stats.priced} transactions with rule snapshot {snapshot.snapshot_id} "
        f"({len(snapshot)} rules); {stats.unconfigured} unconfigured"
    )
    return PriceOutput(
        rule_snapshot_id=snapshot.snapshot_id,
        rule_count=len(snapshot),
        priced=stats.priced,
        unconfigured=stats.unconfigured,
        ambiguous=stats.ambiguous,
    )


@activity.defn
async def assemble_invoices(input: AssembleInput) -> AssembleOutput:
    run = _open_run(input.run_id, input.db_path)
    stats = run.assemble(input.period.to_period(), input.rule_snapshot_id)
    if stats.conflicts:
        activity.logger.warning(f"Claim conflicts for tenants: {', '.join(stats.conflicts)}")
    if stats.blocked:
        activity.logger.warning(f"Preflight held back tenants: {', '.join(stats.blocked)}")
    return AssembleOutput(
        claimed=stats.claimed, invoices=stats.invoices, conflicts=stats.conflicts, blocked=stats.blocked
    )


@activity.defn(name="reconcile_period")
async def reconcile_billing_period(input: ReconcileInput) -> ReconcileOutput:
    """Compare local totals with the provider's invoices. Never corrects anything."""
    run = _open_run(input.run_id, input.db_path)
    report, ref = run.reconcile(input.period.to_period())
    if report.drifted:
        activity.logger.warning(f"{len(report.drifted)} upstream invoices drifted (report {report.report_id})")
    return ReconcileOutput(
        report_id=report.report_id,
        upstream_invoices=len(report.lines),
        drifted=len(report.drifted),
        report_ref=ref.model_dump(mode="json") if ref else None,
    )


@activity.defn
async def record_run_outcome(input: RunOutcomeInput) -> None:
    run = _open_run(input.run_id, input.db_path)
    event_type = AuditEventType.RUN_FAILED if input.status == "FAILED" else AuditEventType.RUN_COMPLETED
    log = run.audit.log_error if input.status == "FAILED" else run.audit.log_info
    log(event_type, f"Billing run {input.status}", run_id=input.run_id, details=input.summary)
