"""In-process billing run.

Runs the stages in order against one ledger:

    collect -> snapshot -> normalize/ingest -> attribute -> price
            -> assemble (per tenant) -> reconcile

Each stage is also callable on its own; the Temporal activities call them
one at a time. Per-record problems are counted, never fatal. A ClaimConflict
skips only the conflicting tenant. Drift is reported, never corrected.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.audit.events import AuditEventType, AuditLogger, InMemoryAuditBackend
from core.config import BillingSettings, get_settings
from core.errors import ClaimConflict, MalformedRecord
from core.observability.logging import (
    get_logger,
    log_stage_complete,
    log_stage_error,
    log_stage_start,
    with_correlation,
)
from core.workflow.base import RunStatus, RunSummary
from ingestion.feed import BillingFeed, CollectionResult, FeedCollector, FeedQuery, RetryConfig
from ingestion.normalize import NormalizationResult, normalize_batch, normalize_upstream_invoice
from invoice_assembler.assembler import InvoiceAssembler
from invoice_assembler.models import AssemblyPeriod, AssemblyStats
from invoice_assembler.preflight import run_preflight
from models.canonical import DiscrepancyReport
from models.refs import DataReference
from pricing_engine.engine import PricingEngine
from pricing_engine.models import PricingStats, RuleSetSnapshot
from reconciliation.engine import DriftThresholds, reconcile_period, save_report
from storage.artifacts import get_json, snapshot_raw_records
from tenant_resolver.models import AttributionStats
from tenant_resolver.queue import PendingQueue
from tenant_resolver.resolver import TenantResolver


logger = get_logger(__name__)


@dataclass
class IngestStats:
    ingested: int = 0
    updated: int = 0
    skipped_claimed: int = 0
    repriced: int = 0
    malformed: int = 0
    duplicates: int = 0
    unknown_fee_labels: Dict[str, int] = field(default_factory=dict)
    failed_queries: List[str] = field(default_factory=list)

    def add(self, result: NormalizationResult, counts: Dict[str, int]) -> None:
        self.ingested += counts.get("inserted", 0)
        self.updated += counts.get("updated", 0)
        self.skipped_claimed += counts.get("skipped_claimed", 0)
        self.repriced += counts.get("repriced", 0)
        self.malformed += len(result.malformed)
        self.duplicates += result.duplicates
        for label, count in result.unknown_fee_labels.items():
            self.unknown_fee_labels[label] = self.unknown_fee_labels.get(label, 0) + count

    def to_dict(self) -> dict:
        return {
            "ingested": self.ingested,
            "updated": self.updated,
            "skipped_claimed": self.skipped_claimed,
            "repriced": self.repriced,
            "malformed": self.malformed,
            "duplicates": self.duplicates,
            "unknown_fee_labels": self.unknown_fee_labels,
            "failed_queries": self.failed_queries,
        }


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 1)


class BillingRun:
    """One billing run over a ledger.

    Example:
        run = BillingRun(store)
        summary = asyncio.run(run.execute(AssemblyPeriod(start, end), feed=feed, queries=queries))
    """

    def __init__(
        self,
        store,
        settings: Optional[BillingSettings] = None,
        audit: Optional[AuditLogger] = None,
        run_id: Optional[str] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.run_id = run_id or f"run-{uuid.uuid4().hex[:12]}"
        self.clock = clock
        if audit is None:
            audit = AuditLogger()
            audit.add_backend(InMemoryAuditBackend())
        self.audit = audit

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    async def collect(self, feed: BillingFeed, queries: List[FeedQuery]) -> Tuple[List[DataReference], List[str]]:
        """Pull every query from the feed and snapshot the raw pages.

        Returns (snapshot refs, failed query ids).
        """
        s = self.settings
        collector = FeedCollector(
            feed,
            max_workers=s.feed_max_workers,
            retry_config=RetryConfig(
                max_retries=s.feed_max_retries,
                base_delay=s.feed_initial_delay,
                max_delay=s.feed_max_delay,
            ),
        )
        result: CollectionResult = await collector.collect(queries)

        refs = []
        for chain in result.chains:
            if not chain.records:
                continue
            refs.append(
                snapshot_raw_records(
                    chain.records,
                    s.artifacts_dir,
                    self.run_id,
                    chain.query.query_id,
                    chain.query.channel_tenant_id,
                )
            )

        if result.failed_queries:
            logger.warning(
                f"{len(result.failed_queries)} feed queries failed; their records will be picked up next run",
                extra_fields={"failed_queries": result.failed_queries},
            )
        return refs, result.failed_queries

    def ingest_records(
        self,
        records: List[Dict[str, Any]],
        channel_tenant_id: Optional[str] = None,
        stats: Optional[IngestStats] = None,
    ) -> IngestStats:
        """Normalize one batch and upsert it into the ledger."""
        stats = stats or IngestStats()
        result = normalize_batch(records, channel_tenant_id)
        counts = self.store.upsert_transactions(result.transactions)
        stats.add(result, counts)
        if counts.get("skipped_claimed"):
            logger.info(
                "Claimed transactions left untouched by ingest",
                extra_fields={"skipped_claimed": counts["skipped_claimed"]},
            )
        return stats

    def ingest_snapshots(self, refs: List[DataReference]) -> IngestStats:
        stats = IngestStats()
        for ref in refs:
            payload = get_json(ref)
            self.ingest_records(payload["records"], payload.get("channel_tenant_id"), stats)
        return stats

    def ingest_upstream_invoices(self, records: List[Dict[str, Any]]) -> int:
        """Store the provider's invoices. Malformed ones are logged and skipped."""
        stored = 0
        for raw in records:
            try:
                invoice = normalize_upstream_invoice(raw)
            except MalformedRecord as e:
                logger.warning(f"Malformed upstream invoice excluded: {e.message}")
                continue
            self.store.upsert_upstream_invoice(invoice)
            stored += 1
        return stored

    # -------------------------------------------------------------------------
    # Attribution / pricing
    # -------------------------------------------------------------------------

    def attribute(self, transaction_ids: Optional[List[str]] = None) -> AttributionStats:
        s = self.settings
        queue = PendingQueue(
            self.store,
            max_attempts=s.pending_max_attempts,
            max_age=timedelta(hours=s.pending_max_age_hours),
            base_delay=timedelta(minutes=s.pending_base_delay_minutes),
        )
        resolver = TenantResolver(self.store, queue=queue, clock=self.clock)
        return resolver.run_pass(transaction_ids)

    def snapshot_rules(self, as_of: Optional[date] = None) -> RuleSetSnapshot:
        return RuleSetSnapshot.freeze(
            self.store.list_pricing_rules(),
            as_of=as_of or self.clock().date(),
            taken_at=self.clock(),
        )

    def price(self, snapshot: RuleSetSnapshot, tenant_ids: Optional[List[str]] = None) -> PricingStats:
        return PricingEngine(snapshot).run(self.store, tenant_ids)

    # -------------------------------------------------------------------------
    # Assembly / reconciliation
    # -------------------------------------------------------------------------

    def assemble(
        self,
        period: AssemblyPeriod,
        rule_snapshot_id: Optional[str] = None,
        tenant_ids: Optional[List[str]] = None,
    ) -> AssemblyStats:
        """Assemble every active tenant's invoice for the period."""
        assembler = InvoiceAssembler(
            self.store, audit=self.audit, lock_ttl_seconds=self.settings.assembly_lock_ttl_seconds
        )
        if tenant_ids is None:
            tenant_ids = [t.tenant_id for t in self.store.list_tenants()]

        stats = AssemblyStats()
        for tenant_id in sorted(tenant_ids):
            if self.settings.preflight_gate and not self._preflight_passes(tenant_id, period):
                stats.blocked.append(tenant_id)
                continue
            try:
                result = assembler.assemble(tenant_id, period, rule_snapshot_id, self.run_id)
            except ClaimConflict as e:
                logger.warning(e.message, extra_fields=e.details)
                stats.conflicts.append(tenant_id)
                continue
            if not result.is_noop:
                stats.claimed += result.claimed
                stats.invoices.append(result.invoice.invoice_id)
        return stats

    def _preflight_passes(self, tenant_id: str, period: AssemblyPeriod) -> bool:
        report = run_preflight(self.store, tenant_id, period)
        if not report.passed:
            self.audit.log_warning(
                AuditEventType.PREFLIGHT_BLOCKED,
                f"Assembly of {tenant_id} held back by preflight checks",
                run_id=self.run_id,
                tenant_id=tenant_id,
                details=report.to_dict(),
            )
        return report.passed

    def _reconciliation_window(self, period: AssemblyPeriod) -> Tuple[date, date]:
        if period.period_start and period.period_end:
            return period.period_start, period.period_end
        upstream = self.store.list_upstream_invoices(upstream_invoice_ids=list(period.upstream_invoice_ids))
        if not upstream:
            today = self.clock().date()
            return today, today
        dates = [u.invoice_date for u in upstream]
        return min(dates), max(dates)

    def reconcile(self, period: AssemblyPeriod) -> Tuple[DiscrepancyReport, Optional[DataReference]]:
        """Build, store and export the discrepancy report for the period."""
        start, end = self._reconciliation_window(period)
        report = reconcile_period(
            self.store, start, end, DriftThresholds.from_settings(self.settings), run_id=self.run_id
        )
        ref = save_report(report, store=self.store, artifacts_dir=self.settings.artifacts_dir)

        self.audit.log_info(
            AuditEventType.RECONCILIATION_COMPLETED,
            f"Reconciled {len(report.lines)} upstream invoices for {start}..{end}",
            run_id=self.run_id,
            details={"report_id": report.report_id, "drifted": len(report.drifted)},
            artifact_refs=[ref] if ref else [],
        )
        for line in report.drifted:
            self.audit.log_warning(
                AuditEventType.RECONCILIATION_DRIFT,
                f"Upstream invoice {line.upstream_invoice_id} drifted: {line.classification.value}",
                run_id=self.run_id,
                details=line.model_dump(mode="json"),
            )
        return report, ref

    # -------------------------------------------------------------------------
    # Whole run
    # -------------------------------------------------------------------------

    async def execute(
        self,
        period: AssemblyPeriod,
        feed: Optional[BillingFeed] = None,
        queries: Optional[List[FeedQuery]] = None,
        upstream_invoices: Optional[List[Dict[str, Any]]] = None,
        as_of: Optional[date] = None,
    ) -> RunSummary:
        """Run every stage and return the run summary.

        Without a feed, the run works from what the ledger already holds
        (e.g. re-pricing and re-assembling after an admin reset).
        """
        summary = RunSummary(
            run_id=self.run_id,
            status=RunStatus.STARTED,
            started_at=self.clock(),
            period_start=period.period_start.isoformat() if period.period_start else None,
            period_end=period.period_end.isoformat() if period.period_end else None,
        )
        self.audit.log_info(
            AuditEventType.RUN_STARTED,
            f"Billing run started for {period.key}",
            run_id=self.run_id,
        )

        with with_correlation(run_id=self.run_id, period=period.key):
            try:
                await self._execute_stages(summary, period, feed, queries, upstream_invoices, as_of)
            except Exception as e:
                summary.status = RunStatus.FAILED
                summary.error_message = str(e)
                summary.completed_at = self.clock()
                log_stage_error("run", str(e), run_id=self.run_id)
                self.audit.log_error(
                    AuditEventType.RUN_FAILED,
                    f"Billing run failed: {e}",
                    run_id=self.run_id,
                    details=summary.to_dict(),
                )
                raise

        summary.status = RunStatus.COMPLETED_WITH_DRIFT if summary.drifted else RunStatus.COMPLETED
        summary.completed_at = self.clock()
        self.audit.log_info(
            AuditEventType.RUN_COMPLETED,
            f"Billing run {summary.status.value}",
            run_id=self.run_id,
            details=summary.to_dict(),
        )
        logger.info("Billing run finished", extra_fields=summary.to_dict())
        return summary

    async def _execute_stages(
        self,
        summary: RunSummary,
        period: AssemblyPeriod,
        feed: Optional[BillingFeed],
        queries: Optional[List[FeedQuery]],
        upstream_invoices: Optional[List[Dict[str, Any]]],
        as_of: Optional[date],
    ) -> None:
        # Rules are frozen before anything is priced
        snapshot = self.snapshot_rules(as_of)
        summary.rule_snapshot_id = snapshot.snapshot_id

        summary.status = RunStatus.INGESTING
        started = time.monotonic()
        log_stage_start("ingest")
        if feed is not None and queries:
            refs, failed = await self.collect(feed, queries)
            for ref in refs:
                summary.artifact_refs[f"raw:{ref.content_hash[:12]}"] = ref.storage_uri
            ingest = self.ingest_snapshots(refs)
            ingest.failed_queries = failed
            summary.ingested = ingest.ingested + ingest.updated
            summary.malformed = ingest.malformed
            summary.duplicates = ingest.duplicates
            summary.failed_queries = failed
        if upstream_invoices:
            self.ingest_upstream_invoices(upstream_invoices)
        log_stage_complete("ingest", _elapsed_ms(started), ingested=summary.ingested)

        summary.status = RunStatus.ATTRIBUTING
        started = time.monotonic()
        attribution = self.attribute()
        summary.attributed = attribution.attributed
        summary.pending = attribution.pending + attribution.deferred
        summary.unattributable = attribution.unattributable
        log_stage_complete("attribute", _elapsed_ms(started), **attribution.to_dict())

        summary.status = RunStatus.PRICING
        started = time.monotonic()
        pricing = self.price(snapshot)
        summary.priced = pricing.priced
        summary.unconfigured = pricing.unconfigured
        summary.ambiguous = pricing.ambiguous
        log_stage_complete("price", _elapsed_ms(started), **pricing.to_dict())

        summary.status = RunStatus.ASSEMBLING
        started = time.monotonic()
        assembly = self.assemble(period, snapshot.snapshot_id)
        summary.claimed = assembly.claimed
        summary.invoices = assembly.invoices
        summary.claim_conflicts = len(assembly.conflicts)
        log_stage_complete("assemble", _elapsed_ms(started), **assembly.to_dict())

        summary.status = RunStatus.RECONCILING
        started = time.monotonic()
        report, ref = self.reconcile(period)
        summary.drifted = len(report.drifted)
        summary.report_id = report.report_id
        if ref is not None:
            summary.artifact_refs["discrepancy_report"] = ref.storage_uri
        log_stage_complete("reconcile", _elapsed_ms(started), drifted=summary.drifted)
