"""Billing Run Workflow.

Durable form of a BillingRun: one activity per stage, in order. A stage
that fails after its retries fails the run; the stages before it have
already committed and the next run picks up where this one stopped.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from activities.billing import (
        assemble_invoices,
        attribute_transactions,
        ingest_snapshots,
        price_transactions,
        reconcile_billing_period,
        record_run_outcome,
        AssembleInput,
        IngestSnapshotsInput,
        PeriodInput,
        PriceInput,
        ReconcileInput,
        RunOutcomeInput,
        StageInput,
    )


@dataclass
class BillingRunInput:
    """Input for BillingRunWorkflow.

    Attributes:
        run_id: Unique id of the run
        period: Period to assemble and reconcile
        snapshot_refs: Serialized DataReferences to raw feed snapshots
        upstream_invoices: Raw provider invoices
        as_of: Date the pricing rules are frozen at (defaults to today)
        db_path: Ledger path override
    """
    run_id: str
    period: PeriodInput
    snapshot_refs: List[dict] = field(default_factory=list)
    upstream_invoices: List[dict] = field(default_factory=list)
    as_of: Optional[str] = None
    db_path: Optional[str] = None


LEDGER_ACTIVITY_OPTIONS = {
    "start_to_close_timeout": timedelta(minutes=5),
    "retry_policy": RetryPolicy(
        maximum_attempts=3,
        initial_interval=timedelta(seconds=1),
        backoff_coefficient=2.0,
        # Bad input does not heal on retry
        non_retryable_error_types=["ValueError", "MalformedRecord", "AdminOperationError"],
    ),
}


@workflow.defn
class BillingRunWorkflow:
    """Ingest -> attribute -> price -> assemble -> reconcile."""

    @workflow.run
    async def run(self, input: BillingRunInput) -> dict:
        workflow.logger.info(f"Starting billing run {input.run_id}")
        summary = {"run_id": input.run_id, "status": "STARTED"}

        try:
            ingest = await workflow.execute_activity(
                ingest_snapshots,
                IngestSnapshotsInput(
                    run_id=input.run_id,
                    snapshot_refs=input.snapshot_refs,
                    upstream_invoices=input.upstream_invoices,
                    db_path=input.db_path,
                ),
                **LEDGER_ACTIVITY_OPTIONS,
            )
            summary["ingestion"] = {
                "ingested": ingest.ingested + ingest.updated,
                "malformed": ingest.malformed,
                "duplicates": ingest.duplicates,
                "skipped_claimed": ingest.skipped_claimed,
            }

            attribution = await workflow.execute_activity(
                attribute_transactions,
                StageInput(run_id=input.run_id, db_path=input.db_path),
                **LEDGER_ACTIVITY_OPTIONS,
            )
            summary["attribution"] = {
                "attributed": attribution.attributed,
                "pending": attribution.pending + attribution.deferred,
                "unattributable": attribution.unattributable,
            }

            as_of = input.as_of or workflow.now().date().isoformat()
            pricing = await workflow.execute_activity(
                price_transactions,
                PriceInput(run_id=input.run_id, as_of=as_of, db_path=input.db_path),
                **LEDGER_ACTIVITY_OPTIONS,
            )
            summary["pricing"] = {
                "priced": pricing.priced,
                "unconfigured": pricing.unconfigured,
                "ambiguous": pricing.ambiguous,
                "rule_snapshot_id": pricing.rule_snapshot_id,
            }

            assembly = await workflow.execute_activity(
                assemble_invoices,
                AssembleInput(
                    run_id=input.run_id,
                    period=input.period,
                    rule_snapshot_id=pricing.rule_snapshot_id,
                    db_path=input.db_path,
                ),
                **LEDGER_ACTIVITY_OPTIONS,
            )
            summary["assembly"] = {
                "claimed": assembly.claimed,
                "invoices": assembly.invoices,
                "claim_conflicts": len(assembly.conflicts),
                "preflight_blocked": assembly.blocked,
            }

            reconciliation = await workflow.execute_activity(
                reconcile_billing_period,
                ReconcileInput(run_id=input.run_id, period=input.period, db_path=input.db_path),
                **LEDGER_ACTIVITY_OPTIONS,
            )
            summary["reconciliation"] = {
                "drifted": reconciliation.drifted,
                "report_id": reconciliation.report_id,
                "report_ref": reconciliation.report_ref,
            }
            summary["status"] = "COMPLETED_WITH_DRIFT" if reconciliation.drifted else "COMPLETED"

        except Exception as e:
            workflow.logger.error(f"Billing run {input.run_id} failed: {e}")
            summary["status"] = "FAILED"
            summary["error"] = str(e)
            await workflow.execute_activity(
                record_run_outcome,
                RunOutcomeInput(run_id=input.run_id, status="FAILED", summary=summary, db_path=input.db_path),
                **LEDGER_ACTIVITY_OPTIONS,
            )
            raise

        await workflow.execute_activity(
            record_run_outcome,
            RunOutcomeInput(run_id=input.run_id, status=summary["status"], summary=summary, db_path=input.db_path),
            **LEDGER_ACTIVITY_OPTIONS,
        )
        workflow.logger.info(f"Billing run {input.run_id} finished: {summary['status']}")
        return summary
