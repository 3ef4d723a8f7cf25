"""Activity definitions module."""

from activities.billing import (
    assemble_invoices,
    attribute_transactions,
    ingest_snapshots,
    price_transactions,
    reconcile_billing_period,
    record_run_outcome,
    AssembleInput,
    AssembleOutput,
    AttributeOutput,
    IngestSnapshotsInput,
    IngestSnapshotsOutput,
    PeriodInput,
    PriceInput,
    PriceOutput,
    ReconcileInput,
    ReconcileOutput,
    RunOutcomeInput,
    StageInput,
)

__all__ = [
    "assemble_invoices",
    "attribute_transactions",
    "ingest_snapshots",
    "price_transactions",
    "reconcile_billing_period",
    "record_run_outcome",
    "AssembleInput",
    "AssembleOutput",
    "AttributeOutput",
    "IngestSnapshotsInput",
    "IngestSnapshotsOutput",
    "PeriodInput",
    "PriceInput",
    "PriceOutput",
    "ReconcileInput",
    "ReconcileOutput",
    "RunOutcomeInput",
    "StageInput",
]
