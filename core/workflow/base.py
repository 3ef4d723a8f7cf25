"""Base run types and utilities."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RunStatus(str, Enum):
    """Billing run status values."""
    STARTED = "STARTED"
    INGESTING = "INGESTING"
    ATTRIBUTING = "ATTRIBUTING"
    PRICING = "PRICING"
    ASSEMBLING = "ASSEMBLING"
    RECONCILING = "RECONCILING"
    COMPLETED = "COMPLETED"
    COMPLETED_WITH_DRIFT = "COMPLETED_WITH_DRIFT"
    FAILED = "FAILED"


@dataclass
class RunSummary:
    """Counts every run reports, whatever happened to individual records."""
    run_id: str
    status: RunStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None

    # Ingestion
    ingested: int = 0
    malformed: int = 0
    duplicates: int = 0
    failed_queries: List[str] = field(default_factory=list)

    # Attribution
    attributed: int = 0
    pending: int = 0
    unattributable: int = 0

    # Pricing
    priced: int = 0
    unconfigured: int = 0
    ambiguous: int = 0

    # Assembly
    claimed: int = 0
    invoices: List[str] = field(default_factory=list)
    claim_conflicts: int = 0

    # Reconciliation
    drifted: int = 0
    report_id: Optional[str] = None

    rule_snapshot_id: Optional[str] = None
    error_message: Optional[str] = None
    artifact_refs: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "period": {"start": self.period_start, "end": self.period_end},
            "ingestion": {
                "ingested": self.ingested,
                "malformed": self.malformed,
                "duplicates": self.duplicates,
                "failed_queries": self.failed_queries,
            },
            "attribution": {
                "attributed": self.attributed,
                "pending": self.pending,
                "unattributable": self.unattributable,
            },
            "pricing": {
                "priced": self.priced,
                "unconfigured": self.unconfigured,
                "ambiguous": self.ambiguous,
                "rule_snapshot_id": self.rule_snapshot_id,
            },
            "assembly": {
                "claimed": self.claimed,
                "invoices": self.invoices,
                "claim_conflicts": self.claim_conflicts,
            },
            "reconciliation": {
                "drifted": self.drifted,
                "report_id": self.report_id,
            },
            "error": {"message": self.error_message} if self.error_message else None,
            "artifacts": self.artifact_refs,
        }
