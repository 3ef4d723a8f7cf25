"""Audit event logging and persistence.

Administrative actions on billing state (resets, forced attribution, invoice
approval and sending) are recorded with who/when/why. Supports multiple
persistence backends.
"""

import json
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.observability.logging import get_logger
from models.refs import AuditEvent, AuditSeverity, DataReference


logger = get_logger(__name__)


class AuditEventType(str, Enum):
    """Standard audit event types."""
    # Run events
    RUN_STARTED = "RUN_STARTED"
    RUN_COMPLETED = "RUN_COMPLETED"
    RUN_FAILED = "RUN_FAILED"

    # Assembly events
    INVOICE_DRAFTED = "INVOICE_DRAFTED"
    INVOICE_RECOMPUTED = "INVOICE_RECOMPUTED"
    CLAIM_CONFLICT = "CLAIM_CONFLICT"
    PREFLIGHT_BLOCKED = "PREFLIGHT_BLOCKED"

    # Reconciliation events
    RECONCILIATION_COMPLETED = "RECONCILIATION_COMPLETED"
    RECONCILIATION_DRIFT = "RECONCILIATION_DRIFT"

    # Administrative actions
    ADMIN_RESET = "ADMIN_RESET"
    FORCE_ATTRIBUTION = "FORCE_ATTRIBUTION"
    INVOICE_APPROVED = "INVOICE_APPROVED"
    INVOICE_SENT = "INVOICE_SENT"

    # Configuration
    RULE_CHANGED = "RULE_CHANGED"


def create_audit_event(
    event_type: AuditEventType,
    message: str,
    severity: AuditSeverity = AuditSeverity.INFO,
    run_id: Optional[str] = None,
    tenant_id: Optional[str] = None,
    invoice_id: Optional[str] = None,
    workflow_id: Optional[str] = None,
    reason: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    actor: str = "system",
    artifact_refs: Optional[List[DataReference]] = None,
) -> AuditEvent:
    """Create a new audit event with auto-generated ID and timestamp.

    Args:
        event_type: Type of event
        message: Human-readable message
        severity: Event severity level
        run_id: Billing run that produced the event
        tenant_id: Affected tenant
        invoice_id: Affected generated invoice
        workflow_id: Temporal workflow ID
        reason: Why the action was taken (required for admin actions)
        details: Additional structured details
        actor: Who performed the action
        artifact_refs: Related artifact references

    Returns:
        Configured AuditEvent ready for logging
    """
    return AuditEvent(
        event_id=str(uuid.uuid4()),
        timestamp=datetime.utcnow(),
        event_type=event_type.value,
        severity=severity,
        run_id=run_id,
        tenant_id=tenant_id,
        invoice_id=invoice_id,
        workflow_id=workflow_id,
        message=message,
        reason=reason,
        details=details or {},
        actor=actor,
        artifact_refs=artifact_refs or [],
    )


def _matches(
    event: AuditEvent,
    event_type: Optional[str],
    tenant_id: Optional[str],
    start_time: Optional[datetime],
    end_time: Optional[datetime],
) -> bool:
    if event_type and event.event_type != event_type:
        return False
    if tenant_id and event.tenant_id != tenant_id:
        return False
    if start_time and event.timestamp < start_time:
        return False
    if end_time and event.timestamp > end_time:
        return False
    return True


class AuditBackend(ABC):
    """Abstract base class for audit persistence backends."""

    @abstractmethod
    def log(self, event: AuditEvent) -> None:
        """Persist an audit event."""
        pass

    @abstractmethod
    def query(
        self,
        event_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query audit events with filters."""
        pass


class JSONFileAuditBackend(AuditBackend):
    """Audit backend that stores events in JSON files.

    Stores one file per day in YYYY-MM-DD.json format.
    """

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_file_path(self, day: datetime) -> Path:
        return self.base_path / f"{day.strftime('%Y-%m-%d')}.json"

    def log(self, event: AuditEvent) -> None:
        file_path = self._get_file_path(event.timestamp)

        events = []
        if file_path.exists():
            with open(file_path, "r", encoding="utf-8") as f:
                events = json.load(f)

        events.append(event.model_dump(mode="json"))

        with open(file_path, "w", encoding="utf-8") as f:
            json.dump(events, f, indent=2)

    def query(
        self,
        event_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        results = []

        first_day = start_time or datetime(2020, 1, 1)
        last_day = end_time or datetime.utcnow()

        current = datetime(first_day.year, first_day.month, first_day.day)
        while current <= last_day and len(results) < limit:
            file_path = self._get_file_path(current)
            if file_path.exists():
                with open(file_path, "r", encoding="utf-8") as f:
                    events = json.load(f)

                for event_data in events:
                    event = AuditEvent.model_validate(event_data)
                    if not _matches(event, event_type, tenant_id, start_time, end_time):
                        continue
                    results.append(event)
                    if len(results) >= limit:
                        break

            current = current + timedelta(days=1)

        return results


class InMemoryAuditBackend(AuditBackend):
    """In-memory audit backend for testing."""

    def __init__(self):
        self._events: List[AuditEvent] = []

    def log(self, event: AuditEvent) -> None:
        self._events.append(event)

    def query(
        self,
        event_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        results = []
        for event in self._events:
            if not _matches(event, event_type, tenant_id, start_time, end_time):
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    def clear(self) -> None:
        """Clear all events (for testing)."""
        self._events.clear()


class LedgerAuditBackend(AuditBackend):
    """Audit backend writing to the ledger's audit_events table.

    ``store`` is a ``ledger.db.LedgerStore`` (or anything with
    ``insert_audit_event`` / ``list_audit_events``).
    """

    def __init__(self, store):
        self._store = store

    def log(self, event: AuditEvent) -> None:
        self._store.insert_audit_event(event)

    def query(
        self,
        event_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        events = self._store.list_audit_events(event_type=event_type, tenant_id=tenant_id)
        results = [e for e in events if _matches(e, None, None, start_time, end_time)]
        return results[:limit]


class AuditLogger:
    """Main audit logger that supports multiple backends.

    Usage:
        audit = AuditLogger()
        audit.add_backend(LedgerAuditBackend(store))

        audit.log_info(
            AuditEventType.INVOICE_APPROVED,
            "Invoice ACME-20240107-0001 approved",
            tenant_id="acme",
            actor="ops@example.com",
        )
    """

    def __init__(self):
        self._backends: List[AuditBackend] = []

    def add_backend(self, backend: AuditBackend) -> None:
        self._backends.append(backend)

    def log(self, event: AuditEvent) -> None:
        """Log event to all backends."""
        for backend in self._backends:
            try:
                backend.log(event)
            except Exception as e:
                # Audit failures must not break billing
                logger.error(
                    f"Audit logging failed for backend {type(backend).__name__}: {e}",
                    extra_fields={"event_id": event.event_id, "event_type": event.event_type},
                )

    def log_info(self, event_type: AuditEventType, message: str, **kwargs) -> AuditEvent:
        event = create_audit_event(event_type, message, AuditSeverity.INFO, **kwargs)
        self.log(event)
        return event

    def log_warning(self, event_type: AuditEventType, message: str, **kwargs) -> AuditEvent:
        event = create_audit_event(event_type, message, AuditSeverity.WARN, **kwargs)
        self.log(event)
        return event

    def log_error(self, event_type: AuditEventType, message: str, **kwargs) -> AuditEvent:
        event = create_audit_event(event_type, message, AuditSeverity.ERROR, **kwargs)
        self.log(event)
        return event

    def query(
        self,
        event_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        """Query events from the first backend."""
        if not self._backends:
            return []
        return self._backends[0].query(event_type, tenant_id, start_time, end_time, limit)
