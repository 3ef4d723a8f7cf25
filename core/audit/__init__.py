"""Core audit module - audit event tracking and persistence."""

from core.audit.events import (
    AuditLogger,
    AuditEventType,
    InMemoryAuditBackend,
    JSONFileAuditBackend,
    LedgerAuditBackend,
    create_audit_event,
)

__all__ = [
    "AuditLogger",
    "AuditEventType",
    "InMemoryAuditBackend",
    "JSONFileAuditBackend",
    "LedgerAuditBackend",
    "create_audit_event",
]
