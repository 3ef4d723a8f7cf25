"""Models Package.

Canonical billing models (transactions, tenants, rules, invoices,
discrepancy reports) and artifact/audit reference models.
"""

from models.canonical import (
    AttributionStatus,
    DisplayCategory,
    DiscrepancyReport,
    DriftClassification,
    FeeCategory,
    GeneratedInvoice,
    InvoiceStatus,
    OwnedEntity,
    OwnedEntityKind,
    PendingDependency,
    PricingRule,
    PricingStatus,
    ReferenceType,
    RuleCondition,
    RuleType,
    Tenant,
    Transaction,
    UpstreamInvoice,
)

from models.refs import (
    AuditEvent,
    AuditSeverity,
    DataReference,
)

__all__ = [
    "AttributionStatus",
    "DisplayCategory",
    "DiscrepancyReport",
    "DriftClassification",
    "FeeCategory",
    "GeneratedInvoice",
    "InvoiceStatus",
    "OwnedEntity",
    "OwnedEntityKind",
    "PendingDependency",
    "PricingRule",
    "PricingStatus",
    "ReferenceType",
    "RuleCondition",
    "RuleType",
    "Tenant",
    "Transaction",
    "UpstreamInvoice",
    "AuditEvent",
    "AuditSeverity",
    "DataReference",
]
