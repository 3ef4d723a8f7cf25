"""Billing error taxonomy.

Per-record conditions (malformed input, unattributable charges, unconfigured
rates, rule ambiguity, reconciliation drift) are recovered where they occur
and surfaced through logs and the run summary. ``ClaimConflict`` aborts only
the assembly attempt that hit it.
"""

from typing import Any, Dict, List, Optional


class BillingError(Exception):
    """Base class for billing errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class MalformedRecord(BillingError):
    """Raw charge is missing its amount, date, id or fee category."""

    def __init__(self, message: str, record: Optional[Dict[str, Any]] = None):
        super().__init__(message, {"record": record})
        self.record = record or {}


class UnattributableTransaction(BillingError):
    """Every attribution strategy was exhausted for a transaction."""

    def __init__(self, transaction_id: str, reasons: List[str]):
        super().__init__(
            f"No owning tenant for transaction {transaction_id}",
            {"transaction_id": transaction_id, "reasons": reasons},
        )
        self.transaction_id = transaction_id
        self.reasons = reasons


class UnconfiguredRate(BillingError):
    """No pricing rule applies; the charge is billed at cost."""

    def __init__(self, transaction_id: str, tenant_id: Optional[str], fee_category: str):
        super().__init__(
            f"No pricing rule for {tenant_id}/{fee_category} (transaction {transaction_id})",
            {"transaction_id": transaction_id, "tenant_id": tenant_id, "fee_category": fee_category},
        )
        self.transaction_id = transaction_id
        self.tenant_id = tenant_id
        self.fee_category = fee_category


class RuleAmbiguity(BillingError):
    """Several rules tie at the top specificity; the lowest rule id was used."""

    def __init__(self, transaction_id: str, chosen_rule_id: int, tied_rule_ids: List[int]):
        super().__init__(
            f"Rules {tied_rule_ids} tie for transaction {transaction_id}; using {chosen_rule_id}",
            {
                "transaction_id": transaction_id,
                "chosen_rule_id": chosen_rule_id,
                "tied_rule_ids": tied_rule_ids,
            },
        )
        self.transaction_id = transaction_id
        self.chosen_rule_id = chosen_rule_id
        self.tied_rule_ids = tied_rule_ids


class ClaimConflict(BillingError):
    """Another assembly holds the tenant-period or already claimed a selected transaction."""

    def __init__(self, tenant_id: str, period_key: str, reason: str):
        super().__init__(
            f"Claim conflict for {tenant_id} {period_key}: {reason}",
            {"tenant_id": tenant_id, "period_key": period_key},
        )
        self.tenant_id = tenant_id
        self.period_key = period_key
        self.reason = reason


class ReconciliationDrift(BillingError):
    """Local total disagrees with the provider's authoritative total."""

    def __init__(self, upstream_invoice_id: str, delta, pct_delta, classification: str):
        super().__init__(
            f"Upstream invoice {upstream_invoice_id} drifted by {delta} ({pct_delta}%): {classification}",
            {
                "upstream_invoice_id": upstream_invoice_id,
                "delta": str(delta),
                "pct_delta": str(pct_delta),
                "classification": classification,
            },
        )
        self.upstream_invoice_id = upstream_invoice_id
        self.delta = delta
        self.pct_delta = pct_delta
        self.classification = classification


class InvoiceStateError(BillingError):
    """Illegal generated-invoice status transition or mutation of a non-draft."""


class AdminOperationError(BillingError):
    """Administrative request refused."""


class FeedError(BillingError):
    """Upstream feed page could not be fetched."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class FeedRateLimitError(FeedError):
    """Upstream asked us to slow down."""

    def __init__(self, message: str = "Rate limited", retry_after: Optional[float] = None):
        super().__init__(message, retryable=True)
        self.retry_after = retry_after
