"""Administrative operations.

The only ways to undo a claim or override attribution. Every operation needs
an actor and a reason and leaves an audit event.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from core.audit.events import AuditEventType, AuditLogger
from core.errors import AdminOperationError, InvoiceStateError
from core.observability.logging import get_logger, with_correlation
from invoice_assembler.assembler import InvoiceAssembler
from invoice_assembler.models import AssemblyPeriod
from invoice_assembler.preflight import PreflightReport, run_preflight
from invoice_assembler.verification import VerificationReport, verify_invoice
from models.canonical import AttributionStatus, GeneratedInvoice, PricingRule
from pricing_engine.models import RuleSetSnapshot


logger = get_logger(__name__)

DEFAULT_MAX_RESET_BATCH = 500


@dataclass
class ResetResult:
    transaction_ids: List[str] = field(default_factory=list)
    recomputed_invoices: List[str] = field(default_factory=list)


def _require(actor: str, reason: str) -> None:
    if not actor or not actor.strip():
        raise AdminOperationError("An actor is required")
    if not reason or not reason.strip():
        raise AdminOperationError("A reason is required")


def reset_transactions(
    store,
    transaction_ids: List[str],
    actor: str,
    reason: str,
    audit: AuditLogger,
    max_batch: int = DEFAULT_MAX_RESET_BATCH,
) -> ResetResult:
    """Clear generated_invoice_id and billed_amount for a bounded set.

    Only transactions on draft invoices (or unclaimed ones) can be reset; the
    drafts that lose lines are recomputed. The next run re-prices and
    re-claims the reset transactions.
    """
    _require(actor, reason)
    ids = list(dict.fromkeys(transaction_ids))
    if not ids:
        raise AdminOperationError("No transactions given")
    if len(ids) > max_batch:
        raise AdminOperationError(f"Reset of {len(ids)} transactions exceeds the limit of {max_batch}")

    missing = [i for i in ids if store.get_transaction(i) is None]
    if missing:
        raise AdminOperationError(f"Unknown transactions: {', '.join(missing)}")

    with with_correlation(stage="admin"):
        try:
            affected = store.clear_claims(ids)
        except InvoiceStateError as e:
            raise AdminOperationError(f"Reset refused: {e.message}") from e

        assembler = InvoiceAssembler(store, audit=audit)
        for invoice_id in affected:
            assembler.recompute_draft(invoice_id)

        audit.log_warning(
            AuditEventType.ADMIN_RESET,
            f"Reset {len(ids)} transactions",
            actor=actor,
            reason=reason,
            details={"transaction_ids": ids, "recomputed_invoices": affected},
        )
        logger.warning(
            f"Admin reset of {len(ids)} transactions by {actor}",
            extra_fields={"reason": reason, "recomputed_invoices": affected},
        )

    return ResetResult(transaction_ids=ids, recomputed_invoices=affected)


def force_attribution(
    store,
    transaction_id: str,
    tenant_id: str,
    actor: str,
    reason: str,
    audit: AuditLogger,
) -> None:
    """Assign a tenant to a stuck (typically unattributable) transaction.

    Refused for claimed transactions; reset them first.
    """
    _require(actor, reason)
    txn = store.get_transaction(transaction_id)
    if txn is None:
        raise AdminOperationError(f"Unknown transaction {transaction_id}")
    if txn.is_claimed:
        raise AdminOperationError(
            f"Transaction {transaction_id} is claimed by invoice {txn.generated_invoice_id}"
        )
    if store.get_tenant(tenant_id) is None:
        raise AdminOperationError(f"Unknown tenant {tenant_id}")

    if not store.force_attribution(transaction_id, tenant_id):
        raise AdminOperationError(f"Transaction {transaction_id} was claimed concurrently")

    audit.log_warning(
        AuditEventType.FORCE_ATTRIBUTION,
        f"Transaction {transaction_id} attributed to {tenant_id}",
        tenant_id=tenant_id,
        actor=actor,
        reason=reason,
        details={
            "transaction_id": transaction_id,
            "previous_tenant_id": txn.tenant_id,
            "previous_status": txn.attribution_status.value,
        },
    )
    logger.warning(
        f"Forced attribution of {transaction_id} to {tenant_id} by {actor}",
        extra_fields={"reason": reason, "previous_status": txn.attribution_status.value},
    )


def save_pricing_rule(
    store,
    rule: PricingRule,
    actor: str,
    reason: str,
    audit: AuditLogger,
) -> PricingRule:
    """Create or update a pricing rule, recording before/after.

    Runs already holding a rule snapshot are unaffected.
    """
    _require(actor, reason)
    before: Optional[PricingRule] = None
    if rule.rule_id is None:
        saved = store.add_pricing_rule(rule)
    else:
        before = store.get_pricing_rule(rule.rule_id)
        if before is None:
            raise AdminOperationError(f"Unknown pricing rule {rule.rule_id}")
        store.update_pricing_rule(rule)
        saved = rule

    audit.log_info(
        AuditEventType.RULE_CHANGED,
        f"Pricing rule {saved.rule_id} {'created' if before is None else 'updated'}",
        tenant_id=saved.tenant_id,
        actor=actor,
        reason=reason,
        details={
            "rule_id": saved.rule_id,
            "before": before.model_dump(mode="json") if before else None,
            "after": saved.model_dump(mode="json"),
        },
    )
    return saved


def approve_invoice(store, invoice_id: str, actor: str, audit: AuditLogger) -> GeneratedInvoice:
    try:
        return InvoiceAssembler(store, audit=audit).approve(invoice_id, actor)
    except InvoiceStateError as e:
        raise AdminOperationError(e.message) from e


def send_invoice(store, invoice_id: str, actor: str, audit: AuditLogger) -> GeneratedInvoice:
    try:
        return InvoiceAssembler(store, audit=audit).mark_sent(invoice_id, actor)
    except InvoiceStateError as e:
        raise AdminOperationError(e.message) from e


def list_unattributable(store) -> list:
    """Transactions waiting for review."""
    return store.list_transactions(attribution_statuses=[AttributionStatus.UNATTRIBUTABLE])


def preflight_period(
    store,
    tenant_id: str,
    period_start: Optional[date] = None,
    period_end: Optional[date] = None,
    upstream_invoice_ids: Optional[List[str]] = None,
) -> PreflightReport:
    if store.get_tenant(tenant_id) is None:
        raise AdminOperationError(f"Unknown tenant {tenant_id}")
    try:
        period = AssemblyPeriod(period_start, period_end, tuple(upstream_invoice_ids or ()))
    except ValueError as e:
        raise AdminOperationError(str(e)) from e
    return run_preflight(store, tenant_id, period)


def verify_generated_invoice(store, invoice_id: str, as_of: Optional[date] = None) -> VerificationReport:
    """Verify an invoice against the rules in effect on ``as_of``.

    ``as_of`` defaults to the day the invoice was drafted.
    """
    invoice = store.get_invoice(invoice_id)
    if invoice is None:
        raise AdminOperationError(f"Invoice {invoice_id} not found")
    snapshot = RuleSetSnapshot.freeze(store.list_pricing_rules(), as_of=as_of or invoice.created_at.date())
    return verify_invoice(store, invoice_id, snapshot)
