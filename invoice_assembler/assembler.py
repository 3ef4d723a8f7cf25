"""Invoice Assembler.

Batches attributed, priced, unclaimed transactions for one tenant and
period into a draft GeneratedInvoice and claims them atomically.

Claiming rules:
- a transaction is claimed by at most one invoice, and only once
- one tenant-period is assembled by one writer at a time (assembly lock);
  a concurrent attempt raises ClaimConflict instead of claiming anything
- the claim itself is a single ledger transaction; if any selected
  transaction was claimed in the meantime nothing is written
- re-assembling a period with nothing new to claim is a no-op
- late arrivals for a period whose invoice is still a draft are claimed
  into that draft; approved and sent invoices are never touched

Invoice lifecycle: draft -> approved -> sent.
"""

import uuid
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from core.audit.events import AuditEventType, AuditLogger
from core.errors import ClaimConflict, InvoiceStateError
from core.observability.logging import get_logger, with_correlation
from ingestion.categories import display_category_for
from invoice_assembler.allocation import allocate_cents, exact_sum, round_cents
from invoice_assembler.models import AssemblyPeriod, AssemblyResult
from models.canonical import (
    AttributionStatus,
    DisplayCategory,
    GeneratedInvoice,
    InvoiceStatus,
    Transaction,
)


logger = get_logger(__name__)


def _group_by_category(transactions: List[Transaction]) -> Dict[DisplayCategory, List[Transaction]]:
    groups: Dict[DisplayCategory, List[Transaction]] = defaultdict(list)
    for txn in transactions:
        groups[display_category_for(txn.fee_category)].append(txn)
    return groups


class InvoiceAssembler:
    """Assembles and advances generated invoices.

    Example:
        assembler = InvoiceAssembler(store)
        result = assembler.assemble("acme", AssemblyPeriod(start, end))
        assembler.approve(result.invoice.invoice_id, actor="ops@example.com")
    """

    def __init__(
        self,
        store,
        audit: Optional[AuditLogger] = None,
        lock_ttl_seconds: int = 900,
    ):
        self.store = store
        self.audit = audit
        self.lock_ttl_seconds = lock_ttl_seconds

    # -------------------------------------------------------------------------
    # Assembly
    # -------------------------------------------------------------------------

    def select_eligible(self, tenant_id: str, period: AssemblyPeriod) -> List[Transaction]:
        transactions = self.store.list_transactions(
            tenant_id=tenant_id,
            attribution_statuses=[AttributionStatus.ATTRIBUTED],
            upstream_invoice_ids=list(period.upstream_invoice_ids) if period.upstream_invoice_ids else None,
            start_date=period.period_start,
            end_date=period.period_end,
            unclaimed_only=True,
            billable_only=True,
        )
        return transactions

    def assemble(
        self,
        tenant_id: str,
        period: AssemblyPeriod,
        rule_snapshot_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> AssemblyResult:
        """Assemble (or extend the draft of) one tenant-period invoice.

        Raises:
            ClaimConflict: another assembly holds the tenant-period, or a
                selected transaction was claimed concurrently
        """
        period_key = period.key
        holder = f"{run_id or 'adhoc'}:{uuid.uuid4().hex[:8]}"

        with with_correlation(stage="assemble", tenant_id=tenant_id, period=period_key, run_id=run_id):
            if not self.store.acquire_assembly_lock(tenant_id, period_key, holder, self.lock_ttl_seconds):
                conflict = ClaimConflict(tenant_id, period_key, "assembly already in progress")
                self._audit_conflict(conflict, run_id)
                raise conflict

            try:
                return self._assemble_locked(tenant_id, period, period_key, rule_snapshot_id, run_id)
            except ClaimConflict as conflict:
                self._audit_conflict(conflict, run_id)
                raise
            finally:
                self.store.release_assembly_lock(tenant_id, period_key, holder)

    def _assemble_locked(
        self,
        tenant_id: str,
        period: AssemblyPeriod,
        period_key: str,
        rule_snapshot_id: Optional[str],
        run_id: Optional[str],
    ) -> AssemblyResult:
        eligible = self.select_eligible(tenant_id, period)
        if not eligible:
            logger.info("Nothing to claim for period")
            return AssemblyResult(tenant_id=tenant_id, period_key=period_key)

        draft = self.store.find_draft_invoice(tenant_id, period_key)
        existing_lines = (
            self.store.list_transactions(generated_invoice_id=draft.invoice_id) if draft else []
        )

        allocations = self._allocate(eligible)
        all_lines = existing_lines + [
            txn.model_copy(update={"billed_amount": allocations[txn.transaction_id]}) for txn in eligible
        ]
        subtotals = self._subtotals(all_lines)
        total = exact_sum(subtotals.values())

        if draft is None:
            invoice = GeneratedInvoice(
                invoice_id=str(uuid.uuid4()),
                invoice_number=self._invoice_number(tenant_id, period, all_lines),
                tenant_id=tenant_id,
                period_start=period.period_start or min(t.charge_date for t in all_lines),
                period_end=period.period_end or max(t.charge_date for t in all_lines),
                upstream_invoice_ids=sorted({t.upstream_invoice_id for t in all_lines if t.upstream_invoice_id}),
                subtotals=subtotals,
                total=total,
                line_count=len(all_lines),
                status=InvoiceStatus.DRAFT,
                rule_snapshot_id=rule_snapshot_id,
            )
        else:
            upstream_ids = set(draft.upstream_invoice_ids)
            upstream_ids.update(t.upstream_invoice_id for t in eligible if t.upstream_invoice_id)
            invoice = draft.model_copy(update={
                "subtotals": subtotals,
                "total": total,
                "line_count": len(all_lines),
                "upstream_invoice_ids": sorted(upstream_ids),
                "rule_snapshot_id": rule_snapshot_id or draft.rule_snapshot_id,
            })

        self.store.claim_transactions(invoice, period_key, allocations, create=draft is None)

        logger.info(
            f"{'Drafted' if draft is None else 'Extended draft'} invoice {invoice.invoice_number}",
            extra_fields={
                "invoice_id": invoice.invoice_id,
                "claimed": len(eligible),
                "total": str(invoice.total),
            },
        )
        if self.audit:
            self.audit.log_info(
                AuditEventType.INVOICE_DRAFTED if draft is None else AuditEventType.INVOICE_RECOMPUTED,
                f"Invoice {invoice.invoice_number} claimed {len(eligible)} transactions",
                run_id=run_id,
                tenant_id=tenant_id,
                invoice_id=invoice.invoice_id,
                details={"period_key": period_key, "total": str(invoice.total)},
            )

        return AssemblyResult(
            tenant_id=tenant_id,
            period_key=period_key,
            invoice=invoice,
            claimed=len(eligible),
            created=draft is None,
        )

    def _allocate(self, eligible: List[Transaction]) -> Dict[str, Decimal]:
        """Cent amounts for newly claimed lines.

        Lines already on the draft keep their persisted cents; new lines are
        allocated so each category's persisted lines sum to the rounded exact
        category total.
        """
        allocations: Dict[str, Decimal] = {}
        for lines in _group_by_category(eligible).values():
            allocations.update(allocate_cents({t.transaction_id: t.billed_amount for t in lines}))
        return allocations

    @staticmethod
    def _subtotals(lines: List[Transaction]) -> Dict[DisplayCategory, Decimal]:
        subtotals = {}
        for category, group in _group_by_category(lines).items():
            subtotals[category] = round_cents(exact_sum(t.billed_amount for t in group))
        return dict(sorted(subtotals.items(), key=lambda item: list(DisplayCategory).index(item[0])))

    def _invoice_number(self, tenant_id: str, period: AssemblyPeriod, lines: List[Transaction]) -> str:
        tenant = self.store.get_tenant(tenant_id)
        code = (tenant.short_code if tenant and tenant.short_code else tenant_id).upper()
        period_end = period.period_end or max(t.charge_date for t in lines)
        sequence = self.store.next_invoice_sequence(tenant_id)
        return f"{code}-{period_end:%Y%m%d}-{sequence:04d}"

    def _audit_conflict(self, conflict: ClaimConflict, run_id: Optional[str]) -> None:
        logger.warning(conflict.message, extra_fields=conflict.details)
        if self.audit:
            self.audit.log_warning(
                AuditEventType.CLAIM_CONFLICT,
                conflict.message,
                run_id=run_id,
                tenant_id=conflict.tenant_id,
                details={"period_key": conflict.period_key, "reason": conflict.reason},
            )

    # -------------------------------------------------------------------------
    # Draft maintenance & lifecycle
    # -------------------------------------------------------------------------

    def recompute_draft(self, invoice_id: str) -> GeneratedInvoice:
        """Recompute a draft's subtotals from the transactions it still claims."""
        invoice = self._get(invoice_id)
        if not invoice.is_mutable:
            raise InvoiceStateError(f"Invoice {invoice.invoice_number} is {invoice.status.value}; only drafts change")

        lines = self.store.list_transactions(generated_invoice_id=invoice_id)
        subtotals = self._subtotals(lines)
        updated = invoice.model_copy(update={
            "subtotals": subtotals,
            "total": exact_sum(subtotals.values()),
            "line_count": len(lines),
        })
        self.store.update_invoice_totals(updated)
        return updated

    def approve(self, invoice_id: str, actor: str) -> GeneratedInvoice:
        return self._transition(invoice_id, InvoiceStatus.DRAFT, InvoiceStatus.APPROVED, actor,
                                AuditEventType.INVOICE_APPROVED)

    def mark_sent(self, invoice_id: str, actor: str) -> GeneratedInvoice:
        return self._transition(invoice_id, InvoiceStatus.APPROVED, InvoiceStatus.SENT, actor,
                                AuditEventType.INVOICE_SENT)

    def _transition(
        self,
        invoice_id: str,
        from_status: InvoiceStatus,
        to_status: InvoiceStatus,
        actor: str,
        event_type: AuditEventType,
    ) -> GeneratedInvoice:
        invoice = self._get(invoice_id)
        if invoice.status != from_status:
            raise InvoiceStateError(
                f"Cannot move invoice {invoice.invoice_number} from {invoice.status.value} to {to_status.value}"
            )
        self.store.transition_invoice(invoice_id, from_status, to_status, actor=actor)
        if self.audit:
            self.audit.log_info(
                event_type,
                f"Invoice {invoice.invoice_number} {to_status.value}",
                tenant_id=invoice.tenant_id,
                invoice_id=invoice_id,
                actor=actor,
                details={"from": from_status.value, "to": to_status.value, "at": datetime.utcnow().isoformat()},
            )
        return self._get(invoice_id)

    def _get(self, invoice_id: str) -> GeneratedInvoice:
        invoice = self.store.get_invoice(invoice_id)
        if invoice is None:
            raise InvoiceStateError(f"Invoice {invoice_id} not found")
        return invoice
