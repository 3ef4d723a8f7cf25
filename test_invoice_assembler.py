"""Invoice Assembler tests: claiming, allocation, lifecycle."""

from datetime import date
from decimal import Decimal

import pytest

from conftest import PERIOD_END, PERIOD_START
from core.audit.events import AuditEventType
from core.errors import ClaimConflict, InvoiceStateError
from invoice_assembler import AssemblyPeriod, InvoiceAssembler, allocate_cents
from models.canonical import AttributionStatus, DisplayCategory, FeeCategory, InvoiceStatus


PERIOD = AssemblyPeriod(PERIOD_START, PERIOD_END)


class TestAllocation:

    def test_lines_sum_to_rounded_total(self):
        allocated = allocate_cents({"a": Decimal("1.005"), "b": Decimal("1.005"), "c": Decimal("1.005")})
        assert sum(allocated.values()) == Decimal("3.02")
        assert allocated == {"a": Decimal("1.01"), "b": Decimal("1.01"), "c": Decimal("1.00")}

    def test_largest_remainder_gets_the_cent(self):
        allocated = allocate_cents({"a": Decimal("0.101"), "b": Decimal("0.109")})
        assert allocated == {"a": Decimal("0.10"), "b": Decimal("0.11")}

    def test_negative_amounts(self):
        allocated = allocate_cents({"a": Decimal("-4.405"), "b": Decimal("10.00")})
        assert sum(allocated.values()) == Decimal("5.60")

    def test_empty(self):
        assert allocate_cents({}) == {}


class TestAssemble:

    def test_claims_priced_transactions(self, store, tenants, seed):
        seed("T1", tenant_id="acme", billed="11.50")
        seed("T2", tenant_id="acme", billed="2.3333", fee_category=FeeCategory.STORAGE, reference_id="182-1-A")
        seed("T3", tenant_id="globex", billed="9.00")
        assembler = InvoiceAssembler(store)

        result = assembler.assemble("acme", PERIOD)

        invoice = result.invoice
        assert result.created
        assert result.claimed == 2
        assert invoice.tenant_id == "acme"
        assert invoice.invoice_number == "ACME-20251130-0001"
        assert invoice.subtotals[DisplayCategory.SHIPPING] == Decimal("11.50")
        assert invoice.subtotals[DisplayCategory.STORAGE] == Decimal("2.33")
        assert invoice.total == Decimal("13.83")
        assert invoice.upstream_invoice_ids == ["UP-1"]
        assert store.get_transaction("T1").generated_invoice_id == invoice.invoice_id
        assert store.get_transaction("T3").generated_invoice_id is None

    def test_persisted_lines_match_subtotals(self, store, tenants, seed):
        for i in range(3):
            seed(f"T{i}", tenant_id="acme", billed="1.005")
        result = InvoiceAssembler(store).assemble("acme", PERIOD)

        lines = store.list_transactions(generated_invoice_id=result.invoice.invoice_id)
        assert sum(t.billed_amount for t in lines) == result.invoice.total == Decimal("3.02")

    def test_second_assembly_is_a_noop(self, store, tenants, seed):
        seed("T1", tenant_id="acme", billed="11.50")
        assembler = InvoiceAssembler(store)
        first = assembler.assemble("acme", PERIOD)

        second = assembler.assemble("acme", PERIOD)

        assert second.is_noop
        assert second.claimed == 0
        assert len(store.list_invoices(tenant_id="acme")) == 1
        assert store.get_invoice(first.invoice.invoice_id).total == Decimal("11.50")

    def test_late_arrival_extends_draft(self, store, tenants, seed):
        seed("T1", tenant_id="acme", billed="11.50")
        assembler = InvoiceAssembler(store)
        first = assembler.assemble("acme", PERIOD)

        seed("T2", tenant_id="acme", billed="3.25", upstream_invoice_id="UP-2")
        second = assembler.assemble("acme", PERIOD)

        assert not second.created
        assert second.claimed == 1
        assert second.invoice.invoice_id == first.invoice.invoice_id
        stored = store.get_invoice(first.invoice.invoice_id)
        assert stored.total == Decimal("14.75")
        assert stored.line_count == 2
        assert stored.upstream_invoice_ids == ["UP-1", "UP-2"]

    def test_approved_invoice_is_never_extended(self, store, tenants, seed):
        seed("T1", tenant_id="acme", billed="11.50")
        assembler = InvoiceAssembler(store)
        first = assembler.assemble("acme", PERIOD)
        assembler.approve(first.invoice.invoice_id, actor="ops")

        seed("T2", tenant_id="acme", billed="3.25")
        second = assembler.assemble("acme", PERIOD)

        assert second.created
        assert second.invoice.invoice_id != first.invoice.invoice_id
        assert store.get_invoice(first.invoice.invoice_id).total == Decimal("11.50")

    def test_unattributable_and_unpriced_are_excluded(self, store, tenants, seed):
        seed("T1", tenant_id="acme", billed="11.50")
        seed("T2", tenant_id="acme")
        seed("U1")
        store.save_attribution("U1", AttributionStatus.UNATTRIBUTABLE)

        result = InvoiceAssembler(store).assemble("acme", PERIOD)

        assert result.claimed == 1
        assert store.get_transaction("T2").generated_invoice_id is None
        assert store.get_transaction("U1").generated_invoice_id is None

    def test_outside_period_is_not_claimed(self, store, tenants, seed):
        seed("T1", tenant_id="acme", billed="11.50", charge_date=date(2025, 12, 1))
        assert InvoiceAssembler(store).assemble("acme", PERIOD).is_noop

    def test_period_by_upstream_invoice(self, store, tenants, seed):
        seed("T1", tenant_id="acme", billed="1.00", upstream_invoice_id="UP-1")
        seed("T2", tenant_id="acme", billed="2.00", upstream_invoice_id="UP-2")

        result = InvoiceAssembler(store).assemble("acme", AssemblyPeriod(upstream_invoice_ids=("UP-2",)))

        assert result.claimed == 1
        assert result.invoice.total == Decimal("2.00")


class TestClaimConflicts:

    def test_held_lock_raises_without_claiming(self, store, tenants, seed, audit):
        seed("T1", tenant_id="acme", billed="11.50")
        assert store.acquire_assembly_lock("acme", PERIOD.key, "other-run", ttl_seconds=900)
        assembler = InvoiceAssembler(store, audit=audit)

        with pytest.raises(ClaimConflict):
            assembler.assemble("acme", PERIOD)

        assert store.get_transaction("T1").generated_invoice_id is None
        assert audit.query(event_type=AuditEventType.CLAIM_CONFLICT.value)

    def test_stale_lock_is_taken_over(self, store, tenants, seed):
        seed("T1", tenant_id="acme", billed="11.50")
        store.acquire_assembly_lock("acme", PERIOD.key, "crashed-run", ttl_seconds=900)

        result = InvoiceAssembler(store, lock_ttl_seconds=0).assemble("acme", PERIOD)

        assert result.claimed == 1

    def test_lock_released_after_assembly(self, store, tenants, seed):
        seed("T1", tenant_id="acme", billed="11.50")
        InvoiceAssembler(store).assemble("acme", PERIOD)
        assert store.acquire_assembly_lock("acme", PERIOD.key, "next-run", ttl_seconds=900)


class TestLifecycle:

    def _draft(self, store, seed):
        seed("T1", tenant_id="acme", billed="11.50")
        return InvoiceAssembler(store).assemble("acme", PERIOD).invoice

    def test_draft_approved_sent(self, store, tenants, seed, audit):
        invoice = self._draft(store, seed)
        assembler = InvoiceAssembler(store, audit=audit)

        approved = assembler.approve(invoice.invoice_id, actor="ops")
        sent = assembler.mark_sent(invoice.invoice_id, actor="ops")

        assert approved.status == InvoiceStatus.APPROVED
        assert approved.approved_by == "ops"
        assert sent.status == InvoiceStatus.SENT
        assert sent.sent_at is not None
        assert audit.query(event_type=AuditEventType.INVOICE_SENT.value)

    def test_cannot_send_a_draft(self, store, tenants, seed):
        invoice = self._draft(store, seed)
        with pytest.raises(InvoiceStateError):
            InvoiceAssembler(store).mark_sent(invoice.invoice_id, actor="ops")

    def test_cannot_approve_twice(self, store, tenants, seed):
        invoice = self._draft(store, seed)
        assembler = InvoiceAssembler(store)
        assembler.approve(invoice.invoice_id, actor="ops")
        with pytest.raises(InvoiceStateError):
            assembler.approve(invoice.invoice_id, actor="ops")

    def test_recompute_only_on_drafts(self, store, tenants, seed):
        invoice = self._draft(store, seed)
        assembler = InvoiceAssembler(store)
        assembler.approve(invoice.invoice_id, actor="ops")
        with pytest.raises(InvoiceStateError):
            assembler.recompute_draft(invoice.invoice_id)

    def test_unknown_invoice(self, store):
        with pytest.raises(InvoiceStateError):
            InvoiceAssembler(store).approve("nope", actor="ops")
