"""Preflight data-quality checks and post-generation invoice verification."""

from datetime import date
from decimal import Decimal

import pytest

from conftest import PERIOD_END, PERIOD_START
from admin.operations import preflight_period, verify_generated_invoice
from core.audit.events import AuditEventType
from core.errors import AdminOperationError, InvoiceStateError
from invoice_assembler import AssemblyPeriod, InvoiceAssembler, run_preflight, verify_invoice
from models.canonical import AttributionStatus, FeeCategory, PricingRule, PricingStatus, RuleType
from pipeline import BillingRun
from pricing_engine import PricingEngine, RuleSetSnapshot


PERIOD = AssemblyPeriod(PERIOD_START, PERIOD_END)


def freeze(store) -> RuleSetSnapshot:
    return RuleSetSnapshot.freeze(store.list_pricing_rules(), as_of=PERIOD_END)


class TestPreflight:

    def test_clean_period_passes(self, store, tenants, seed):
        seed("T1", tenant_id="acme", billed="11.50")

        report = run_preflight(store, "acme", PERIOD)

        assert report.passed
        assert report.line_count == 1
        assert report.blocking == []
        assert report.warnings == []

    def test_unpriced_lines_block(self, store, tenants, seed):
        seed("T1", tenant_id="acme")

        report = run_preflight(store, "acme", PERIOD)

        assert not report.passed
        assert [c.check_id for c in report.blocking] == ["P1"]
        assert report.check("P1").sample_ids == ["T1"]

    def test_unconfigured_rate_only_warns(self, store, tenants, seed):
        seed("T1", tenant_id="acme")
        store.save_pricing("T1", Decimal("10.00"), None, PricingStatus.UNCONFIGURED)

        report = run_preflight(store, "acme", PERIOD)

        assert report.passed
        assert [c.check_id for c in report.warnings] == ["P2"]

    def test_storage_needs_an_inventory_item(self, store, tenants, seed):
        seed("S1", tenant_id="acme", billed="2.00", fee_category=FeeCategory.STORAGE, reference_id="182")
        seed("S2", tenant_id="acme", billed="2.00", fee_category=FeeCategory.STORAGE, reference_id="182",
             details={"InventoryId": 77})
        seed("S3", tenant_id="acme", billed="2.00", fee_category=FeeCategory.STORAGE, reference_id="182-78-A")

        check = run_preflight(store, "acme", PERIOD).check("P3")

        assert check.severity == "BLOCK"
        assert check.sample_ids == ["S1"]

    def test_returns_need_an_order_reference(self, store, tenants, seed):
        seed("R1", tenant_id="acme", billed="3.00", fee_category=FeeCategory.RETURN_PROCESSING)
        seed("R2", tenant_id="acme", billed="3.00", fee_category=FeeCategory.RETURN_PROCESSING,
             details={"OriginalShipmentId": "100234"})

        report = run_preflight(store, "acme", PERIOD)

        assert not report.passed
        assert report.check("P4").sample_ids == ["R1"]

    def test_shipping_needs_a_reference_id(self, store, tenants, make_txn):
        txn = make_txn("T1").model_copy(update={"reference_id": ""})
        store.upsert_transactions([txn])
        store.save_attribution("T1", AttributionStatus.ATTRIBUTED, tenant_id="acme", strategy="test")
        store.save_pricing("T1", Decimal("10.00"), None, PricingStatus.PRICED)

        report = run_preflight(store, "acme", PERIOD)

        assert [c.check_id for c in report.blocking] == ["P5"]

    def test_credit_without_reason_warns(self, store, tenants, seed):
        seed("C1", tenant_id="acme", billed="-5.00", amount="-5.00", fee_category=FeeCategory.CREDIT)
        seed("C2", tenant_id="acme", billed="-5.00", amount="-5.00", fee_category=FeeCategory.CREDIT,
             details={"CreditReason": "damaged"})

        report = run_preflight(store, "acme", PERIOD)

        assert report.passed
        assert report.check("P6").sample_ids == ["C1"]

    def test_counts_unassigned_lines_across_the_period(self, store, tenants, seed):
        seed("T1", tenant_id="acme", billed="11.50")
        seed("U1")
        seed("U2")
        store.save_attribution("U2", AttributionStatus.UNATTRIBUTABLE)
        seed("U3")
        store.save_attribution("U3", AttributionStatus.PENDING)
        seed("U4", charge_date=date(2025, 12, 5))

        report = run_preflight(store, "acme", PERIOD)

        assert report.passed
        assert report.check("P7").sample_ids == ["U3"]
        assert report.check("P8").sample_ids == ["U2"]
        assert report.check("P9").sample_ids == ["U1"]

    def test_claimed_lines_are_not_checked(self, store, tenants, seed):
        seed("T1", tenant_id="acme", billed="11.50")
        InvoiceAssembler(store).assemble("acme", PERIOD)
        seed("T2", tenant_id="globex")

        report = run_preflight(store, "acme", PERIOD)

        assert report.line_count == 0
        assert report.passed

    def test_upstream_invoice_period(self, store, tenants, seed):
        seed("T1", tenant_id="acme", upstream_invoice_id="UP-1")
        seed("T2", tenant_id="acme", billed="1.00", upstream_invoice_id="UP-2")

        report = run_preflight(store, "acme", AssemblyPeriod(upstream_invoice_ids=("UP-2",)))

        assert report.passed
        assert report.line_count == 1

    def test_report_dict(self, store, tenants, seed):
        seed("T1", tenant_id="acme")

        data = run_preflight(store, "acme", PERIOD).to_dict()

        assert data["passed"] is False
        first = data["checks"][0]
        assert first == {
            "check_id": "P1",
            "severity": "BLOCK",
            "passed": False,
            "message": "1 lines not priced yet",
            "evidence": {"count": 1, "sample_ids": ["T1"]},
        }


@pytest.fixture
def priced_invoice(store, tenants, seed):
    store.add_pricing_rule(PricingRule(name="global", rule_type=RuleType.PERCENTAGE, value=Decimal("10")))
    seed("T1", tenant_id="acme", amount="10.00")
    seed("S1", tenant_id="acme", amount="3.333", fee_category=FeeCategory.STORAGE, reference_id="182-77-A")
    seed("S2", tenant_id="acme", amount="3.333", fee_category=FeeCategory.STORAGE, reference_id="182-78-A")
    snapshot = freeze(store)
    PricingEngine(snapshot).run(store)
    invoice = InvoiceAssembler(store).assemble("acme", PERIOD, rule_snapshot_id=snapshot.snapshot_id).invoice
    return invoice, snapshot


def tamper(store, sql, *params):
    with store.connect() as conn:
        conn.execute(sql, params)


class TestVerifyInvoice:

    def test_assembled_invoice_passes(self, store, priced_invoice):
        invoice, snapshot = priced_invoice

        report = verify_invoice(store, invoice.invoice_id, snapshot)

        assert report.passed, report.to_dict()
        assert report.lines_checked == 3
        assert invoice.total == Decimal("18.33")

    def test_tampered_line_amount(self, store, priced_invoice):
        invoice, snapshot = priced_invoice
        tamper(store, "UPDATE transactions SET billed_amount = ? WHERE transaction_id = ?", "12.00", "T1")

        report = verify_invoice(store, invoice.invoice_id, snapshot)

        assert report.issue_types() == ["billed_math_error", "subtotal_mismatch"]
        assert [i.transaction_id for i in report.issues if i.issue_type == "billed_math_error"] == ["T1"]

    def test_tampered_total(self, store, priced_invoice):
        invoice, snapshot = priced_invoice
        tamper(store, "UPDATE generated_invoices SET total = ? WHERE invoice_id = ?", "99.99", invoice.invoice_id)

        report = verify_invoice(store, invoice.invoice_id, snapshot)

        assert report.issue_types() == ["total_mismatch"]
        assert report.issues[0].expected == "18.33"

    def test_line_count(self, store, priced_invoice):
        invoice, snapshot = priced_invoice
        tamper(store, "UPDATE generated_invoices SET line_count = 5 WHERE invoice_id = ?", invoice.invoice_id)

        report = verify_invoice(store, invoice.invoice_id, snapshot)

        assert report.issue_types() == ["line_count_mismatch"]

    def test_later_rule_change_is_reported(self, store, priced_invoice):
        invoice, _ = priced_invoice
        store.add_pricing_rule(
            PricingRule(name="acme", tenant_id="acme", rule_type=RuleType.PERCENTAGE, value=Decimal("20"))
        )

        report = verify_invoice(store, invoice.invoice_id, freeze(store))

        assert report.issue_types() == ["billed_math_error", "snapshot_mismatch", "wrong_rule"]
        assert {i.transaction_id for i in report.issues if i.issue_type == "wrong_rule"} == {"T1", "S1", "S2"}

    def test_rule_added_after_unconfigured_billing(self, store, tenants, seed):
        seed("T1", tenant_id="acme", amount="10.00")
        snapshot = freeze(store)
        PricingEngine(snapshot).run(store)
        invoice = InvoiceAssembler(store).assemble("acme", PERIOD, rule_snapshot_id=snapshot.snapshot_id).invoice
        assert verify_invoice(store, invoice.invoice_id, snapshot).passed

        store.add_pricing_rule(PricingRule(name="global", rule_type=RuleType.FIXED, value=Decimal("1.50")))
        report = verify_invoice(store, invoice.invoice_id, freeze(store))

        assert "missing_rule" in report.issue_types()
        assert "wrong_rule" not in report.issue_types()

    def test_unknown_invoice(self, store, tenants):
        with pytest.raises(InvoiceStateError):
            verify_invoice(store, "nope", freeze(store))


class TestAdminCommands:

    def test_verify_defaults_to_drafting_day_rules(self, store, priced_invoice):
        invoice, _ = priced_invoice

        report = verify_generated_invoice(store, invoice.invoice_id)

        assert report.passed

    def test_verify_unknown_invoice_refused(self, store):
        with pytest.raises(AdminOperationError):
            verify_generated_invoice(store, "nope")

    def test_preflight_unknown_tenant_refused(self, store, tenants):
        with pytest.raises(AdminOperationError):
            preflight_period(store, "initech", PERIOD_START, PERIOD_END)

    def test_preflight_needs_a_period(self, store, tenants):
        with pytest.raises(AdminOperationError):
            preflight_period(store, "acme", PERIOD_START)

    def test_preflight_by_upstream_invoice(self, store, tenants, seed):
        seed("T1", tenant_id="acme", billed="11.50")

        report = preflight_period(store, "acme", upstream_invoice_ids=["UP-1"])

        assert report.passed
        assert report.line_count == 1


class TestPreflightGate:

    def test_blocked_tenant_is_not_assembled(self, store, tenants, seed, settings, audit):
        seed("T1", tenant_id="acme")
        seed("T2", tenant_id="globex", billed="9.00")
        run = BillingRun(store, settings=settings.model_copy(update={"preflight_gate": True}), audit=audit)

        stats = run.assemble(PERIOD)

        assert stats.blocked == ["acme"]
        assert len(stats.invoices) == 1
        assert store.get_invoice(stats.invoices[0]).tenant_id == "globex"
        events = audit.query(event_type=AuditEventType.PREFLIGHT_BLOCKED.value)
        assert [e.tenant_id for e in events] == ["acme"]

    def test_gate_off_by_default(self, store, tenants, seed, settings, audit):
        seed("T1", tenant_id="acme", fee_category=FeeCategory.RETURN_PROCESSING, billed="3.00")

        stats = BillingRun(store, settings=settings, audit=audit).assemble(PERIOD)

        assert stats.blocked == []
        assert stats.claimed == 1
