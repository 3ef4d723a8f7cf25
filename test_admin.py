"""Administrative operation tests."""

from decimal import Decimal

import pytest

from conftest import PERIOD_END, PERIOD_START
from admin import approve_invoice, force_attribution, reset_transactions, save_pricing_rule, send_invoice
from admin.operations import list_unattributable
from core.audit.events import AuditEventType
from core.errors import AdminOperationError
from invoice_assembler import AssemblyPeriod, InvoiceAssembler
from models.canonical import AttributionStatus, InvoiceStatus, PricingRule, PricingStatus, RuleType


PERIOD = AssemblyPeriod(PERIOD_START, PERIOD_END)


def events(audit, event_type):
    return audit.query(event_type=event_type.value)


@pytest.fixture
def draft(store, tenants, seed):
    seed("T1", tenant_id="acme", billed="11.50")
    seed("T2", tenant_id="acme", billed="3.25")
    return InvoiceAssembler(store).assemble("acme", PERIOD).invoice


class TestReset:

    def test_reset_on_draft_recomputes_invoice(self, store, draft, audit):
        result = reset_transactions(store, ["T2"], actor="ops", reason="wrong rate", audit=audit)

        assert result.recomputed_invoices == [draft.invoice_id]
        txn = store.get_transaction("T2")
        assert txn.generated_invoice_id is None
        assert txn.billed_amount is None
        assert txn.pricing_status == PricingStatus.UNPRICED
        assert store.get_invoice(draft.invoice_id).total == Decimal("11.50")

        event = events(audit, AuditEventType.ADMIN_RESET)[0]
        assert event.actor == "ops"
        assert event.reason == "wrong rate"
        assert event.details["transaction_ids"] == ["T2"]

    def test_reset_transaction_is_reclaimed_by_next_assembly(self, store, draft, audit):
        reset_transactions(store, ["T2"], actor="ops", reason="re-price", audit=audit)
        store.save_pricing("T2", Decimal("4.00"), None, PricingStatus.PRICED)

        result = InvoiceAssembler(store).assemble("acme", PERIOD)

        assert result.invoice.invoice_id == draft.invoice_id
        assert store.get_invoice(draft.invoice_id).total == Decimal("15.50")

    def test_reset_refused_on_approved_invoice(self, store, draft, audit):
        InvoiceAssembler(store).approve(draft.invoice_id, actor="ops")

        with pytest.raises(AdminOperationError):
            reset_transactions(store, ["T1"], actor="ops", reason="oops", audit=audit)

        assert store.get_transaction("T1").generated_invoice_id == draft.invoice_id
        assert not events(audit, AuditEventType.ADMIN_RESET)

    def test_batch_limit(self, store, draft, audit):
        with pytest.raises(AdminOperationError):
            reset_transactions(store, ["T1", "T2"], actor="ops", reason="bulk", audit=audit, max_batch=1)

    def test_duplicate_ids_count_once(self, store, draft, audit):
        result = reset_transactions(store, ["T2", "T2"], actor="ops", reason="dup", audit=audit, max_batch=1)
        assert result.transaction_ids == ["T2"]

    @pytest.mark.parametrize("actor,reason", [("", "why"), ("ops", ""), ("ops", "   ")])
    def test_actor_and_reason_required(self, store, draft, audit, actor, reason):
        with pytest.raises(AdminOperationError):
            reset_transactions(store, ["T1"], actor=actor, reason=reason, audit=audit)

    def test_unknown_transaction(self, store, draft, audit):
        with pytest.raises(AdminOperationError):
            reset_transactions(store, ["T1", "nope"], actor="ops", reason="x", audit=audit)
        assert store.get_transaction("T1").is_claimed


class TestForceAttribution:

    def test_unattributable_transaction(self, store, tenants, seed, audit):
        seed("U1")
        store.save_attribution("U1", AttributionStatus.UNATTRIBUTABLE)
        assert [t.transaction_id for t in list_unattributable(store)] == ["U1"]

        force_attribution(store, "U1", "globex", actor="ops", reason="confirmed with client", audit=audit)

        txn = store.get_transaction("U1")
        assert txn.tenant_id == "globex"
        assert txn.attribution_status == AttributionStatus.ATTRIBUTED
        assert txn.attribution_strategy == "manual"
        assert list_unattributable(store) == []
        event = events(audit, AuditEventType.FORCE_ATTRIBUTION)[0]
        assert event.details["previous_status"] == "unattributable"

    def test_correction_clears_price(self, store, tenants, seed, audit):
        seed("T1", tenant_id="acme", billed="11.50")

        force_attribution(store, "T1", "globex", actor="ops", reason="wrong owner", audit=audit)

        txn = store.get_transaction("T1")
        assert txn.tenant_id == "globex"
        assert txn.billed_amount is None

    def test_refused_for_claimed(self, store, draft, audit):
        with pytest.raises(AdminOperationError):
            force_attribution(store, "T1", "globex", actor="ops", reason="x", audit=audit)

    def test_refused_for_unknown_tenant(self, store, tenants, seed, audit):
        seed("U1")
        with pytest.raises(AdminOperationError):
            force_attribution(store, "U1", "initech", actor="ops", reason="x", audit=audit)


class TestRulesAndInvoices:

    def test_rule_change_is_audited(self, store, audit):
        rule = save_pricing_rule(
            store, PricingRule(name="global", rule_type=RuleType.PERCENTAGE, value=Decimal("18")),
            actor="ops", reason="new contract", audit=audit,
        )
        save_pricing_rule(
            store, rule.model_copy(update={"value": Decimal("20")}),
            actor="ops", reason="rate change", audit=audit,
        )

        changes = events(audit, AuditEventType.RULE_CHANGED)
        assert len(changes) == 2
        assert changes[1].details["before"]["value"] == "18"
        assert changes[1].details["after"]["value"] == "20"
        assert store.get_pricing_rule(rule.rule_id).value == Decimal("20")

    def test_update_unknown_rule(self, store, audit):
        with pytest.raises(AdminOperationError):
            save_pricing_rule(
                store, PricingRule(rule_id=99, rule_type=RuleType.FIXED, value=Decimal("1")),
                actor="ops", reason="x", audit=audit,
            )

    def test_approve_and_send(self, store, draft, audit):
        approve_invoice(store, draft.invoice_id, actor="ops", audit=audit)
        sent = send_invoice(store, draft.invoice_id, actor="ops", audit=audit)
        assert sent.status == InvoiceStatus.SENT

    def test_send_draft_refused(self, store, draft, audit):
        with pytest.raises(AdminOperationError):
            send_invoice(store, draft.invoice_id, actor="ops", audit=audit)
