"""Record Normalizer tests."""

from datetime import date
from decimal import Decimal

import pytest

from core.errors import MalformedRecord
from ingestion.categories import classify_fee, display_category_for, reference_type_for
from ingestion.normalize import normalize_batch, normalize_record, normalize_upstream_invoice
from models.canonical import DisplayCategory, FeeCategory, ReferenceType


def raw_charge(**overrides):
    record = {
        "transaction_id": "01HXY",
        "amount": 8.43,
        "charge_date": "2025-11-24T18:04:11Z",
        "transaction_fee": "Shipping",
        "reference_id": "320114455",
        "reference_type": "Shipment",
        "invoice_id": 8633612,
        "invoiced_status": True,
        "fulfillment_center": "Twin Lakes (WI)",
        "additional_details": {"weight_oz": "12.5", "state": "WI"},
    }
    record.update(overrides)
    return record


class TestFeeVocabulary:
    """Upstream labels map to exactly one category."""

    @pytest.mark.parametrize("label,category", [
        ("Shipping", FeeCategory.SHIPPING),
        ("Per Pick Fee", FeeCategory.PICK_FEE),
        ("Warehousing Fee", FeeCategory.STORAGE),
        ("WRO Receiving Fee", FeeCategory.RECEIVING),
        ("Return to sender - Processing Fees", FeeCategory.RETURN_PROCESSING),
        ("Return Label", FeeCategory.RETURN_LABEL),
        ("Credit", FeeCategory.CREDIT),
        ("B2B - Each Pick Fee", FeeCategory.B2B_FEE),
        ("  kitting   FEE ", FeeCategory.ADDITIONAL_SERVICE),
    ])
    def test_known_labels(self, label, category):
        assert classify_fee(label) == (category, True)

    def test_unknown_label_is_other_and_flagged(self):
        assert classify_fee("Quantum Handling Surcharge") == (FeeCategory.OTHER, False)

    def test_reference_type_follows_category(self):
        assert reference_type_for(FeeCategory.STORAGE, "Shipment") == ReferenceType.STORAGE_LOCATION
        assert reference_type_for(FeeCategory.SHIPPING) == ReferenceType.SHIPMENT

    def test_credit_reference_type_comes_from_upstream_tag(self):
        assert reference_type_for(FeeCategory.CREDIT, "Shipment") == ReferenceType.SHIPMENT
        assert reference_type_for(FeeCategory.CREDIT, "FC") == ReferenceType.STORAGE_LOCATION
        assert reference_type_for(FeeCategory.CREDIT, None) == ReferenceType.OTHER
        assert reference_type_for(FeeCategory.CREDIT, "Mystery") == ReferenceType.OTHER

    def test_return_categories_share_display_group(self):
        assert display_category_for(FeeCategory.RETURN_LABEL) == DisplayCategory.RETURNS
        assert display_category_for(FeeCategory.RETURN_PROCESSING) == DisplayCategory.RETURNS


class TestNormalizeRecord:

    def test_full_record(self):
        txn = normalize_record(raw_charge())
        assert txn.transaction_id == "01HXY"
        assert txn.amount == Decimal("8.43")
        assert txn.charge_date == date(2025, 11, 24)
        assert txn.fee_category == FeeCategory.SHIPPING
        assert txn.reference_type == ReferenceType.SHIPMENT
        assert txn.upstream_invoice_id == "8633612"
        assert txn.details["FulfillmentCenter"] == "Twin Lakes (WI)"
        assert txn.details["weight_oz"] == "12.5"

    def test_never_sets_tenant_or_claim_state(self):
        txn = normalize_record(raw_charge(), channel_tenant_id="acme")
        assert txn.tenant_id is None
        assert txn.channel_tenant_id == "acme"
        assert txn.generated_invoice_id is None
        assert txn.billed_amount is None

    def test_amount_strings_are_exact(self):
        assert normalize_record(raw_charge(amount="$1,234.567")).amount == Decimal("1234.567")
        assert normalize_record(raw_charge(amount="(5.00)")).amount == Decimal("-5.00")

    def test_uninvoiced_charge_has_no_upstream_invoice(self):
        txn = normalize_record(raw_charge(invoiced_status=False))
        assert txn.upstream_invoice_id is None

    @pytest.mark.parametrize("field", ["transaction_id", "amount", "charge_date", "transaction_fee"])
    def test_missing_required_field_is_malformed(self, field):
        record = raw_charge()
        del record[field]
        with pytest.raises(MalformedRecord):
            normalize_record(record)

    @pytest.mark.parametrize("overrides", [
        {"amount": "twelve"},
        {"amount": True},
        {"amount": "NaN"},
        {"charge_date": "24th of November"},
        {"transaction_fee": "   "},
    ])
    def test_unparseable_values_are_malformed(self, overrides):
        with pytest.raises(MalformedRecord):
            normalize_record(raw_charge(**overrides))

    @pytest.mark.parametrize("overrides", [
        {"additional_details": "Order #12345"},
        {"additional_details": ["Order", "12345"]},
        {"charge_date": ["2025-11-24"]},
        {"charge_date": {"day": 24}},
    ])
    def test_wrong_field_types_are_malformed(self, overrides):
        with pytest.raises(MalformedRecord):
            normalize_record(raw_charge(**overrides))

    def test_unknown_label_is_counted(self):
        unknown = {}
        txn = normalize_record(raw_charge(transaction_fee="Mystery Fee"), unknown_labels=unknown)
        assert txn.fee_category == FeeCategory.OTHER
        assert unknown == {"Mystery Fee": 1}


class TestNormalizeBatch:

    def test_malformed_record_does_not_stop_batch(self):
        result = normalize_batch([
            raw_charge(transaction_id="A"),
            raw_charge(transaction_id="B", amount=None),
            raw_charge(transaction_id="C"),
        ])
        assert [t.transaction_id for t in result.transactions] == ["A", "C"]
        assert len(result.malformed) == 1

    def test_duplicates_collapse_last_wins(self):
        result = normalize_batch([
            raw_charge(transaction_id="A", amount="1.00"),
            raw_charge(transaction_id="A", amount="2.00"),
        ])
        assert result.duplicates == 1
        assert len(result.transactions) == 1
        assert result.transactions[0].amount == Decimal("2.00")

    def test_bad_details_do_not_cost_the_good_records(self):
        result = normalize_batch([
            raw_charge(transaction_id="T1"),
            raw_charge(transaction_id="T2", additional_details="Order #12345"),
            "not a record",
            raw_charge(transaction_id="T3", charge_date=["2025-11-24"]),
        ])
        assert [t.transaction_id for t in result.transactions] == ["T1"]
        assert len(result.malformed) == 3


class TestUpstreamInvoice:

    def test_normalize(self):
        invoice = normalize_upstream_invoice({
            "invoice_id": 8633612,
            "invoice_type": "Shipping",
            "invoice_date": "2025-12-01",
            "amount": "11127.61",
        })
        assert invoice.upstream_invoice_id == "8633612"
        assert invoice.total_amount == Decimal("11127.61")
        assert invoice.invoice_date == date(2025, 12, 1)

    def test_missing_amount_is_malformed(self):
        with pytest.raises(MalformedRecord):
            normalize_upstream_invoice({"invoice_id": 1, "invoice_date": "2025-12-01"})

    @pytest.mark.parametrize("raw", [
        {"invoice_id": 2, "invoice_date": ["2025-12-01"], "amount": "5.00"},
        {"invoice_id": 3, "invoice_date": "2025-12-01", "amount": {"value": "5.00"}},
        "8633612",
    ])
    def test_wrong_field_types_are_malformed(self, raw):
        with pytest.raises(MalformedRecord):
            normalize_upstream_invoice(raw)
