"""Attribution Resolver tests."""

from datetime import datetime, timedelta

from models.canonical import AttributionStatus, FeeCategory, ReferenceType
from tenant_resolver import PendingQueue, TenantResolver, extract_order_reference, parse_storage_reference


class Clock:
    def __init__(self, now=datetime(2025, 12, 1, 9, 0)):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_resolver(store, clock=None, max_attempts=3, max_age=timedelta(days=7)):
    clock = clock or Clock()
    queue = PendingQueue(
        store,
        max_attempts=max_attempts,
        max_age=max_age,
        base_delay=timedelta(minutes=10),
        max_delay=timedelta(hours=1),
    )
    return TenantResolver(store, queue=queue, clock=clock), clock


class TestReferenceParsing:

    def test_storage_reference(self):
        ref = parse_storage_reference("182-21286548-Shelf")
        assert (ref.facility, ref.inventory_item, ref.slot) == ("182", "21286548", "Shelf")

    def test_bare_facility_has_no_item(self):
        assert parse_storage_reference("182").inventory_item is None

    def test_order_reference_from_comment(self, make_txn):
        txn = make_txn("R1", fee_category=FeeCategory.RETURN_PROCESSING,
                       details={"Comment": "Return for Order #320114455"})
        assert extract_order_reference(txn) == "320114455"

    def test_no_order_reference(self, make_txn):
        txn = make_txn("R1", fee_category=FeeCategory.RETURN_PROCESSING, reference_id="RMA",
                       details={"Comment": "customer changed mind"})
        assert extract_order_reference(txn) is None


class TestStrategies:

    def test_shipment_owner(self, store, tenants, seed, own):
        own("shipment", "1001", "acme")
        seed("S1", reference_id="1001")
        resolver, _ = make_resolver(store)

        stats = resolver.run_pass()

        assert stats.attributed == 1
        txn = store.get_transaction("S1")
        assert txn.tenant_id == "acme"
        assert txn.attribution_strategy == "shipment-owner"

    def test_storage_resolves_by_inventory_item_not_facility(self, store, tenants, seed, own):
        # Both tenants store goods in facility 182; only the item identifies the owner
        own("inventory_item", "21286548", "acme")
        own("inventory_item", "99990000", "globex")
        seed("W1", fee_category=FeeCategory.STORAGE, reference_id="182-21286548-Shelf")
        resolver, _ = make_resolver(store)

        resolver.run_pass()

        txn = store.get_transaction("W1")
        assert txn.tenant_id == "acme"
        assert txn.attribution_strategy == "storage-inventory-item"

    def test_receiving_uses_channel_tenant(self, store, tenants, seed):
        seed("WRO1", fee_category=FeeCategory.RECEIVING, reference_id="778899", channel_tenant_id="globex")
        resolver, _ = make_resolver(store)

        resolver.run_pass()

        assert store.get_transaction("WRO1").tenant_id == "globex"

    def test_receiving_falls_back_to_receipt_owner(self, store, tenants, seed, own):
        own("warehouse_receipt", "778899", "acme")
        seed("WRO1", fee_category=FeeCategory.RECEIVING, reference_id="778899")
        resolver, _ = make_resolver(store)

        resolver.run_pass()

        txn = store.get_transaction("WRO1")
        assert txn.tenant_id == "acme"
        assert txn.attribution_strategy == "receiving-receipt"

    def test_return_resolves_through_original_order(self, store, tenants, seed, own):
        own("shipment", "320114455", "globex")
        seed("R1", fee_category=FeeCategory.RETURN_PROCESSING, reference_id="55501",
             details={"OriginalShipmentId": "320114455"})
        resolver, _ = make_resolver(store)

        resolver.run_pass()

        assert store.get_transaction("R1").tenant_id == "globex"

    def test_credit_resolves_by_account(self, store, tenants, seed):
        seed("C1", amount="-4.00", fee_category=FeeCategory.CREDIT, reference_type=ReferenceType.OTHER,
             details={"AccountId": "5522"})
        resolver, _ = make_resolver(store)

        resolver.run_pass()

        assert store.get_transaction("C1").tenant_id == "globex"

    def test_already_attributed_is_never_changed(self, store, tenants, seed, own):
        own("shipment", "1001", "globex")
        seed("S1", reference_id="1001", tenant_id="acme")
        resolver, _ = make_resolver(store)

        stats = resolver.run_pass()

        assert stats.attributed == 0
        assert store.get_transaction("S1").tenant_id == "acme"


class TestUnattributable:

    def test_unresolvable_storage_reference(self, store, tenants, seed):
        seed("W9", fee_category=FeeCategory.STORAGE, reference_id="182")
        resolver, _ = make_resolver(store)

        stats = resolver.run_pass()

        assert stats.unattributable == 1
        assert stats.unattributable_ids == ["W9"]
        txn = store.get_transaction("W9")
        assert txn.tenant_id is None
        assert txn.attribution_status == AttributionStatus.UNATTRIBUTABLE

    def test_other_without_account_is_unattributable(self, store, tenants, seed):
        seed("X1", fee_category=FeeCategory.OTHER, reference_type=ReferenceType.OTHER)
        resolver, _ = make_resolver(store)

        resolver.run_pass()

        assert store.get_transaction("X1").attribution_status == AttributionStatus.UNATTRIBUTABLE

    def test_unknown_account_is_unattributable(self, store, tenants, seed):
        seed("C2", fee_category=FeeCategory.CREDIT, reference_type=ReferenceType.OTHER,
             details={"AccountId": "0000"})
        resolver, _ = make_resolver(store)

        resolver.run_pass()

        assert store.get_transaction("C2").tenant_id is None


class TestPendingQueue:

    def test_unsynced_shipment_goes_pending(self, store, tenants, seed):
        seed("S2", reference_id="2002")
        resolver, _ = make_resolver(store)

        stats = resolver.run_pass()

        assert stats.pending == 1
        item = store.get_pending("S2")
        assert item.dependency_key == "shipment:2002"
        assert item.attempts == 1

    def test_pending_is_not_retried_before_due(self, store, tenants, seed):
        seed("S2", reference_id="2002")
        resolver, clock = make_resolver(store)
        resolver.run_pass()

        clock.advance(minutes=5)
        stats = resolver.run_pass()

        assert stats.deferred == 1
        assert store.get_pending("S2").attempts == 1

    def test_pending_resolves_once_entity_syncs(self, store, tenants, seed, own):
        seed("S2", reference_id="2002")
        resolver, clock = make_resolver(store)
        resolver.run_pass()

        own("shipment", "2002", "globex")
        clock.advance(minutes=11)
        stats = resolver.run_pass()

        assert stats.attributed == 1
        assert store.get_transaction("S2").tenant_id == "globex"
        assert store.get_pending("S2") is None

    def test_backoff_doubles_and_caps(self, store):
        queue = PendingQueue(store, base_delay=timedelta(minutes=10), max_delay=timedelta(minutes=30))
        assert queue.get_delay(1) == timedelta(minutes=10)
        assert queue.get_delay(2) == timedelta(minutes=20)
        assert queue.get_delay(3) == timedelta(minutes=30)

    def test_exhausted_attempts_become_unattributable(self, store, tenants, seed):
        seed("S2", reference_id="2002")
        resolver, clock = make_resolver(store, max_attempts=3)

        for _ in range(3):
            resolver.run_pass()
            clock.advance(hours=2)

        txn = store.get_transaction("S2")
        assert txn.attribution_status == AttributionStatus.UNATTRIBUTABLE
        assert store.get_pending("S2") is None

    def test_exhausted_age_becomes_unattributable(self, store, tenants, seed):
        seed("S2", reference_id="2002")
        resolver, clock = make_resolver(store, max_attempts=100, max_age=timedelta(hours=1))
        resolver.run_pass()

        clock.advance(hours=2)
        stats = resolver.run_pass()

        assert stats.unattributable == 1
