"""Shared fixtures: an ephemeral ledger, two tenants, and factories."""

from datetime import date
from decimal import Decimal
from typing import Optional

import pytest

from core.audit.events import AuditLogger, InMemoryAuditBackend
from core.config import BillingSettings
from ledger.db import LedgerStore
from models.canonical import (
    AttributionStatus,
    FeeCategory,
    OwnedEntity,
    OwnedEntityKind,
    PricingStatus,
    ReferenceType,
    Tenant,
    Transaction,
)


PERIOD_START = date(2025, 11, 24)
PERIOD_END = date(2025, 11, 30)

DEFAULT_REFERENCE_TYPES = {
    FeeCategory.SHIPPING: ReferenceType.SHIPMENT,
    FeeCategory.PICK_FEE: ReferenceType.SHIPMENT,
    FeeCategory.STORAGE: ReferenceType.STORAGE_LOCATION,
    FeeCategory.RECEIVING: ReferenceType.WAREHOUSE_RECEIVING,
    FeeCategory.RETURN_PROCESSING: ReferenceType.RETURN,
}


@pytest.fixture
def store(tmp_path):
    """A fresh sqlite ledger per test."""
    ledger = LedgerStore(tmp_path / "ledger.db")
    ledger.init_schema()
    return ledger


@pytest.fixture
def audit():
    logger = AuditLogger()
    logger.add_backend(InMemoryAuditBackend())
    return logger


@pytest.fixture
def settings(tmp_path):
    return BillingSettings(
        db_path=tmp_path / "ledger.db",
        artifacts_dir=tmp_path / "artifacts",
        feed_initial_delay=0.0,
        feed_max_delay=0.0,
    )


@pytest.fixture
def tenants(store):
    """Two tenants sharing the same facilities and upstream invoices."""
    acme = store.upsert_tenant(Tenant(tenant_id="acme", name="Acme Co", external_account_id="4411", short_code="ACME"))
    globex = store.upsert_tenant(Tenant(tenant_id="globex", name="Globex", external_account_id="5522", short_code="GLX"))
    return acme, globex


@pytest.fixture
def make_txn():
    """Factory for canonical transactions with sensible defaults."""

    def _make(
        transaction_id: str,
        amount="10.00",
        fee_category: FeeCategory = FeeCategory.SHIPPING,
        reference_type: Optional[ReferenceType] = None,
        reference_id: str = "",
        charge_date: date = PERIOD_START,
        upstream_invoice_id: Optional[str] = "UP-1",
        tenant_id: Optional[str] = None,
        details: Optional[dict] = None,
        **kwargs,
    ) -> Transaction:
        return Transaction(
            transaction_id=transaction_id,
            tenant_id=tenant_id,
            fee_category=fee_category,
            fee_type=fee_category.value,
            reference_type=reference_type or DEFAULT_REFERENCE_TYPES.get(fee_category, ReferenceType.OTHER),
            reference_id=reference_id or f"ref-{transaction_id}",
            amount=Decimal(str(amount)),
            charge_date=charge_date,
            upstream_invoice_id=upstream_invoice_id,
            details=details or {},
            **kwargs,
        )

    return _make


@pytest.fixture
def seed(store, make_txn):
    """Insert a transaction and optionally attribute and price it."""

    def _seed(
        transaction_id: str,
        tenant_id: Optional[str] = None,
        billed=None,
        **kwargs,
    ) -> Transaction:
        txn = make_txn(transaction_id, **kwargs)
        store.upsert_transactions([txn])
        if tenant_id is not None:
            store.save_attribution(transaction_id, AttributionStatus.ATTRIBUTED, tenant_id=tenant_id, strategy="test")
        if billed is not None:
            store.save_pricing(transaction_id, Decimal(str(billed)), None, PricingStatus.PRICED)
        return store.get_transaction(transaction_id)

    return _seed


@pytest.fixture
def own(store):
    """Record an owned entity: own("shipment", "1001", "acme")."""

    def _own(kind: str, entity_id: str, tenant_id: str) -> None:
        store.upsert_owned_entity(OwnedEntity(entity_id=entity_id, kind=OwnedEntityKind(kind), tenant_id=tenant_id))

    return _own
