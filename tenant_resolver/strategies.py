"""Attribution strategies, one ordered chain per reference type.

Storage charges are keyed by a composite reference
``{facility}-{inventory_item}-{slot}``. Facilities and upstream invoices are
shared by many tenants, so only the inventory item identifies the owner.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from models.canonical import OwnedEntityKind, ReferenceType, Transaction
from tenant_resolver.models import (
    AttributionStrategy,
    NoMatch,
    OwnedEntityLookup,
    Pending,
    Resolved,
)


# =============================================================================
# Reference parsing
# =============================================================================

@dataclass(frozen=True)
class StorageReference:
    facility: str
    inventory_item: Optional[str]
    slot: Optional[str]


def parse_storage_reference(reference_id: str) -> StorageReference:
    """Split ``182-21286548-Shelf`` into facility, item and slot.

    A bare facility id (aggregate warehouse fee) has no item.
    """
    parts = [p.strip() for p in reference_id.split("-", 2)]
    facility = parts[0]
    inventory_item = parts[1] if len(parts) > 1 and parts[1] else None
    slot = parts[2] if len(parts) > 2 and parts[2] else None
    return StorageReference(facility=facility, inventory_item=inventory_item, slot=slot)


ORDER_REFERENCE_PATTERN = re.compile(
    r"\b(?:order|shipment)\s*(?:#|no\.?|number|id)?\s*[:#]?\s*(\d{3,})",
    re.IGNORECASE,
)

ORDER_REFERENCE_SOURCES = ("Comment", "OrderReference", "OriginalShipmentId")


def extract_order_reference(txn: Transaction) -> Optional[str]:
    """Find the shipment/order id a return charge mentions."""
    for key in ORDER_REFERENCE_SOURCES:
        value = txn.details.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if key == "OriginalShipmentId" and text.isdigit():
            return text
        match = ORDER_REFERENCE_PATTERN.search(text)
        if match:
            return match.group(1)
    match = ORDER_REFERENCE_PATTERN.search(txn.reference_id or "")
    if match:
        return match.group(1)
    return None


# =============================================================================
# Resolvers
# =============================================================================

def _resolve_shipment(txn: Transaction, lookup: OwnedEntityLookup):
    if not txn.reference_id:
        return NoMatch("shipment reference is empty")
    tenant_id = lookup.owner_of(OwnedEntityKind.SHIPMENT, txn.reference_id)
    if tenant_id:
        return Resolved(tenant_id)
    return Pending(f"shipment:{txn.reference_id}", f"shipment {txn.reference_id} not synced")


def storage_inventory_item(txn: Transaction) -> Optional[str]:
    """Inventory item of a storage charge: reference component, else details.InventoryId."""
    ref = parse_storage_reference(txn.reference_id or "")
    if ref.inventory_item:
        return ref.inventory_item
    fallback = txn.details.get("InventoryId")
    return str(fallback) if fallback not in (None, "") else None


def _resolve_storage(txn: Transaction, lookup: OwnedEntityLookup):
    item = storage_inventory_item(txn)
    if item is None:
        return NoMatch(f"storage reference '{txn.reference_id}' has no inventory item")
    tenant_id = lookup.owner_of(OwnedEntityKind.INVENTORY_ITEM, item)
    if tenant_id:
        return Resolved(tenant_id)
    return Pending(f"inventory_item:{item}", f"inventory item {item} not synced")


def _resolve_receiving_channel(txn: Transaction, lookup: OwnedEntityLookup):
    if txn.channel_tenant_id:
        return Resolved(txn.channel_tenant_id)
    return NoMatch("ingestion channel is not tenant-scoped")


def _resolve_receiving_receipt(txn: Transaction, lookup: OwnedEntityLookup):
    if not txn.reference_id:
        return NoMatch("receipt reference is empty")
    tenant_id = lookup.owner_of(OwnedEntityKind.WAREHOUSE_RECEIPT, txn.reference_id)
    if tenant_id:
        return Resolved(tenant_id)
    return NoMatch(f"warehouse receipt {txn.reference_id} unknown")


def _resolve_return(txn: Transaction, lookup: OwnedEntityLookup):
    order_ref = extract_order_reference(txn)
    if order_ref is None:
        return NoMatch("no order reference in return charge")
    tenant_id = lookup.owner_of(OwnedEntityKind.SHIPMENT, order_ref)
    if tenant_id:
        return Resolved(tenant_id)
    return Pending(f"shipment:{order_ref}", f"returned order {order_ref} not synced")


def _resolve_account(txn: Transaction, lookup: OwnedEntityLookup):
    account = txn.details.get("AccountId") or txn.details.get("account_id")
    if not account:
        return NoMatch("no account reference")
    tenant_id = lookup.tenant_for_account(str(account))
    if tenant_id:
        return Resolved(tenant_id)
    return NoMatch(f"account {account} matches no single tenant")


# =============================================================================
# Chains
# =============================================================================

SHIPMENT_OWNER = AttributionStrategy(
    name="shipment-owner",
    applies=lambda txn: True,
    resolve=_resolve_shipment,
)

STORAGE_INVENTORY_ITEM = AttributionStrategy(
    name="storage-inventory-item",
    applies=lambda txn: True,
    resolve=_resolve_storage,
)

RECEIVING_CHANNEL = AttributionStrategy(
    name="receiving-channel",
    applies=lambda txn: txn.channel_tenant_id is not None,
    resolve=_resolve_receiving_channel,
)

RECEIVING_RECEIPT = AttributionStrategy(
    name="receiving-receipt",
    applies=lambda txn: bool(txn.reference_id),
    resolve=_resolve_receiving_receipt,
)

RETURN_ORDER_REFERENCE = AttributionStrategy(
    name="return-order-reference",
    applies=lambda txn: True,
    resolve=_resolve_return,
)

ACCOUNT_REFERENCE = AttributionStrategy(
    name="account-reference",
    applies=lambda txn: bool(txn.details.get("AccountId") or txn.details.get("account_id")),
    resolve=_resolve_account,
)

DEFAULT_CHAINS: Dict[ReferenceType, List[AttributionStrategy]] = {
    ReferenceType.SHIPMENT: [SHIPMENT_OWNER],
    ReferenceType.STORAGE_LOCATION: [STORAGE_INVENTORY_ITEM],
    ReferenceType.WAREHOUSE_RECEIVING: [RECEIVING_CHANNEL, RECEIVING_RECEIPT],
    ReferenceType.RETURN: [RETURN_ORDER_REFERENCE],
    ReferenceType.OTHER: [ACCOUNT_REFERENCE],
}
