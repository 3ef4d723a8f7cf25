"""Tenant Resolver - assigns each upstream charge to its owning tenant."""

from tenant_resolver.models import (
    AttributionDecision,
    AttributionStats,
    AttributionStrategy,
    NoMatch,
    OwnedEntityLookup,
    Pending,
    Resolved,
)
from tenant_resolver.queue import PendingQueue
from tenant_resolver.resolver import MemoizedLookup, TenantResolver
from tenant_resolver.strategies import (
    DEFAULT_CHAINS,
    extract_order_reference,
    parse_storage_reference,
    storage_inventory_item,
)

__all__ = [
    "AttributionDecision",
    "AttributionStats",
    "AttributionStrategy",
    "NoMatch",
    "OwnedEntityLookup",
    "Pending",
    "Resolved",
    "PendingQueue",
    "MemoizedLookup",
    "TenantResolver",
    "DEFAULT_CHAINS",
    "extract_order_reference",
    "parse_storage_reference",
    "storage_inventory_item",
]
