"""Tenant Resolver Models.

Strategy outcomes, the owned-entity lookup interface and per-transaction
attribution decisions.
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol

from models.canonical import AttributionStatus, OwnedEntityKind, Transaction


class OwnedEntityLookup(Protocol):
    """Keyed lookups against synced owned entities and tenant accounts.

    ``ledger.db.LedgerStore`` implements this.
    """

    def owner_of(self, kind: OwnedEntityKind, entity_id: str) -> Optional[str]:
        ...

    def tenant_for_account(self, external_account_id: str) -> Optional[str]:
        ...


@dataclass(frozen=True)
class Resolved:
    tenant_id: str


@dataclass(frozen=True)
class Pending:
    """The owning entity may not have synced yet."""
    dependency_key: str
    reason: str


@dataclass(frozen=True)
class NoMatch:
    reason: str


@dataclass(frozen=True)
class AttributionStrategy:
    """A named (predicate, resolver) pair.

    ``applies`` decides whether the strategy can say anything about a
    transaction; ``resolve`` returns Resolved, Pending or NoMatch.
    """
    name: str
    applies: Callable[[Transaction], bool]
    resolve: Callable[[Transaction, OwnedEntityLookup], object]


@dataclass
class AttributionDecision:
    transaction_id: str
    status: AttributionStatus
    tenant_id: Optional[str] = None
    strategy: Optional[str] = None
    dependency_key: Optional[str] = None
    reasons: List[str] = field(default_factory=list)


@dataclass
class AttributionStats:
    attributed: int = 0
    pending: int = 0
    deferred: int = 0
    unattributable: int = 0
    unattributable_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "attributed": self.attributed,
            "pending": self.pending,
            "deferred": self.deferred,
            "unattributable": self.unattributable,
            "unattributable_ids": self.unattributable_ids,
        }
