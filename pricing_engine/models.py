"""Pricing Engine Models."""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from models.canonical import PricingRule, PricingStatus


@dataclass(frozen=True)
class RuleSetSnapshot:
    """Pricing rules frozen at run start.

    Passed explicitly into the engine; later edits to the rule table are not
    visible to a run holding a snapshot.
    """
    rules: Tuple[PricingRule, ...]
    as_of: date
    taken_at: datetime
    snapshot_id: str

    @classmethod
    def freeze(
        cls,
        rules: Iterable[PricingRule],
        as_of: Optional[date] = None,
        taken_at: Optional[datetime] = None,
    ) -> "RuleSetSnapshot":
        """Keep active rules effective on ``as_of``, ordered by rule id."""
        as_of = as_of or date.today()
        selected = []
        for rule in rules:
            if rule.rule_id is None:
                raise ValueError(f"Pricing rule '{rule.name}' has no rule_id")
            if not rule.is_active:
                continue
            if rule.effective_from is not None and rule.effective_from > as_of:
                continue
            if rule.effective_to is not None and rule.effective_to < as_of:
                continue
            # Copies so the caller cannot mutate rules inside the snapshot
            selected.append(rule.model_copy(deep=True))
        selected.sort(key=lambda r: r.rule_id)

        payload = json.dumps(
            [r.model_dump(mode="json", exclude={"created_at"}) for r in selected],
            sort_keys=True,
        )
        snapshot_id = hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]

        return cls(
            rules=tuple(selected),
            as_of=as_of,
            taken_at=taken_at or datetime.utcnow(),
            snapshot_id=snapshot_id,
        )

    def __len__(self) -> int:
        return len(self.rules)


@dataclass(frozen=True)
class PricingResult:
    transaction_id: str
    base_amount: Decimal
    billed_amount: Decimal
    rule_id: Optional[int]
    status: PricingStatus
    tied_rule_ids: Tuple[int, ...] = ()

    @property
    def is_ambiguous(self) -> bool:
        return len(self.tied_rule_ids) > 1


@dataclass
class PricingStats:
    priced: int = 0
    unconfigured: int = 0
    ambiguous: int = 0
    skipped: int = 0
    results: List[PricingResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "priced": self.priced,
            "unconfigured": self.unconfigured,
            "ambiguous": self.ambiguous,
            "skipped": self.skipped,
        }
