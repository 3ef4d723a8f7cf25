"""Invoice Assembler Models."""

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Tuple

from models.canonical import GeneratedInvoice


@dataclass(frozen=True)
class AssemblyPeriod:
    """A billing period: a date window, a set of upstream invoices, or both."""
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    upstream_invoice_ids: Tuple[str, ...] = ()

    def __post_init__(self):
        if not self.upstream_invoice_ids and (self.period_start is None or self.period_end is None):
            raise ValueError("A period needs a date window or upstream invoice ids")
        if self.period_start and self.period_end and self.period_start > self.period_end:
            raise ValueError(f"Period start {self.period_start} is after end {self.period_end}")

    @property
    def key(self) -> str:
        parts = []
        if self.period_start and self.period_end:
            parts.append(f"{self.period_start.isoformat()}..{self.period_end.isoformat()}")
        if self.upstream_invoice_ids:
            parts.append("inv:" + ",".join(sorted(self.upstream_invoice_ids)))
        return "|".join(parts)


@dataclass
class AssemblyResult:
    tenant_id: str
    period_key: str
    invoice: Optional[GeneratedInvoice] = None
    claimed: int = 0
    created: bool = False

    @property
    def is_noop(self) -> bool:
        return self.claimed == 0


@dataclass
class AssemblyStats:
    claimed: int = 0
    invoices: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    blocked: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "claimed": self.claimed,
            "invoices": self.invoices,
            "conflicts": self.conflicts,
            "blocked": self.blocked,
        }
