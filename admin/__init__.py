"""Administrative operations - audited corrections to billing state."""

from admin.operations import (
    ResetResult,
    approve_invoice,
    force_attribution,
    reset_transactions,
    save_pricing_rule,
    send_invoice,
)

__all__ = [
    "ResetResult",
    "approve_invoice",
    "force_attribution",
    "reset_transactions",
    "save_pricing_rule",
    "send_invoice",
]
