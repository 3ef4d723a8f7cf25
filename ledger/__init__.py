"""Ledger - sqlite-backed store for transactions, tenants, rules, invoices
and reconciliation output.
"""

from ledger.db import LedgerStore, DEFAULT_DB_PATH

__all__ = ["LedgerStore", "DEFAULT_DB_PATH"]
