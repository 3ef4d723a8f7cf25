"""
Ledger Database

Creates and manages the billing tables:
- transactions: one row per upstream charge (durable source of truth)
- tenants / owned_entities: attribution join targets
- pricing_rules: tenant/category/condition markup rules
- generated_invoices: assembled invoices and their status
- upstream_invoices: provider's authoritative totals (read-only input)
- discrepancy_reports: reconciliation output
- pending_dependencies: transactions waiting on an owned entity to sync
- assembly_locks: single-writer guard per tenant-period
- audit_events: who/when/why for administrative actions

Amounts are stored as TEXT so Decimal values round-trip exactly.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from core.config import DEFAULT_DB_PATH
from core.errors import ClaimConflict, InvoiceStateError
from core.observability.logging import get_logger
from models.canonical import (
    AttributionStatus,
    DiscrepancyReport,
    GeneratedInvoice,
    InvoiceStatus,
    OwnedEntity,
    OwnedEntityKind,
    PendingDependency,
    PricingRule,
    PricingStatus,
    RuleCondition,
    Tenant,
    Transaction,
    UpstreamInvoice,
)
from models.refs import AuditEvent


logger = get_logger(__name__)

BILLABLE_PRICING_STATUSES = (PricingStatus.PRICED.value, PricingStatus.UNCONFIGURED.value)


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS transactions (
        transaction_id TEXT PRIMARY KEY,
        tenant_id TEXT,
        fee_category TEXT NOT NULL,
        fee_type TEXT,
        reference_type TEXT NOT NULL,
        reference_id TEXT NOT NULL DEFAULT '',
        amount TEXT NOT NULL,
        charge_date TEXT NOT NULL,
        upstream_invoice_id TEXT,
        generated_invoice_id TEXT,
        billed_amount TEXT,
        markup_rule_id INTEGER,
        channel_tenant_id TEXT,
        details TEXT NOT NULL DEFAULT '{}',
        attribution_status TEXT NOT NULL DEFAULT 'unresolved',
        attribution_strategy TEXT,
        pricing_status TEXT NOT NULL DEFAULT 'unpriced',
        ingested_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_txn_tenant ON transactions(tenant_id, charge_date)",
    "CREATE INDEX IF NOT EXISTS idx_txn_upstream_invoice ON transactions(upstream_invoice_id)",
    "CREATE INDEX IF NOT EXISTS idx_txn_generated_invoice ON transactions(generated_invoice_id)",
    "CREATE INDEX IF NOT EXISTS idx_txn_attribution ON transactions(attribution_status)",
    """
    CREATE TABLE IF NOT EXISTS tenants (
        tenant_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        external_account_id TEXT,
        short_code TEXT,
        is_active INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tenant_account ON tenants(external_account_id)",
    """
    CREATE TABLE IF NOT EXISTS owned_entities (
        kind TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        tenant_id TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (kind, entity_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pricing_rules (
        rule_id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL DEFAULT '',
        tenant_id TEXT,
        fee_category TEXT,
        condition TEXT,
        rule_type TEXT NOT NULL,
        value TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        effective_from TEXT,
        effective_to TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS generated_invoices (
        invoice_id TEXT PRIMARY KEY,
        invoice_number TEXT NOT NULL UNIQUE,
        tenant_id TEXT NOT NULL,
        period_key TEXT NOT NULL,
        period_start TEXT NOT NULL,
        period_end TEXT NOT NULL,
        upstream_invoice_ids TEXT NOT NULL DEFAULT '[]',
        subtotals TEXT NOT NULL DEFAULT '{}',
        total TEXT NOT NULL,
        line_count INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'draft',
        rule_snapshot_id TEXT,
        created_at TEXT NOT NULL,
        approved_by TEXT,
        approved_at TEXT,
        sent_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_invoice_period ON generated_invoices(tenant_id, period_key)",
    """
    CREATE TABLE IF NOT EXISTS upstream_invoices (
        upstream_invoice_id TEXT PRIMARY KEY,
        invoice_type TEXT NOT NULL,
        invoice_date TEXT NOT NULL,
        period_start TEXT,
        period_end TEXT,
        total_amount TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS discrepancy_reports (
        report_id TEXT PRIMARY KEY,
        run_id TEXT,
        period_start TEXT NOT NULL,
        period_end TEXT NOT NULL,
        payload TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_dependencies (
        transaction_id TEXT PRIMARY KEY,
        dependency_key TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        first_seen_at TEXT NOT NULL,
        next_attempt_at TEXT NOT NULL,
        last_reason TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS assembly_locks (
        tenant_id TEXT NOT NULL,
        period_key TEXT NOT NULL,
        holder TEXT NOT NULL,
        acquired_at TEXT NOT NULL,
        PRIMARY KEY (tenant_id, period_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_events (
        event_id TEXT PRIMARY KEY,
        timestamp TEXT NOT NULL,
        event_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        tenant_id TEXT,
        invoice_id TEXT,
        actor TEXT NOT NULL,
        payload TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_audit_type ON audit_events(event_type, timestamp)",
]


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _pricing_inputs_changed(row: sqlite3.Row, txn: Transaction) -> bool:
    if Decimal(row["amount"]) != txn.amount or row["fee_category"] != txn.fee_category.value:
        return True
    return json.loads(row["details"] or "{}") != json.loads(json.dumps(txn.details, default=str))


def _iso(value) -> Optional[str]:
    return None if value is None else value.isoformat()


def _now() -> str:
    return datetime.utcnow().isoformat()


class LedgerStore:
    """All billing persistence. Every method opens its own connection.

    Also serves as the owned-entity lookup used by attribution.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH, timeout: float = 5.0):
        self.db_path = Path(db_path)
        self.timeout = timeout

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def get_connection(self) -> sqlite3.Connection:
        """Get database connection with row factory"""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def immediate(self) -> Iterator[sqlite3.Connection]:
        """Single-writer transaction (``BEGIN IMMEDIATE``)."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Create every ledger table and index if missing."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            for statement in SCHEMA:
                conn.execute(statement)
        logger.info("Ledger schema initialized", extra_fields={"db_path": str(self.db_path)})

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def upsert_transactions(self, transactions: Iterable[Transaction]) -> Dict[str, int]:
        """Insert new charges; refresh upstream fields of unclaimed ones.

        Attribution and claim state are never written here. Claimed rows are
        left untouched. An unclaimed row whose amount, fee category or details
        changed loses its price so the next pricing pass recomputes it.
        """
        counts = {"inserted": 0, "updated": 0, "skipped_claimed": 0, "repriced": 0}
        now = _now()
        with self.connect() as conn:
            for txn in transactions:
                row = conn.execute(
                    "SELECT generated_invoice_id, amount, fee_category, details, pricing_status "
                    "FROM transactions WHERE transaction_id = ?",
                    (txn.transaction_id,),
                ).fetchone()
                if row is None:
                    conn.execute(
                        """
                        INSERT INTO transactions (
                            transaction_id, tenant_id, fee_category, fee_type,
                            reference_type, reference_id, amount, charge_date,
                            upstream_invoice_id, channel_tenant_id, details,
                            attribution_status, pricing_status, ingested_at, updated_at
                        ) VALUES (?, NULL, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'unresolved', 'unpriced', ?, ?)
                        """,
                        (
                            txn.transaction_id,
                            txn.fee_category.value,
                            txn.fee_type,
                            txn.reference_type.value,
                            txn.reference_id,
                            _dec(txn.amount),
                            txn.charge_date.isoformat(),
                            txn.upstream_invoice_id,
                            txn.channel_tenant_id,
                            json.dumps(txn.details, default=str),
                            now,
                            now,
                        ),
                    )
                    counts["inserted"] += 1
                elif row["generated_invoice_id"] is not None:
                    counts["skipped_claimed"] += 1
                else:
                    conn.execute(
                        """
                        UPDATE transactions SET
                            fee_category = ?, fee_type = ?, reference_type = ?,
                            reference_id = ?, amount = ?, charge_date = ?,
                            upstream_invoice_id = COALESCE(?, upstream_invoice_id),
                            channel_tenant_id = COALESCE(?, channel_tenant_id),
                            details = ?, updated_at = ?
                        WHERE transaction_id = ? AND generated_invoice_id IS NULL
                        """,
                        (
                            txn.fee_category.value,
                            txn.fee_type,
                            txn.reference_type.value,
                            txn.reference_id,
                            _dec(txn.amount),
                            txn.charge_date.isoformat(),
                            txn.upstream_invoice_id,
                            txn.channel_tenant_id,
                            json.dumps(txn.details, default=str),
                            now,
                            txn.transaction_id,
                        ),
                    )
                    counts["updated"] += 1
                    if row["pricing_status"] != PricingStatus.UNPRICED.value and _pricing_inputs_changed(row, txn):
                        conn.execute(
                            """
                            UPDATE transactions SET
                                billed_amount = NULL, markup_rule_id = NULL, pricing_status = 'unpriced'
                            WHERE transaction_id = ? AND generated_invoice_id IS NULL
                            """,
                            (txn.transaction_id,),
                        )
                        counts["repriced"] += 1
        return counts

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE transaction_id = ?", (transaction_id,)
            ).fetchone()
        return _row_to_transaction(row) if row else None

    def list_transactions(
        self,
        tenant_id: Optional[str] = None,
        attribution_statuses: Optional[Sequence[AttributionStatus]] = None,
        upstream_invoice_ids: Optional[Sequence[str]] = None,
        generated_invoice_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        unclaimed_only: bool = False,
        billable_only: bool = False,
    ) -> List[Transaction]:
        """Filtered transaction listing, ordered by charge date then id."""
        clauses = []
        params: List = []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if attribution_statuses:
            clauses.append(f"attribution_status IN ({','.join('?' * len(attribution_statuses))})")
            params.extend(s.value for s in attribution_statuses)
        if upstream_invoice_ids is not None:
            if not upstream_invoice_ids:
                return []
            clauses.append(f"upstream_invoice_id IN ({','.join('?' * len(upstream_invoice_ids))})")
            params.extend(upstream_invoice_ids)
        if generated_invoice_id is not None:
            clauses.append("generated_invoice_id = ?")
            params.append(generated_invoice_id)
        if start_date is not None:
            clauses.append("charge_date >= ?")
            params.append(start_date.isoformat())
        if end_date is not None:
            clauses.append("charge_date <= ?")
            params.append(end_date.isoformat())
        if unclaimed_only:
            clauses.append("generated_invoice_id IS NULL")
        if billable_only:
            clauses.append("tenant_id IS NOT NULL AND billed_amount IS NOT NULL")
            clauses.append(f"pricing_status IN ({','.join('?' * len(BILLABLE_PRICING_STATUSES))})")
            params.extend(BILLABLE_PRICING_STATUSES)

        sql = "SELECT * FROM transactions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY charge_date, transaction_id"

        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_transaction(r) for r in rows]

    def save_attribution(
        self,
        transaction_id: str,
        status: AttributionStatus,
        tenant_id: Optional[str] = None,
        strategy: Optional[str] = None,
    ) -> bool:
        """Record an attribution outcome. Never changes an already-set tenant."""
        with self.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE transactions
                SET tenant_id = ?, attribution_status = ?, attribution_strategy = ?, updated_at = ?
                WHERE transaction_id = ? AND tenant_id IS NULL
                """,
                (tenant_id, status.value, strategy, _now(), transaction_id),
            )
            return cursor.rowcount == 1

    def force_attribution(self, transaction_id: str, tenant_id: str, strategy: str = "manual") -> bool:
        """Set or correct the tenant of an unclaimed transaction; clears its price."""
        with self.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE transactions
                SET tenant_id = ?, attribution_status = 'attributed', attribution_strategy = ?,
                    billed_amount = NULL, markup_rule_id = NULL, pricing_status = 'unpriced',
                    updated_at = ?
                WHERE transaction_id = ? AND generated_invoice_id IS NULL
                """,
                (tenant_id, strategy, _now(), transaction_id),
            )
            conn.execute("DELETE FROM pending_dependencies WHERE transaction_id = ?", (transaction_id,))
            return cursor.rowcount == 1

    def save_pricing(
        self,
        transaction_id: str,
        billed_amount: Decimal,
        markup_rule_id: Optional[int],
        status: PricingStatus,
    ) -> bool:
        """Record a price for an attributed, unclaimed transaction."""
        with self.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE transactions
                SET billed_amount = ?, markup_rule_id = ?, pricing_status = ?, updated_at = ?
                WHERE transaction_id = ? AND tenant_id IS NOT NULL AND generated_invoice_id IS NULL
                """,
                (_dec(billed_amount), markup_rule_id, status.value, _now(), transaction_id),
            )
            return cursor.rowcount == 1

    # -------------------------------------------------------------------------
    # Tenants & owned entities
    # -------------------------------------------------------------------------

    def upsert_tenant(self, tenant: Tenant) -> Tenant:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO tenants (tenant_id, name, external_account_id, short_code, is_active)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id) DO UPDATE SET
                    name = excluded.name,
                    external_account_id = excluded.external_account_id,
                    short_code = excluded.short_code,
                    is_active = excluded.is_active
                """,
                (tenant.tenant_id, tenant.name, tenant.external_account_id,
                 tenant.short_code, 1 if tenant.is_active else 0),
            )
        return tenant

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM tenants WHERE tenant_id = ?", (tenant_id,)).fetchone()
        return _row_to_tenant(row) if row else None

    def list_tenants(self, active_only: bool = True) -> List[Tenant]:
        sql = "SELECT * FROM tenants"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY tenant_id"
        with self.connect() as conn:
            rows = conn.execute(sql).fetchall()
        return [_row_to_tenant(r) for r in rows]

    def tenant_for_account(self, external_account_id: str) -> Optional[str]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT tenant_id FROM tenants WHERE external_account_id = ? AND is_active = 1",
                (external_account_id,),
            ).fetchall()
        # An account shared by several tenants identifies none of them
        if len(rows) != 1:
            return None
        return rows[0]["tenant_id"]

    def upsert_owned_entity(self, entity: OwnedEntity) -> None:
        """Written by entity sync code; the pipeline only reads owned entities."""
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO owned_entities (kind, entity_id, tenant_id, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(kind, entity_id) DO UPDATE SET
                    tenant_id = excluded.tenant_id, updated_at = excluded.updated_at
                """,
                (entity.kind.value, entity.entity_id, entity.tenant_id, _now()),
            )

    def owner_of(self, kind: OwnedEntityKind, entity_id: str) -> Optional[str]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT tenant_id FROM owned_entities WHERE kind = ? AND entity_id = ?",
                (kind.value, entity_id),
            ).fetchone()
        return row["tenant_id"] if row else None

    # -------------------------------------------------------------------------
    # Pricing rules
    # -------------------------------------------------------------------------

    def add_pricing_rule(self, rule: PricingRule) -> PricingRule:
        with self.connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO pricing_rules (
                    rule_id, name, tenant_id, fee_category, condition, rule_type, value,
                    is_active, effective_from, effective_to, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                _rule_params(rule),
            )
            rule_id = cursor.lastrowid
        return rule.model_copy(update={"rule_id": rule_id})

    def update_pricing_rule(self, rule: PricingRule) -> bool:
        if rule.rule_id is None:
            raise ValueError("Cannot update a pricing rule without rule_id")
        params = _rule_params(rule)
        with self.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE pricing_rules SET
                    name = ?, tenant_id = ?, fee_category = ?, condition = ?, rule_type = ?,
                    value = ?, is_active = ?, effective_from = ?, effective_to = ?
                WHERE rule_id = ?
                """,
                params[1:-1] + (rule.rule_id,),
            )
            return cursor.rowcount == 1

    def get_pricing_rule(self, rule_id: int) -> Optional[PricingRule]:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM pricing_rules WHERE rule_id = ?", (rule_id,)).fetchone()
        return _row_to_rule(row) if row else None

    def list_pricing_rules(self, active_only: bool = False) -> List[PricingRule]:
        sql = "SELECT * FROM pricing_rules"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY rule_id"
        with self.connect() as conn:
            rows = conn.execute(sql).fetchall()
        return [_row_to_rule(r) for r in rows]

    # -------------------------------------------------------------------------
    # Generated invoices & claiming
    # -------------------------------------------------------------------------

    def next_invoice_sequence(self, tenant_id: str) -> int:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM generated_invoices WHERE tenant_id = ?", (tenant_id,)
            ).fetchone()
        return row["n"] + 1

    def get_invoice(self, invoice_id: str) -> Optional[GeneratedInvoice]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM generated_invoices WHERE invoice_id = ?", (invoice_id,)
            ).fetchone()
        return _row_to_invoice(row) if row else None

    def list_invoices(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[InvoiceStatus] = None,
        period_key: Optional[str] = None,
    ) -> List[GeneratedInvoice]:
        clauses = []
        params: List = []
        if tenant_id is not None:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if period_key is not None:
            clauses.append("period_key = ?")
            params.append(period_key)
        sql = "SELECT * FROM generated_invoices"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at, invoice_id"
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_invoice(r) for r in rows]

    def find_draft_invoice(self, tenant_id: str, period_key: str) -> Optional[GeneratedInvoice]:
        drafts = self.list_invoices(tenant_id=tenant_id, status=InvoiceStatus.DRAFT, period_key=period_key)
        return drafts[0] if drafts else None

    def claim_transactions(
        self,
        invoice: GeneratedInvoice,
        period_key: str,
        allocations: Dict[str, Decimal],
        create: bool,
    ) -> None:
        """Atomically write the invoice and mark every allocated transaction.

        ``allocations`` maps transaction id to its cent-rounded billed amount.
        Each mark only succeeds on a row that is still unclaimed and owned by
        the invoice's tenant; one miss rolls the whole claim back.
        """
        try:
            with self.immediate() as conn:
                if create:
                    conn.execute(
                        """
                        INSERT INTO generated_invoices (
                            invoice_id, invoice_number, tenant_id, period_key, period_start,
                            period_end, upstream_invoice_ids, subtotals, total, line_count,
                            status, rule_snapshot_id, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            invoice.invoice_id,
                            invoice.invoice_number,
                            invoice.tenant_id,
                            period_key,
                            invoice.period_start.isoformat(),
                            invoice.period_end.isoformat(),
                            json.dumps(invoice.upstream_invoice_ids),
                            _subtotals_json(invoice),
                            _dec(invoice.total),
                            invoice.line_count,
                            invoice.status.value,
                            invoice.rule_snapshot_id,
                            invoice.created_at.isoformat(),
                        ),
                    )
                else:
                    cursor = conn.execute(
                        """
                        UPDATE generated_invoices
                        SET subtotals = ?, total = ?, line_count = ?, upstream_invoice_ids = ?,
                            rule_snapshot_id = ?
                        WHERE invoice_id = ? AND status = 'draft'
                        """,
                        (
                            _subtotals_json(invoice),
                            _dec(invoice.total),
                            invoice.line_count,
                            json.dumps(invoice.upstream_invoice_ids),
                            invoice.rule_snapshot_id,
                            invoice.invoice_id,
                        ),
                    )
                    if cursor.rowcount != 1:
                        raise ClaimConflict(invoice.tenant_id, period_key,
                                            f"invoice {invoice.invoice_id} is no longer a draft")

                for transaction_id, billed in allocations.items():
                    cursor = conn.execute(
                        """
                        UPDATE transactions
                        SET generated_invoice_id = ?, billed_amount = ?, updated_at = ?
                        WHERE transaction_id = ? AND tenant_id = ? AND generated_invoice_id IS NULL
                          AND billed_amount IS NOT NULL
                        """,
                        (invoice.invoice_id, _dec(billed), _now(), transaction_id, invoice.tenant_id),
                    )
                    if cursor.rowcount != 1:
                        raise ClaimConflict(invoice.tenant_id, period_key,
                                            f"transaction {transaction_id} already claimed or changed")
        except sqlite3.IntegrityError as e:
            raise ClaimConflict(invoice.tenant_id, period_key, f"integrity error: {e}") from e
        except sqlite3.OperationalError as e:
            if "locked" in str(e):
                raise ClaimConflict(invoice.tenant_id, period_key, "ledger busy") from e
            raise

    def update_invoice_totals(self, invoice: GeneratedInvoice) -> None:
        with self.connect() as conn:
            cursor = conn.execute(
                """
                UPDATE generated_invoices SET subtotals = ?, total = ?, line_count = ?
                WHERE invoice_id = ? AND status = 'draft'
                """,
                (_subtotals_json(invoice), _dec(invoice.total), invoice.line_count, invoice.invoice_id),
            )
            if cursor.rowcount != 1:
                raise InvoiceStateError(f"Invoice {invoice.invoice_id} is not a draft")

    def transition_invoice(
        self,
        invoice_id: str,
        from_status: InvoiceStatus,
        to_status: InvoiceStatus,
        actor: Optional[str] = None,
    ) -> None:
        now = _now()
        sets = ["status = ?"]
        params: List = [to_status.value]
        if to_status == InvoiceStatus.APPROVED:
            sets += ["approved_by = ?", "approved_at = ?"]
            params += [actor, now]
        elif to_status == InvoiceStatus.SENT:
            sets.append("sent_at = ?")
            params.append(now)
        params += [invoice_id, from_status.value]
        with self.connect() as conn:
            cursor = conn.execute(
                f"UPDATE generated_invoices SET {', '.join(sets)} WHERE invoice_id = ? AND status = ?",
                params,
            )
            if cursor.rowcount != 1:
                raise InvoiceStateError(
                    f"Invoice {invoice_id} is not in status {from_status.value}"
                )

    def clear_claims(self, transaction_ids: Sequence[str]) -> List[str]:
        """Unclaim and unprice transactions whose invoices are still drafts.

        Returns the draft invoice ids that lost lines. Raises
        ``InvoiceStateError`` (and changes nothing) if any transaction belongs
        to an approved or sent invoice.
        """
        affected: List[str] = []
        with self.immediate() as conn:
            for transaction_id in transaction_ids:
                row = conn.execute(
                    """
                    SELECT t.generated_invoice_id, g.status
                    FROM transactions t
                    LEFT JOIN generated_invoices g ON g.invoice_id = t.generated_invoice_id
                    WHERE t.transaction_id = ?
                    """,
                    (transaction_id,),
                ).fetchone()
                if row is None:
                    continue
                if row["generated_invoice_id"] is not None:
                    if row["status"] != InvoiceStatus.DRAFT.value:
                        raise InvoiceStateError(
                            f"Transaction {transaction_id} is on {row['status']} invoice "
                            f"{row['generated_invoice_id']}"
                        )
                    if row["generated_invoice_id"] not in affected:
                        affected.append(row["generated_invoice_id"])
                conn.execute(
                    """
                    UPDATE transactions
                    SET generated_invoice_id = NULL, billed_amount = NULL, markup_rule_id = NULL,
                        pricing_status = 'unpriced', updated_at = ?
                    WHERE transaction_id = ?
                    """,
                    (_now(), transaction_id),
                )
        return affected

    # -------------------------------------------------------------------------
    # Assembly locks
    # -------------------------------------------------------------------------

    def acquire_assembly_lock(self, tenant_id: str, period_key: str, holder: str, ttl_seconds: int) -> bool:
        """Take the per tenant-period lock; a lock older than ``ttl_seconds`` is taken over."""
        now = datetime.utcnow()
        try:
            with self.immediate() as conn:
                row = conn.execute(
                    "SELECT holder, acquired_at FROM assembly_locks WHERE tenant_id = ? AND period_key = ?",
                    (tenant_id, period_key),
                ).fetchone()
                if row is None:
                    conn.execute(
                        "INSERT INTO assembly_locks (tenant_id, period_key, holder, acquired_at) VALUES (?, ?, ?, ?)",
                        (tenant_id, period_key, holder, now.isoformat()),
                    )
                    return True
                acquired_at = datetime.fromisoformat(row["acquired_at"])
                if now - acquired_at < timedelta(seconds=ttl_seconds):
                    return False
                logger.warning(
                    "Taking over stale assembly lock",
                    extra_fields={"tenant_id": tenant_id, "period_key": period_key, "stale_holder": row["holder"]},
                )
                conn.execute(
                    "UPDATE assembly_locks SET holder = ?, acquired_at = ? WHERE tenant_id = ? AND period_key = ?",
                    (holder, now.isoformat(), tenant_id, period_key),
                )
                return True
        except sqlite3.OperationalError as e:
            if "locked" in str(e):
                return False
            raise

    def release_assembly_lock(self, tenant_id: str, period_key: str, holder: str) -> None:
        with self.connect() as conn:
            conn.execute(
                "DELETE FROM assembly_locks WHERE tenant_id = ? AND period_key = ? AND holder = ?",
                (tenant_id, period_key, holder),
            )

    # -------------------------------------------------------------------------
    # Upstream invoices & discrepancy reports
    # -------------------------------------------------------------------------

    def upsert_upstream_invoice(self, invoice: UpstreamInvoice) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO upstream_invoices (
                    upstream_invoice_id, invoice_type, invoice_date, period_start, period_end, total_amount
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(upstream_invoice_id) DO UPDATE SET
                    invoice_type = excluded.invoice_type,
                    invoice_date = excluded.invoice_date,
                    period_start = excluded.period_start,
                    period_end = excluded.period_end,
                    total_amount = excluded.total_amount
                """,
                (
                    invoice.upstream_invoice_id,
                    invoice.invoice_type,
                    invoice.invoice_date.isoformat(),
                    _iso(invoice.period_start),
                    _iso(invoice.period_end),
                    _dec(invoice.total_amount),
                ),
            )

    def list_upstream_invoices(
        self,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        upstream_invoice_ids: Optional[Sequence[str]] = None,
    ) -> List[UpstreamInvoice]:
        clauses = []
        params: List = []
        if upstream_invoice_ids is not None:
            if not upstream_invoice_ids:
                return []
            clauses.append(f"upstream_invoice_id IN ({','.join('?' * len(upstream_invoice_ids))})")
            params.extend(upstream_invoice_ids)
        if start_date is not None:
            clauses.append("invoice_date >= ?")
            params.append(start_date.isoformat())
        if end_date is not None:
            clauses.append("invoice_date <= ?")
            params.append(end_date.isoformat())
        sql = "SELECT * FROM upstream_invoices"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY invoice_date, upstream_invoice_id"
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [
            UpstreamInvoice(
                upstream_invoice_id=r["upstream_invoice_id"],
                invoice_type=r["invoice_type"],
                invoice_date=r["invoice_date"],
                period_start=r["period_start"],
                period_end=r["period_end"],
                total_amount=Decimal(r["total_amount"]),
            )
            for r in rows
        ]

    def save_discrepancy_report(self, report: DiscrepancyReport) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO discrepancy_reports
                    (report_id, run_id, period_start, period_end, payload, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    report.report_id,
                    report.run_id,
                    report.period_start.isoformat(),
                    report.period_end.isoformat(),
                    report.model_dump_json(),
                    report.created_at.isoformat(),
                ),
            )

    def get_discrepancy_report(self, report_id: str) -> Optional[DiscrepancyReport]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT payload FROM discrepancy_reports WHERE report_id = ?", (report_id,)
            ).fetchone()
        return DiscrepancyReport.model_validate_json(row["payload"]) if row else None

    # -------------------------------------------------------------------------
    # Pending dependencies
    # -------------------------------------------------------------------------

    def upsert_pending(self, item: PendingDependency) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO pending_dependencies
                    (transaction_id, dependency_key, attempts, first_seen_at, next_attempt_at, last_reason)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(transaction_id) DO UPDATE SET
                    dependency_key = excluded.dependency_key,
                    attempts = excluded.attempts,
                    next_attempt_at = excluded.next_attempt_at,
                    last_reason = excluded.last_reason
                """,
                (
                    item.transaction_id,
                    item.dependency_key,
                    item.attempts,
                    item.first_seen_at.isoformat(),
                    item.next_attempt_at.isoformat(),
                    item.last_reason,
                ),
            )

    def get_pending(self, transaction_id: str) -> Optional[PendingDependency]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM pending_dependencies WHERE transaction_id = ?", (transaction_id,)
            ).fetchone()
        return _row_to_pending(row) if row else None

    def list_pending(self) -> List[PendingDependency]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM pending_dependencies ORDER BY next_attempt_at, transaction_id"
            ).fetchall()
        return [_row_to_pending(r) for r in rows]

    def delete_pending(self, transaction_id: str) -> None:
        with self.connect() as conn:
            conn.execute("DELETE FROM pending_dependencies WHERE transaction_id = ?", (transaction_id,))

    # -------------------------------------------------------------------------
    # Audit
    # -------------------------------------------------------------------------

    def insert_audit_event(self, event: AuditEvent) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_events
                    (event_id, timestamp, event_type, severity, tenant_id, invoice_id, actor, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.event_id,
                    event.timestamp.isoformat(),
                    event.event_type,
                    event.severity.value,
                    event.tenant_id,
                    event.invoice_id,
                    event.actor,
                    event.model_dump_json(),
                ),
            )

    def list_audit_events(
        self, event_type: Optional[str] = None, tenant_id: Optional[str] = None
    ) -> List[AuditEvent]:
        clauses = []
        params: List = []
        if event_type:
            clauses.append("event_type = ?")
            params.append(event_type)
        if tenant_id:
            clauses.append("tenant_id = ?")
            params.append(tenant_id)
        sql = "SELECT payload FROM audit_events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp, event_id"
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [AuditEvent.model_validate_json(r["payload"]) for r in rows]


# =============================================================================
# Row mappers
# =============================================================================

def _rule_params(rule: PricingRule) -> Tuple:
    return (
        rule.rule_id,
        rule.name,
        rule.tenant_id,
        rule.fee_category.value if rule.fee_category else None,
        rule.condition.model_dump_json(exclude_none=True) if rule.condition else None,
        rule.rule_type.value,
        _dec(rule.value),
        1 if rule.is_active else 0,
        _iso(rule.effective_from),
        _iso(rule.effective_to),
        rule.created_at.isoformat(),
    )


def _subtotals_json(invoice: GeneratedInvoice) -> str:
    return json.dumps({category.value: str(amount) for category, amount in invoice.subtotals.items()})


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        transaction_id=row["transaction_id"],
        tenant_id=row["tenant_id"],
        fee_category=row["fee_category"],
        fee_type=row["fee_type"],
        reference_type=row["reference_type"],
        reference_id=row["reference_id"],
        amount=Decimal(row["amount"]),
        charge_date=row["charge_date"],
        upstream_invoice_id=row["upstream_invoice_id"],
        generated_invoice_id=row["generated_invoice_id"],
        billed_amount=Decimal(row["billed_amount"]) if row["billed_amount"] is not None else None,
        markup_rule_id=row["markup_rule_id"],
        channel_tenant_id=row["channel_tenant_id"],
        details=json.loads(row["details"] or "{}"),
        attribution_status=row["attribution_status"],
        attribution_strategy=row["attribution_strategy"],
        pricing_status=row["pricing_status"],
    )


def _row_to_tenant(row: sqlite3.Row) -> Tenant:
    return Tenant(
        tenant_id=row["tenant_id"],
        name=row["name"],
        external_account_id=row["external_account_id"],
        short_code=row["short_code"],
        is_active=bool(row["is_active"]),
    )


def _row_to_rule(row: sqlite3.Row) -> PricingRule:
    return PricingRule(
        rule_id=row["rule_id"],
        name=row["name"],
        tenant_id=row["tenant_id"],
        fee_category=row["fee_category"],
        condition=RuleCondition.model_validate_json(row["condition"]) if row["condition"] else None,
        rule_type=row["rule_type"],
        value=Decimal(row["value"]),
        is_active=bool(row["is_active"]),
        effective_from=row["effective_from"],
        effective_to=row["effective_to"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _row_to_invoice(row: sqlite3.Row) -> GeneratedInvoice:
    subtotals = json.loads(row["subtotals"] or "{}")
    return GeneratedInvoice(
        invoice_id=row["invoice_id"],
        invoice_number=row["invoice_number"],
        tenant_id=row["tenant_id"],
        period_start=row["period_start"],
        period_end=row["period_end"],
        upstream_invoice_ids=json.loads(row["upstream_invoice_ids"] or "[]"),
        subtotals={k: Decimal(v) for k, v in subtotals.items()},
        total=Decimal(row["total"]),
        line_count=row["line_count"],
        status=row["status"],
        rule_snapshot_id=row["rule_snapshot_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
        approved_by=row["approved_by"],
        approved_at=datetime.fromisoformat(row["approved_at"]) if row["approved_at"] else None,
        sent_at=datetime.fromisoformat(row["sent_at"]) if row["sent_at"] else None,
    )


def _row_to_pending(row: sqlite3.Row) -> PendingDependency:
    return PendingDependency(
        transaction_id=row["transaction_id"],
        dependency_key=row["dependency_key"],
        attempts=row["attempts"],
        first_seen_at=datetime.fromisoformat(row["first_seen_at"]),
        next_attempt_at=datetime.fromisoformat(row["next_attempt_at"]),
        last_reason=row["last_reason"],
    )
