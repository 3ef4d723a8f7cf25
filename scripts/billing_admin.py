"""Billing administration CLI.

Corrections that need a human: resetting claims for a controlled re-run,
forcing attribution of stuck transactions, advancing invoices, and
maintaining tenants, owned entities and pricing rules. Every mutating
command requires --actor (and --reason where the change is a correction)
and is audited.

Examples:
    python scripts/billing_admin.py init-db
    python scripts/billing_admin.py add-tenant acme "Acme Co" --account 4411 --code ACME
    python scripts/billing_admin.py add-rule --type percentage --value 18 --category shipping \\
        --actor ops@example.com --reason "2025 rate card"
    python scripts/billing_admin.py reset TX-1 TX-2 --actor ops@example.com --reason "wrong rule"
    python scripts/billing_admin.py force-attribute TX-9 acme --actor ops@example.com --reason "ticket 812"
    python scripts/billing_admin.py preflight acme --start 2025-11-24 --end 2025-11-30
    python scripts/billing_admin.py verify <invoice_id> --as-of 2025-11-30
    python scripts/billing_admin.py approve <invoice_id> --actor ops@example.com
"""

import argparse
import json
import sys
from datetime import date
from pathlib import Path

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from admin.operations import (
    approve_invoice,
    force_attribution,
    list_unattributable,
    preflight_period,
    reset_transactions,
    save_pricing_rule,
    send_invoice,
    verify_generated_invoice,
)
from core.audit.events import AuditLogger, LedgerAuditBackend
from core.config import get_settings
from core.errors import AdminOperationError
from core.observability.logging import configure_logging
from ledger.db import LedgerStore
from models.canonical import (
    FeeCategory,
    OwnedEntity,
    OwnedEntityKind,
    PricingRule,
    RuleCondition,
    RuleType,
    Tenant,
)


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, default=str))


def cmd_init_db(args, store, audit):
    store.init_schema()
    print(f"Ledger ready at {store.db_path}")


def cmd_add_tenant(args, store, audit):
    tenant = store.upsert_tenant(
        Tenant(
            tenant_id=args.tenant_id,
            name=args.name,
            external_account_id=args.account,
            short_code=args.code,
        )
    )
    _print(tenant.model_dump(mode="json"))


def cmd_add_entity(args, store, audit):
    store.upsert_owned_entity(
        OwnedEntity(entity_id=args.entity_id, kind=OwnedEntityKind(args.kind), tenant_id=args.tenant_id)
    )
    print(f"{args.kind} {args.entity_id} -> {args.tenant_id}")


def cmd_add_rule(args, store, audit):
    condition = None
    if args.condition:
        condition = RuleCondition.model_validate(json.loads(args.condition))
    rule = PricingRule(
        name=args.name or "",
        tenant_id=args.tenant,
        fee_category=FeeCategory(args.category) if args.category else None,
        condition=condition,
        rule_type=RuleType(args.type),
        value=args.value,
        effective_from=args.effective_from,
        effective_to=args.effective_to,
    )
    saved = save_pricing_rule(store, rule, args.actor, args.reason, audit)
    _print(saved.model_dump(mode="json"))


def cmd_deactivate_rule(args, store, audit):
    rule = store.get_pricing_rule(args.rule_id)
    if rule is None:
        raise AdminOperationError(f"Unknown pricing rule {args.rule_id}")
    saved = save_pricing_rule(store, rule.model_copy(update={"is_active": False}), args.actor, args.reason, audit)
    _print(saved.model_dump(mode="json"))


def cmd_reset(args, store, audit):
    result = reset_transactions(
        store,
        args.transaction_ids,
        args.actor,
        args.reason,
        audit,
        max_batch=get_settings().max_reset_batch,
    )
    _print({"reset": result.transaction_ids, "recomputed_invoices": result.recomputed_invoices})


def cmd_force_attribute(args, store, audit):
    force_attribution(store, args.transaction_id, args.tenant_id, args.actor, args.reason, audit)
    print(f"{args.transaction_id} attributed to {args.tenant_id}")


def cmd_approve(args, store, audit):
    _print(approve_invoice(store, args.invoice_id, args.actor, audit).model_dump(mode="json"))


def cmd_send(args, store, audit):
    _print(send_invoice(store, args.invoice_id, args.actor, audit).model_dump(mode="json"))


def cmd_unattributable(args, store, audit):
    for txn in list_unattributable(store):
        print(f"{txn.transaction_id}\t{txn.fee_type}\t{txn.reference_type.value}:{txn.reference_id}\t{txn.amount}")


def cmd_pending(args, store, audit):
    for item in store.list_pending():
        print(f"{item.transaction_id}\t{item.dependency_key}\tattempts={item.attempts}\tnext={item.next_attempt_at}")


def cmd_report(args, store, audit):
    report = store.get_discrepancy_report(args.report_id)
    if report is None:
        raise AdminOperationError(f"Unknown report {args.report_id}")
    _print(report.model_dump(mode="json"))


def cmd_preflight(args, store, audit):
    report = preflight_period(store, args.tenant_id, args.start, args.end, args.upstream_invoice)
    _print(report.to_dict())
    return 0 if report.passed else 2


def cmd_verify(args, store, audit):
    report = verify_generated_invoice(store, args.invoice_id, as_of=args.as_of)
    _print(report.to_dict())
    return 0 if report.passed else 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Billing administration")
    parser.add_argument("--db", default=None, help="Ledger path (default: BILLING_DB_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create the ledger schema")
    p.set_defaults(func=cmd_init_db)

    p = sub.add_parser("add-tenant", help="Create or update a tenant")
    p.add_argument("tenant_id")
    p.add_argument("name")
    p.add_argument("--account", help="Provider account id")
    p.add_argument("--code", help="Invoice number prefix")
    p.set_defaults(func=cmd_add_tenant)

    p = sub.add_parser("add-entity", help="Record the owner of a shipment/inventory item/receipt")
    p.add_argument("kind", choices=[k.value for k in OwnedEntityKind])
    p.add_argument("entity_id")
    p.add_argument("tenant_id")
    p.set_defaults(func=cmd_add_entity)

    p = sub.add_parser("add-rule", help="Create a pricing rule")
    p.add_argument("--type", required=True, choices=[t.value for t in RuleType])
    p.add_argument("--value", required=True)
    p.add_argument("--name")
    p.add_argument("--tenant", help="Tenant id (omit for a global rule)")
    p.add_argument("--category", choices=[c.value for c in FeeCategory])
    p.add_argument("--condition", help='JSON, e.g. {"weight_min_oz": 0, "weight_max_oz": 16}')
    p.add_argument("--effective-from")
    p.add_argument("--effective-to")
    p.add_argument("--actor", required=True)
    p.add_argument("--reason", required=True)
    p.set_defaults(func=cmd_add_rule)

    p = sub.add_parser("deactivate-rule", help="Deactivate a pricing rule")
    p.add_argument("rule_id", type=int)
    p.add_argument("--actor", required=True)
    p.add_argument("--reason", required=True)
    p.set_defaults(func=cmd_deactivate_rule)

    p = sub.add_parser("reset", help="Unclaim and unprice transactions on draft invoices")
    p.add_argument("transaction_ids", nargs="+")
    p.add_argument("--actor", required=True)
    p.add_argument("--reason", required=True)
    p.set_defaults(func=cmd_reset)

    p = sub.add_parser("force-attribute", help="Assign a tenant to a stuck transaction")
    p.add_argument("transaction_id")
    p.add_argument("tenant_id")
    p.add_argument("--actor", required=True)
    p.add_argument("--reason", required=True)
    p.set_defaults(func=cmd_force_attribute)

    p = sub.add_parser("approve", help="Approve a draft invoice")
    p.add_argument("invoice_id")
    p.add_argument("--actor", required=True)
    p.set_defaults(func=cmd_approve)

    p = sub.add_parser("send", help="Mark an approved invoice as sent")
    p.add_argument("invoice_id")
    p.add_argument("--actor", required=True)
    p.set_defaults(func=cmd_send)

    p = sub.add_parser("unattributable", help="List transactions awaiting review")
    p.set_defaults(func=cmd_unattributable)

    p = sub.add_parser("pending", help="List the pending-dependency queue")
    p.set_defaults(func=cmd_pending)

    p = sub.add_parser("preflight", help="Data-quality checks before assembling a tenant-period")
    p.add_argument("tenant_id")
    p.add_argument("--start", type=date.fromisoformat)
    p.add_argument("--end", type=date.fromisoformat)
    p.add_argument("--upstream-invoice", action="append", help="Repeat for several invoices")
    p.set_defaults(func=cmd_preflight)

    p = sub.add_parser("verify", help="Re-price a generated invoice and check its arithmetic")
    p.add_argument("invoice_id")
    p.add_argument("--as-of", type=date.fromisoformat, help="Rule date (default: day the invoice was drafted)")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("report", help="Show a discrepancy report")
    p.add_argument("report_id")
    p.set_defaults(func=cmd_report)

    return parser


def main():
    args = build_parser().parse_args()
    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    store = LedgerStore(Path(args.db) if args.db else settings.db_path)
    store.init_schema()
    audit = AuditLogger()
    audit.add_backend(LedgerAuditBackend(store))

    try:
        code = args.func(args, store, audit)
    except AdminOperationError as e:
        print(f"Refused: {e.message}", file=sys.stderr)
        return 1
    return code or 0


if __name__ == "__main__":
    sys.exit(main())
