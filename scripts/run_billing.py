"""Run a billing period.

Collects the period's charges from the upstream API (or a JSON export),
then either runs every stage in-process or snapshots the raw pages and
starts BillingRunWorkflow on Temporal.

Examples:
    python scripts/run_billing.py --start 2025-11-24 --end 2025-11-30
    python scripts/run_billing.py --start 2025-11-24 --end 2025-11-30 --temporal
    python scripts/run_billing.py --invoice-id 8633612 --records export.json --no-feed
"""

import argparse
import asyncio
import json
import sys
import uuid
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.audit.events import AuditLogger, LedgerAuditBackend
from core.config import get_settings
from core.observability.logging import configure_logging, get_logger
from ingestion.feed import FeedQuery
from ingestion.http_feed import HttpBillingFeed
from invoice_assembler.models import AssemblyPeriod
from ledger.db import LedgerStore
from models.canonical import parse_date
from pipeline.run import BillingRun
from storage.artifacts import snapshot_raw_records


logger = get_logger("scripts.run_billing")


def build_queries(period: AssemblyPeriod) -> List[FeedQuery]:
    """One chain per day of the window plus one per upstream invoice."""
    queries = []
    if period.period_start and period.period_end:
        day = period.period_start
        while day <= period.period_end:
            queries.append(FeedQuery(f"day-{day.isoformat()}", start_date=day, end_date=day))
            day += timedelta(days=1)
    for invoice_id in period.upstream_invoice_ids:
        queries.append(FeedQuery(f"invoice-{invoice_id}", upstream_invoice_id=invoice_id))
    return queries


def load_records(path: Optional[str]) -> List[dict]:
    if not path:
        return []
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return data.get("items", []) if isinstance(data, dict) else data


async def run_in_process(args, period: AssemblyPeriod) -> dict:
    settings = get_settings()
    store = LedgerStore(Path(args.db) if args.db else settings.db_path)
    store.init_schema()
    audit = AuditLogger()
    audit.add_backend(LedgerAuditBackend(store))
    run = BillingRun(store, settings=settings, audit=audit)

    records = load_records(args.records)
    if records:
        stats = run.ingest_records(records, args.channel_tenant)
        logger.info("Ingested JSON export", extra_fields=stats.to_dict())
    upstream = load_records(args.upstream_invoices)

    if args.no_feed:
        summary = await run.execute(period, upstream_invoices=upstream, as_of=parse_date(args.as_of))
        return summary.to_dict()

    async with HttpBillingFeed(
        settings.feed_base_url,
        settings.feed_api_token or "",
        page_size=settings.feed_page_size,
        timeout_seconds=settings.feed_timeout_seconds,
    ) as feed:
        if not upstream and period.period_start and period.period_end:
            upstream = await feed.list_invoices(period.period_start, period.period_end)
        summary = await run.execute(
            period,
            feed=feed,
            queries=build_queries(period),
            upstream_invoices=upstream,
            as_of=parse_date(args.as_of),
        )
    return summary.to_dict()


async def start_workflow(args, period: AssemblyPeriod) -> dict:
    from activities.billing import PeriodInput
    from temporal_client import get_temporal_client
    from workflows.billing_run_workflow import BillingRunInput, BillingRunWorkflow

    settings = get_settings()
    run_id = f"billing-{uuid.uuid4().hex[:8]}"
    store = LedgerStore(Path(args.db) if args.db else settings.db_path)
    store.init_schema()
    run = BillingRun(store, settings=settings, run_id=run_id)

    refs = []
    records = load_records(args.records)
    if records:
        refs.append(snapshot_raw_records(records, settings.artifacts_dir, run_id, "export", args.channel_tenant))
    upstream = load_records(args.upstream_invoices)

    if not args.no_feed:
        async with HttpBillingFeed(
            settings.feed_base_url,
            settings.feed_api_token or "",
            page_size=settings.feed_page_size,
            timeout_seconds=settings.feed_timeout_seconds,
        ) as feed:
            collected, failed = await run.collect(feed, build_queries(period))
            refs.extend(collected)
            if failed:
                logger.warning(f"Failed feed queries: {', '.join(failed)}")
            if not upstream and period.period_start and period.period_end:
                upstream = await feed.list_invoices(period.period_start, period.period_end)

    client = await get_temporal_client(settings)
    logger.info(f"Connected to Temporal: {client.namespace}")

    handle = await client.start_workflow(
        BillingRunWorkflow.run,
        BillingRunInput(
            run_id=run_id,
            period=PeriodInput(
                period_start=period.period_start.isoformat() if period.period_start else None,
                period_end=period.period_end.isoformat() if period.period_end else None,
                upstream_invoice_ids=list(period.upstream_invoice_ids),
            ),
            snapshot_refs=[r.model_dump(mode="json") for r in refs],
            upstream_invoices=upstream,
            as_of=args.as_of,
            db_path=args.db,
        ),
        task_queue=settings.temporal_task_queue,
        id=run_id,
    )
    logger.info(f"Workflow started: {handle.id}")
    return await handle.result()


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(description="Run a billing period")
    parser.add_argument("--start", help="Period start (YYYY-MM-DD)")
    parser.add_argument("--end", help="Period end (YYYY-MM-DD)")
    parser.add_argument("--invoice-id", action="append", default=[], help="Upstream invoice id (repeatable)")
    parser.add_argument("--records", help="JSON export of raw charges to ingest")
    parser.add_argument("--channel-tenant", help="Tenant whose channel the --records export came from")
    parser.add_argument("--upstream-invoices", help="JSON file of provider invoices")
    parser.add_argument("--no-feed", action="store_true", help="Do not call the upstream API")
    parser.add_argument("--as-of", default=None, help="Freeze pricing rules as of this date (default: today)")
    parser.add_argument("--db", default=None, help="Ledger path (default: BILLING_DB_PATH)")
    parser.add_argument("--temporal", action="store_true", help="Run as BillingRunWorkflow on Temporal")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(level=settings.log_level, json_format=settings.log_json)

    try:
        period = AssemblyPeriod(
            period_start=parse_date(args.start),
            period_end=parse_date(args.end),
            upstream_invoice_ids=tuple(args.invoice_id),
        )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    try:
        if args.temporal:
            result = asyncio.run(start_workflow(args, period))
        else:
            result = asyncio.run(run_in_process(args, period))
    except Exception as e:
        logger.error(f"Billing run failed: {e}", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
