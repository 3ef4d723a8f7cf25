"""Worker for the billing pipeline.

Listens on the billing task queue and executes BillingRunWorkflow and its
activities. All activities share the ledger, so a single queue is used.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from temporalio.worker import Worker

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from activities.billing import (
    assemble_invoices,
    attribute_transactions,
    ingest_snapshots,
    price_transactions,
    reconcile_billing_period,
    record_run_outcome,
)
from core.config import get_settings
from core.observability.logging import configure_logging, get_logger
from temporal_client import get_temporal_client
from workflows.billing_run_workflow import BillingRunWorkflow


logger = get_logger(__name__)

BILLING_ACTIVITIES = [
    ingest_snapshots,
    attribute_transactions,
    price_transactions,
    assemble_invoices,
    reconcile_billing_period,
    record_run_outcome,
]


async def run_worker(task_queue: str) -> None:
    """Start a worker on ``task_queue`` and run until interrupted.

    Raises:
        Exception: If connection to Temporal fails
    """
    client = await get_temporal_client()
    logger.info(f"Connected to Temporal: {client.namespace}")

    worker = Worker(
        client,
        task_queue=task_queue,
        workflows=[BillingRunWorkflow],
        activities=BILLING_ACTIVITIES,
    )
    logger.info(
        f"Worker created for queue '{task_queue}'",
        extra_fields={"workflows": 1, "activities": len(BILLING_ACTIVITIES)},
    )

    try:
        logger.info("Worker running... (Ctrl+C to stop)")
        await worker.run()
    except KeyboardInterrupt:
        logger.info("Worker interrupted by user")


def main():
    """Entry point for worker with CLI args."""
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Billing Temporal Worker")
    parser.add_argument(
        "--queue", "-q",
        default=settings.temporal_task_queue,
        help=f"Task queue to poll (default: {settings.temporal_task_queue})",
    )
    args = parser.parse_args()

    configure_logging(level=settings.log_level, json_format=settings.log_json)
    asyncio.run(run_worker(args.queue))


if __name__ == "__main__":
    main()
