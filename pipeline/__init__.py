"""Billing run orchestration (in-process)."""

from pipeline.run import BillingRun, IngestStats

__all__ = ["BillingRun", "IngestStats"]
