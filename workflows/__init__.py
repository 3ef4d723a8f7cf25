"""Workflow definitions module."""

from workflows.billing_run_workflow import BillingRunInput, BillingRunWorkflow

__all__ = ["BillingRunInput", "BillingRunWorkflow"]
