"""Temporal worker process for billing runs."""
