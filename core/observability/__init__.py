"""Observability Module for the billing pipeline.

Structured logging with correlation IDs (run, tenant, period, stage).
"""

from core.observability.logging import (
    get_logger,
    configure_logging,
    CorrelationContext,
    with_correlation,
)

__all__ = [
    "get_logger",
    "configure_logging",
    "CorrelationContext",
    "with_correlation",
]
