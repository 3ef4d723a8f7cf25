"""Ingestion - raw upstream charges into canonical transactions."""

from ingestion.categories import (
    classify_fee,
    display_category_for,
    reference_type_for,
)
from ingestion.normalize import (
    NormalizationResult,
    normalize_batch,
    normalize_record,
    normalize_upstream_invoice,
)

__all__ = [
    "classify_fee",
    "display_category_for",
    "reference_type_for",
    "NormalizationResult",
    "normalize_batch",
    "normalize_record",
    "normalize_upstream_invoice",
]
