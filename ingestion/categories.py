"""Upstream fee vocabulary.

The only place upstream fee labels are interpreted. Labels are matched after
lower-casing and collapsing whitespace.
"""

import re
from typing import Optional, Tuple

from models.canonical import DisplayCategory, FeeCategory, ReferenceType


FEE_LABELS = {
    # Shipping
    "shipping": FeeCategory.SHIPPING,
    # Pick
    "per pick fee": FeeCategory.PICK_FEE,
    "pick fee": FeeCategory.PICK_FEE,
    "pick fees": FeeCategory.PICK_FEE,
    "pickfees": FeeCategory.PICK_FEE,
    # Storage
    "warehousing fee": FeeCategory.STORAGE,
    "storage fee": FeeCategory.STORAGE,
    "long term storage fee": FeeCategory.STORAGE,
    "uro storage fee": FeeCategory.STORAGE,
    # Receiving
    "wro receiving fee": FeeCategory.RECEIVING,
    "wro label fee": FeeCategory.RECEIVING,
    "receiving fee": FeeCategory.RECEIVING,
    "warehouseinboundfee": FeeCategory.RECEIVING,
    "inbound fee": FeeCategory.RECEIVING,
    "dock receiving fee": FeeCategory.RECEIVING,
    "case receiving fee": FeeCategory.RECEIVING,
    "pallet receiving fee": FeeCategory.RECEIVING,
    "unit receiving fee": FeeCategory.RECEIVING,
    "inventory placement program fee": FeeCategory.RECEIVING,
    # Returns
    "return processed by operations fee": FeeCategory.RETURN_PROCESSING,
    "return to sender - processing fees": FeeCategory.RETURN_PROCESSING,
    "returnsfee": FeeCategory.RETURN_PROCESSING,
    "return fee": FeeCategory.RETURN_PROCESSING,
    "returns fees": FeeCategory.RETURN_PROCESSING,
    "return label": FeeCategory.RETURN_LABEL,
    "return label fee": FeeCategory.RETURN_LABEL,
    # Credits
    "credit": FeeCategory.CREDIT,
    # Additional services
    "additionalfee": FeeCategory.ADDITIONAL_SERVICE,
    "additional fees": FeeCategory.ADDITIONAL_SERVICE,
    "kitting fee": FeeCategory.ADDITIONAL_SERVICE,
    "box fee": FeeCategory.ADDITIONAL_SERVICE,
    "custom packaging fee": FeeCategory.ADDITIONAL_SERVICE,
    "material handling fee": FeeCategory.ADDITIONAL_SERVICE,
    "vas fee": FeeCategory.ADDITIONAL_SERVICE,
    "per order fee": FeeCategory.ADDITIONAL_SERVICE,
    "multi-hub iq fee": FeeCategory.ADDITIONAL_SERVICE,
    "address correction": FeeCategory.ADDITIONAL_SERVICE,
    # Known, deliberately uncategorized
    "credit card processing fee": FeeCategory.OTHER,
}

# Label families matched by prefix, checked in order
FEE_PREFIXES = [
    ("b2b", FeeCategory.B2B_FEE),
]

CATEGORY_REFERENCE_TYPES = {
    FeeCategory.SHIPPING: ReferenceType.SHIPMENT,
    FeeCategory.PICK_FEE: ReferenceType.SHIPMENT,
    FeeCategory.B2B_FEE: ReferenceType.SHIPMENT,
    FeeCategory.ADDITIONAL_SERVICE: ReferenceType.SHIPMENT,
    FeeCategory.STORAGE: ReferenceType.STORAGE_LOCATION,
    FeeCategory.RECEIVING: ReferenceType.WAREHOUSE_RECEIVING,
    FeeCategory.RETURN_PROCESSING: ReferenceType.RETURN,
    FeeCategory.RETURN_LABEL: ReferenceType.RETURN,
    # Credits and uncategorized fees refer to whatever the upstream record says
    FeeCategory.CREDIT: None,
    FeeCategory.OTHER: None,
}

# Upstream reference-type tags, used only for CREDIT / OTHER
UPSTREAM_REFERENCE_TAGS = {
    "shipment": ReferenceType.SHIPMENT,
    "fc": ReferenceType.STORAGE_LOCATION,
    "storagelocation": ReferenceType.STORAGE_LOCATION,
    "wro": ReferenceType.WAREHOUSE_RECEIVING,
    "warehousereceiving": ReferenceType.WAREHOUSE_RECEIVING,
    "return": ReferenceType.RETURN,
}

DISPLAY_CATEGORIES = {
    FeeCategory.SHIPPING: DisplayCategory.SHIPPING,
    FeeCategory.PICK_FEE: DisplayCategory.PICK_FEES,
    FeeCategory.B2B_FEE: DisplayCategory.B2B_FEES,
    FeeCategory.ADDITIONAL_SERVICE: DisplayCategory.ADDITIONAL_SERVICES,
    FeeCategory.STORAGE: DisplayCategory.STORAGE,
    FeeCategory.RECEIVING: DisplayCategory.RECEIVING,
    FeeCategory.RETURN_PROCESSING: DisplayCategory.RETURNS,
    FeeCategory.RETURN_LABEL: DisplayCategory.RETURNS,
    FeeCategory.CREDIT: DisplayCategory.CREDITS,
    FeeCategory.OTHER: DisplayCategory.OTHER,
}


def _normalize_label(label: str) -> str:
    return re.sub(r"\s+", " ", label.strip().lower())


def classify_fee(label: str) -> Tuple[FeeCategory, bool]:
    """Map an upstream fee label to a FeeCategory.

    Returns (category, known). Unknown labels come back as OTHER with
    known=False so callers can report vocabulary drift.
    """
    key = _normalize_label(label)
    if key in FEE_LABELS:
        return FEE_LABELS[key], True
    for prefix, category in FEE_PREFIXES:
        if key.startswith(prefix):
            return category, True
    return FeeCategory.OTHER, False


def reference_type_for(category: FeeCategory, upstream_tag: Optional[str] = None) -> ReferenceType:
    reference_type = CATEGORY_REFERENCE_TYPES[category]
    if reference_type is not None:
        return reference_type
    if upstream_tag:
        return UPSTREAM_REFERENCE_TAGS.get(_normalize_label(upstream_tag), ReferenceType.OTHER)
    return ReferenceType.OTHER


def display_category_for(category: FeeCategory) -> DisplayCategory:
    return DISPLAY_CATEGORIES[category]
