"""Canonical billing models.

Everything downstream of the normalizer works on these types only: upstream
fee vocabulary is translated into the closed enums below at ingestion and
never leaks past it.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ConfigDict, model_validator
from pydantic.functional_validators import BeforeValidator
from typing_extensions import Annotated


CENT = Decimal("0.01")


# =============================================================================
# Value Parsers (upstream feeds send amounts and dates in several shapes)
# =============================================================================

def parse_decimal(value):
    """Parse decimal from various formats (string with $ or commas, floats, etc.)."""
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("Boolean is not an amount")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return None
        s = s.replace("$", "").replace(",", "")
        if s.startswith("(") and s.endswith(")"):
            s = "-" + s[1:-1]
        return Decimal(s)
    return value


def parse_date(value):
    """Parse date from various string formats, including ISO timestamps."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return None
        if "T" in s:
            s = s.split("T", 1)[0]
        for fmt in ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y"):
            try:
                return datetime.strptime(s, fmt).date()
            except ValueError:
                continue
        raise ValueError(f"Cannot parse date: {s}")
    return value


DecimalValue = Annotated[Decimal, BeforeValidator(parse_decimal)]
DateValue = Annotated[date, BeforeValidator(parse_date)]


class CanonicalBase(BaseModel):
    """Base model for all canonical data structures."""
    model_config = ConfigDict(populate_by_name=True)


# =============================================================================
# Closed vocabularies
# =============================================================================

class FeeCategory(str, Enum):
    """Internal fee category. Upstream fee labels map onto exactly one of these."""
    SHIPPING = "shipping"
    PICK_FEE = "pick_fee"
    B2B_FEE = "b2b_fee"
    ADDITIONAL_SERVICE = "additional_service"
    STORAGE = "storage"
    RECEIVING = "receiving"
    RETURN_PROCESSING = "return_processing"
    RETURN_LABEL = "return_label"
    CREDIT = "credit"
    OTHER = "other"


class ReferenceType(str, Enum):
    """Which owned entity an upstream charge refers to."""
    SHIPMENT = "Shipment"
    WAREHOUSE_RECEIVING = "WarehouseReceiving"
    STORAGE_LOCATION = "StorageLocation"
    RETURN = "Return"
    OTHER = "Other"


class DisplayCategory(str, Enum):
    """Invoice line grouping."""
    SHIPPING = "Shipping"
    PICK_FEES = "Pick Fees"
    B2B_FEES = "B2B Fees"
    ADDITIONAL_SERVICES = "Additional Services"
    STORAGE = "Storage"
    RECEIVING = "Receiving"
    RETURNS = "Returns"
    CREDITS = "Credits"
    OTHER = "Other"


class AttributionStatus(str, Enum):
    UNRESOLVED = "unresolved"
    PENDING = "pending"
    ATTRIBUTED = "attributed"
    UNATTRIBUTABLE = "unattributable"


class PricingStatus(str, Enum):
    UNPRICED = "unpriced"
    PRICED = "priced"
    UNCONFIGURED = "unconfigured"


class RuleType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class InvoiceStatus(str, Enum):
    """Generated invoice lifecycle. Transitions are one-way."""
    DRAFT = "draft"
    APPROVED = "approved"
    SENT = "sent"


class OwnedEntityKind(str, Enum):
    SHIPMENT = "shipment"
    INVENTORY_ITEM = "inventory_item"
    WAREHOUSE_RECEIPT = "warehouse_receipt"


# =============================================================================
# Ledger entities
# =============================================================================

class Transaction(CanonicalBase):
    """One upstream charge, as held in the ledger."""
    transaction_id: str = Field(..., description="Stable upstream charge id")
    tenant_id: Optional[str] = Field(None, description="Owning tenant once attributed")
    fee_category: FeeCategory
    fee_type: Optional[str] = Field(None, description="Upstream fee label as received")
    reference_type: ReferenceType
    reference_id: str = ""
    amount: DecimalValue = Field(..., description="Provider charge (signed)")
    charge_date: DateValue
    upstream_invoice_id: Optional[str] = None
    generated_invoice_id: Optional[str] = None
    billed_amount: Optional[DecimalValue] = None
    markup_rule_id: Optional[int] = None

    channel_tenant_id: Optional[str] = Field(
        None, description="Tenant of the ingestion channel when ingestion is tenant-scoped"
    )
    details: Dict[str, Any] = Field(default_factory=dict)
    attribution_status: AttributionStatus = AttributionStatus.UNRESOLVED
    attribution_strategy: Optional[str] = None
    pricing_status: PricingStatus = PricingStatus.UNPRICED

    @model_validator(mode="after")
    def _claim_requires_attribution_and_price(self):
        if self.generated_invoice_id is not None:
            if self.tenant_id is None or self.billed_amount is None:
                raise ValueError(
                    f"Transaction {self.transaction_id} is claimed by "
                    f"{self.generated_invoice_id} without tenant and billed amount"
                )
        return self

    @property
    def is_claimed(self) -> bool:
        return self.generated_invoice_id is not None

    @property
    def is_attributed(self) -> bool:
        return self.tenant_id is not None


class Tenant(CanonicalBase):
    tenant_id: str
    name: str
    external_account_id: Optional[str] = Field(
        None, description="Provider-side account id used to resolve owned entities"
    )
    short_code: Optional[str] = Field(None, description="Prefix for invoice numbers")
    is_active: bool = True


class OwnedEntity(CanonicalBase):
    """Shipment, inventory item or warehouse receipt known to belong to a tenant."""
    entity_id: str
    kind: OwnedEntityKind
    tenant_id: str


class RuleCondition(CanonicalBase):
    """Optional predicate on a pricing rule. Every constrained field must hold."""
    reference_types: Optional[List[ReferenceType]] = None
    min_amount: Optional[DecimalValue] = None
    max_amount: Optional[DecimalValue] = None
    weight_min_oz: Optional[DecimalValue] = None
    weight_max_oz: Optional[DecimalValue] = None
    ship_option_ids: Optional[List[str]] = None
    states: Optional[List[str]] = None
    countries: Optional[List[str]] = None

    def constrained_fields(self) -> int:
        """Number of dimensions this condition narrows (a min/max pair counts once)."""
        count = 0
        if self.reference_types:
            count += 1
        if self.min_amount is not None or self.max_amount is not None:
            count += 1
        if self.weight_min_oz is not None or self.weight_max_oz is not None:
            count += 1
        if self.ship_option_ids:
            count += 1
        if self.states:
            count += 1
        if self.countries:
            count += 1
        return count


class PricingRule(CanonicalBase):
    rule_id: Optional[int] = Field(None, description="Assigned by the ledger on insert")
    name: str = ""
    tenant_id: Optional[str] = Field(None, description="None = applies to every tenant")
    fee_category: Optional[FeeCategory] = Field(None, description="None = any category")
    condition: Optional[RuleCondition] = None
    rule_type: RuleType
    value: DecimalValue
    is_active: bool = True
    effective_from: Optional[DateValue] = None
    effective_to: Optional[DateValue] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)


class GeneratedInvoice(CanonicalBase):
    invoice_id: str
    invoice_number: str
    tenant_id: str
    period_start: DateValue
    period_end: DateValue
    upstream_invoice_ids: List[str] = Field(default_factory=list)
    subtotals: Dict[DisplayCategory, DecimalValue] = Field(default_factory=dict)
    total: DecimalValue = Decimal("0.00")
    line_count: int = 0
    status: InvoiceStatus = InvoiceStatus.DRAFT
    rule_snapshot_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None

    @property
    def is_mutable(self) -> bool:
        return self.status == InvoiceStatus.DRAFT


class UpstreamInvoice(CanonicalBase):
    """Provider's own invoice. Read-only; used only for reconciliation."""
    upstream_invoice_id: str
    invoice_type: str = Field(..., description="Provider category type, e.g. Shipping")
    invoice_date: DateValue
    period_start: Optional[DateValue] = None
    period_end: Optional[DateValue] = None
    total_amount: DecimalValue


class PendingDependency(CanonicalBase):
    """Visible work-queue row for a transaction waiting on an owned entity to sync."""
    transaction_id: str
    dependency_key: str
    attempts: int = 0
    first_seen_at: datetime
    next_attempt_at: datetime
    last_reason: str = ""


# =============================================================================
# Reconciliation output
# =============================================================================

class DriftClassification(str, Enum):
    WITHIN_TOLERANCE = "within_tolerance"
    NEEDS_REVIEW = "needs_review"
    UPSTREAM_ONLY_CHARGE_SUSPECTED = "upstream_only_charge_suspected"


class DiscrepancyLine(CanonicalBase):
    upstream_invoice_id: str
    invoice_type: str
    authoritative_total: DecimalValue
    local_total: DecimalValue
    claimed_billed_total: DecimalValue = Decimal("0")
    delta: DecimalValue
    pct_delta: DecimalValue
    classification: DriftClassification
    transaction_count: int = 0
    unattributed_count: int = 0
    unclaimed_count: int = 0


class CategoryDiscrepancy(CanonicalBase):
    invoice_type: str
    authoritative_total: DecimalValue
    local_total: DecimalValue
    delta: DecimalValue
    pct_delta: DecimalValue
    classification: DriftClassification


class DiscrepancyReport(CanonicalBase):
    report_id: str
    run_id: Optional[str] = None
    period_start: DateValue
    period_end: DateValue
    tolerance_pct: DecimalValue
    absolute_tolerance: DecimalValue
    upstream_only_pct: DecimalValue
    lines: List[DiscrepancyLine] = Field(default_factory=list)
    categories: List[CategoryDiscrepancy] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def drifted(self) -> List[DiscrepancyLine]:
        return [
            line for line in self.lines
            if line.classification != DriftClassification.WITHIN_TOLERANCE
        ]
