"""Record Normalizer.

Turns raw upstream charge records (as returned by the billing feed) into
canonical Transactions. A record that cannot be normalized is reported as
malformed and excluded from the batch; it never stops the batch.

Raw record fields understood:
    transaction_id (or id), transaction_fee (or fee_type), amount,
    charge_date, reference_id, reference_type, invoice_id,
    invoiced_status, fulfillment_center, additional_details
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from core.errors import MalformedRecord
from core.observability.logging import get_logger
from ingestion.categories import classify_fee, reference_type_for
from models.canonical import Transaction, UpstreamInvoice, parse_date, parse_decimal


logger = get_logger(__name__)


@dataclass
class NormalizationResult:
    transactions: List[Transaction] = field(default_factory=list)
    malformed: List[MalformedRecord] = field(default_factory=list)
    duplicates: int = 0
    unknown_fee_labels: Dict[str, int] = field(default_factory=dict)


def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None and value != "":
            return value
    return None


def _first_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def normalize_record(
    raw: Dict[str, Any],
    channel_tenant_id: Optional[str] = None,
    unknown_labels: Optional[Dict[str, int]] = None,
) -> Transaction:
    """Normalize one raw charge.

    Raises:
        MalformedRecord: id, amount, charge date or fee label missing/unparseable
    """
    transaction_id = _first(raw, "transaction_id", "id")
    if transaction_id is None:
        raise MalformedRecord("Missing transaction id", raw)
    transaction_id = str(transaction_id)

    raw_amount = _first(raw, "amount")
    if raw_amount is None:
        raise MalformedRecord(f"Missing amount on {transaction_id}", raw)
    try:
        amount = parse_decimal(raw_amount)
    except (InvalidOperation, ValueError) as e:
        raise MalformedRecord(f"Unparseable amount {raw_amount!r} on {transaction_id}: {e}", raw) from e
    if not isinstance(amount, Decimal) or not amount.is_finite():
        raise MalformedRecord(f"Unparseable amount {raw_amount!r} on {transaction_id}", raw)

    fee_label = _first(raw, "transaction_fee", "fee_type")
    if fee_label is None or not str(fee_label).strip():
        raise MalformedRecord(f"Missing fee category on {transaction_id}", raw)
    fee_label = str(fee_label).strip()

    raw_date = _first(raw, "charge_date")
    if raw_date is None:
        raise MalformedRecord(f"Missing charge date on {transaction_id}", raw)
    try:
        charge_date = parse_date(raw_date)
    except ValueError as e:
        raise MalformedRecord(f"Unparseable charge date {raw_date!r} on {transaction_id}", raw) from e

    fee_category, known = classify_fee(fee_label)
    if not known:
        logger.warning(
            f"Unknown upstream fee label '{fee_label}', classified as other",
            extra_fields={"transaction_id": transaction_id, "fee_label": fee_label},
        )
        if unknown_labels is not None:
            unknown_labels[fee_label] = unknown_labels.get(fee_label, 0) + 1

    reference_type = reference_type_for(fee_category, _first(raw, "reference_type"))

    raw_details = raw.get("additional_details") or {}
    if not isinstance(raw_details, dict):
        raise MalformedRecord(f"additional_details on {transaction_id} is not a mapping", raw)
    details = dict(raw_details)
    fulfillment_center = _first(raw, "fulfillment_center")
    if fulfillment_center is not None:
        details.setdefault("FulfillmentCenter", fulfillment_center)

    upstream_invoice_id = _first(raw, "invoice_id")
    if raw.get("invoiced_status") is False:
        upstream_invoice_id = None

    try:
        return Transaction(
            transaction_id=transaction_id,
            fee_category=fee_category,
            fee_type=fee_label,
            reference_type=reference_type,
            reference_id=str(_first(raw, "reference_id") or ""),
            amount=amount,
            charge_date=charge_date,
            upstream_invoice_id=str(upstream_invoice_id) if upstream_invoice_id is not None else None,
            channel_tenant_id=channel_tenant_id,
            details=details,
        )
    except ValidationError as e:
        raise MalformedRecord(f"Invalid field on {transaction_id}: {_first_error(e)}", raw) from e


def normalize_batch(
    records: List[Dict[str, Any]],
    channel_tenant_id: Optional[str] = None,
) -> NormalizationResult:
    """Normalize a page/batch of raw records.

    Duplicates within the batch collapse by transaction id; the last
    occurrence wins.
    """
    result = NormalizationResult()
    by_id: Dict[str, Transaction] = {}

    for raw in records:
        if not isinstance(raw, dict):
            error = MalformedRecord(f"Feed record is a {type(raw).__name__}, not an object", {"raw": raw})
            logger.warning(f"Malformed record excluded: {error.message}")
            result.malformed.append(error)
            continue
        try:
            txn = normalize_record(raw, channel_tenant_id, result.unknown_fee_labels)
        except MalformedRecord as e:
            logger.warning(
                f"Malformed record excluded: {e.message}",
                extra_fields={"transaction_id": _first(raw, "transaction_id", "id")},
            )
            result.malformed.append(e)
            continue

        if txn.transaction_id in by_id:
            result.duplicates += 1
        by_id[txn.transaction_id] = txn

    result.transactions = list(by_id.values())

    if result.malformed or result.duplicates:
        logger.info(
            "Normalized batch with exclusions",
            extra_fields={
                "normalized": len(result.transactions),
                "malformed": len(result.malformed),
                "duplicates": result.duplicates,
            },
        )
    return result


def normalize_upstream_invoice(raw: Dict[str, Any]) -> UpstreamInvoice:
    """Normalize one of the provider's own invoices.

    Raw fields: invoice_id (or id), invoice_type, invoice_date, amount,
    period_start, period_end.

    Raises:
        MalformedRecord: id, amount or invoice date missing/unparseable
    """
    if not isinstance(raw, dict):
        raise MalformedRecord(f"Upstream invoice is a {type(raw).__name__}, not an object", {"raw": raw})
    invoice_id = _first(raw, "invoice_id", "id")
    if invoice_id is None:
        raise MalformedRecord("Missing upstream invoice id", raw)
    invoice_id = str(invoice_id)

    try:
        total = parse_decimal(_first(raw, "amount", "total_amount"))
        invoice_date = parse_date(_first(raw, "invoice_date"))
        period_start = parse_date(_first(raw, "period_start"))
        period_end = parse_date(_first(raw, "period_end"))
    except (InvalidOperation, ValueError) as e:
        raise MalformedRecord(f"Unparseable upstream invoice {invoice_id}: {e}", raw) from e
    if total is None or invoice_date is None:
        raise MalformedRecord(f"Upstream invoice {invoice_id} lacks an amount or date", raw)

    try:
        return UpstreamInvoice(
            upstream_invoice_id=invoice_id,
            invoice_type=str(_first(raw, "invoice_type") or "Other"),
            invoice_date=invoice_date,
            period_start=period_start,
            period_end=period_end,
            total_amount=total,
        )
    except ValidationError as e:
        raise MalformedRecord(f"Invalid field on upstream invoice {invoice_id}: {_first_error(e)}", raw) from e
