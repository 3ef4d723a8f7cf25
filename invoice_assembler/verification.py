"""Post-generation verification of a generated invoice.

Re-prices every claimed line against a rule snapshot and re-adds the
persisted amounts. Reads only; a failed verification changes nothing.

Issue types:
    snapshot_mismatch    snapshot differs from the one the invoice was built with
    wrong_rule           line carries a different rule than the snapshot selects
    missing_rule         line was billed at base but the snapshot has a rule for it
    billed_math_error    persisted line amount is not the cent rounding of the re-priced amount
    subtotal_mismatch    category subtotal differs from the sum of its lines
    total_mismatch       total differs from the sum of subtotals
    line_count_mismatch  line count differs from the claimed lines
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from core.errors import InvoiceStateError
from core.observability.logging import get_logger, with_correlation
from ingestion.categories import display_category_for
from invoice_assembler.allocation import exact_sum
from models.canonical import CENT, PricingStatus
from pricing_engine.engine import PricingEngine
from pricing_engine.models import RuleSetSnapshot


logger = get_logger(__name__)


@dataclass
class VerificationIssue:
    issue_type: str
    message: str
    transaction_id: Optional[str] = None
    expected: Optional[str] = None
    actual: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "issue_type": self.issue_type,
            "message": self.message,
            "transaction_id": self.transaction_id,
            "expected": self.expected,
            "actual": self.actual,
        }


@dataclass
class VerificationReport:
    invoice_id: str
    invoice_number: str
    snapshot_id: str
    lines_checked: int = 0
    issues: List[VerificationIssue] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.issues

    def issue_types(self) -> List[str]:
        return sorted({i.issue_type for i in self.issues})

    def to_dict(self) -> dict:
        return {
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "snapshot_id": self.snapshot_id,
            "passed": self.passed,
            "lines_checked": self.lines_checked,
            "issues": [i.to_dict() for i in self.issues],
        }


def verify_invoice(store, invoice_id: str, snapshot: RuleSetSnapshot) -> VerificationReport:
    """Check a generated invoice against ``snapshot``.

    Raises:
        InvoiceStateError: unknown invoice
    """
    invoice = store.get_invoice(invoice_id)
    if invoice is None:
        raise InvoiceStateError(f"Invoice {invoice_id} not found")

    report = VerificationReport(
        invoice_id=invoice.invoice_id,
        invoice_number=invoice.invoice_number,
        snapshot_id=snapshot.snapshot_id,
    )
    issues = report.issues

    with with_correlation(stage="verify", tenant_id=invoice.tenant_id):
        if invoice.rule_snapshot_id and invoice.rule_snapshot_id != snapshot.snapshot_id:
            issues.append(VerificationIssue(
                "snapshot_mismatch",
                "Invoice was assembled under a different rule snapshot",
                expected=invoice.rule_snapshot_id,
                actual=snapshot.snapshot_id,
            ))

        engine = PricingEngine(snapshot)
        lines = store.list_transactions(generated_invoice_id=invoice_id)
        report.lines_checked = len(lines)
        by_category = {}

        for txn in lines:
            by_category.setdefault(display_category_for(txn.fee_category), []).append(txn)
            expected = engine.price(txn)

            if txn.pricing_status == PricingStatus.UNCONFIGURED and expected.rule_id is not None:
                issues.append(VerificationIssue(
                    "missing_rule",
                    f"Billed at base amount but rule {expected.rule_id} applies",
                    transaction_id=txn.transaction_id,
                    expected=str(expected.rule_id),
                ))
            elif txn.markup_rule_id != expected.rule_id:
                issues.append(VerificationIssue(
                    "wrong_rule",
                    f"Line carries rule {txn.markup_rule_id}, snapshot selects {expected.rule_id}",
                    transaction_id=txn.transaction_id,
                    expected=str(expected.rule_id),
                    actual=str(txn.markup_rule_id),
                ))

            # Persisted cents are the floor or ceiling of the exact amount
            if txn.billed_amount is None or abs(txn.billed_amount - expected.billed_amount) >= CENT:
                issues.append(VerificationIssue(
                    "billed_math_error",
                    "Persisted amount does not match the re-priced amount",
                    transaction_id=txn.transaction_id,
                    expected=str(expected.billed_amount),
                    actual=str(txn.billed_amount),
                ))

        for category in set(by_category) | set(invoice.subtotals):
            line_sum = exact_sum(t.billed_amount or Decimal("0") for t in by_category.get(category, []))
            stored = invoice.subtotals.get(category, Decimal("0"))
            if line_sum != stored:
                issues.append(VerificationIssue(
                    "subtotal_mismatch",
                    f"{category.value} subtotal does not equal the sum of its lines",
                    expected=str(line_sum),
                    actual=str(stored),
                ))

        subtotal_sum = exact_sum(invoice.subtotals.values())
        if subtotal_sum != invoice.total:
            issues.append(VerificationIssue(
                "total_mismatch",
                "Total does not equal the sum of subtotals",
                expected=str(subtotal_sum),
                actual=str(invoice.total),
            ))

        if invoice.line_count != len(lines):
            issues.append(VerificationIssue(
                "line_count_mismatch",
                "Line count does not match the claimed lines",
                expected=str(len(lines)),
                actual=str(invoice.line_count),
            ))

        log = logger.info if report.passed else logger.warning
        log(
            f"Verification of {invoice.invoice_number} {'passed' if report.passed else 'failed'}",
            extra_fields={
                "invoice_id": invoice.invoice_id,
                "lines": report.lines_checked,
                "issues": report.issue_types(),
            },
        )
    return report
