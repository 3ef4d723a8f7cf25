"""Invoice Assembler - tenant-period invoices with all-or-nothing claiming."""

from invoice_assembler.allocation import allocate_cents, round_cents
from invoice_assembler.assembler import InvoiceAssembler
from invoice_assembler.models import AssemblyPeriod, AssemblyResult, AssemblyStats
from invoice_assembler.preflight import PreflightCheck, PreflightReport, run_preflight
from invoice_assembler.verification import VerificationIssue, VerificationReport, verify_invoice

__all__ = [
    "allocate_cents",
    "round_cents",
    "InvoiceAssembler",
    "AssemblyPeriod",
    "AssemblyResult",
    "AssemblyStats",
    "PreflightCheck",
    "PreflightReport",
    "run_preflight",
    "VerificationIssue",
    "VerificationReport",
    "verify_invoice",
]
