"""ORM models for the e-invoicing kernel."""

from einvoice_kernel.models.invoice import (
    AttemptOutcome,
    Invoice,
    InvoiceItem,
    SubmissionAttempt,
)
from einvoice_kernel.models.sequence import SequenceCounter
from einvoice_kernel.models.tenant import Business, Customer, Product

__all__ = [
    "AttemptOutcome",
    "Business",
    "Customer",
    "Invoice",
    "InvoiceItem",
    "Product",
    "SequenceCounter",
    "SubmissionAttempt",
]
