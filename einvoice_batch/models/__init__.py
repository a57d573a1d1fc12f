"""
einvoice_batch.models -- ORM models for bulk invoice batches.

Architecture: einvoice_batch/models. Imports from einvoice_kernel.db.base only.
"""

from einvoice_batch.models.batch import BulkInvoiceBatch, BulkInvoiceItem

__all__ = [
    "BulkInvoiceBatch",
    "BulkInvoiceItem",
]
