"""
Module: einvoice_kernel.db.immutability
Responsibility: ORM event listeners that freeze invoice line items once the
    invoice has been handed to the authority.
Architecture position: Kernel > DB.  Imports models lazily inside listeners.

Invariants enforced:
    - InvoiceItem rows cannot be updated or deleted while their invoice is
      SUBMITTED, VALIDATED or CANCELLED.  DRAFT, PENDING and FAILED invoices
      may still be corrected.

Failure modes:
    - ImmutabilityViolationError raised from before_update / before_delete,
      which aborts the flush.
"""

from sqlalchemy import event, text

from einvoice_kernel.exceptions import ImmutabilityViolationError

FROZEN_ITEM_STATUSES = frozenset({"submitted", "validated", "cancelled"})


def _invoice_status(connection, invoice_id) -> str | None:
    row = connection.execute(
        text("SELECT status FROM invoices WHERE id = :id"),
        {"id": str(invoice_id)},
    ).first()
    return row[0] if row else None


def _check_invoice_item_update(mapper, connection, target):
    status = _invoice_status(connection, target.invoice_id)
    if status in FROZEN_ITEM_STATUSES:
        raise ImmutabilityViolationError(
            "InvoiceItem", str(target.id), f"invoice is {status}"
        )


def _check_invoice_item_delete(mapper, connection, target):
    status = _invoice_status(connection, target.invoice_id)
    if status in FROZEN_ITEM_STATUSES:
        raise ImmutabilityViolationError(
            "InvoiceItem", str(target.id), f"cannot delete a line of a {status} invoice"
        )


def register_immutability_listeners() -> None:
    """
    Register the line-item freeze listeners (idempotent).

    Call this after the models are imported and before any session flushes.
    """
    from einvoice_kernel.models.invoice import InvoiceItem

    if not event.contains(InvoiceItem, "before_update", _check_invoice_item_update):
        event.listen(InvoiceItem, "before_update", _check_invoice_item_update)
    if not event.contains(InvoiceItem, "before_delete", _check_invoice_item_delete):
        event.listen(InvoiceItem, "before_delete", _check_invoice_item_delete)
