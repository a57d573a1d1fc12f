"""
BatchValidator -- one validation pass over a batch's rows.

Contract:
    ``validate_batch`` checks every row still at INGESTED against
    ``validate_row`` and either advances it to VALIDATED or appends the
    errors found, tagged with the pass number.

Architecture: einvoice_batch/services.  Imports from einvoice_batch.domain,
    einvoice_batch.models and kernel models.

Invariants enforced:
    - Rows already valid, rows at or past SANDBOX_SUBMITTED, and structural
      failures are never re-examined.
    - ``validation_errors`` accumulates across passes; nothing is overwritten.
    - Counters and ``validation_status`` are recomputed from the rows.
"""

from __future__ import annotations

from collections import Counter
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from einvoice_batch.domain.rules import CustomerRef, ProductRef, ReferenceIndex, validate_row
from einvoice_batch.domain.types import RowStage, ValidationStatus, ValidationSummary
from einvoice_batch.models.batch import BulkInvoiceBatch, BulkInvoiceItem
from einvoice_batch.services.progress import refresh_counters
from einvoice_kernel.db.engine import transaction
from einvoice_kernel.exceptions import BatchNotFoundError
from einvoice_kernel.logging_config import LogContext, get_logger
from einvoice_kernel.models.tenant import Customer, Product

logger = get_logger("batch.validator")

CHUNK_SIZE = 200


def load_references(session: Session, business_id: UUID) -> ReferenceIndex:
    """Snapshot the business's customer and product codes."""
    customers = {
        c.code: CustomerRef(
            customer_id=c.id,
            name=c.name,
            ntn_cnic=c.ntn_cnic,
            province=c.province,
            address=c.address,
            registration_type=c.registration_type,
        )
        for c in session.execute(
            select(Customer).where(Customer.business_id == business_id)
        ).scalars()
    }
    products = {
        p.code: ProductRef(
            product_id=p.id,
            description=p.description,
            hs_code=p.hs_code,
            uom=p.uom,
            unit_price=p.unit_price,
            tax_rate=p.tax_rate,
        )
        for p in session.execute(
            select(Product).where(Product.business_id == business_id)
        ).scalars()
    }
    return ReferenceIndex(customers=customers, products=products)


class BatchValidator:
    def __init__(self, session_factory: sessionmaker[Session], chunk_size: int = CHUNK_SIZE):
        self._session_factory = session_factory
        self._chunk_size = max(1, chunk_size)

    def validate_batch(self, batch_id: UUID, actor_id: UUID) -> ValidationSummary:
        """
        Run one pass.

        Raises:
            BatchNotFoundError: unknown batch.
        """
        with LogContext.bind(batch_id=str(batch_id), actor_id=str(actor_id)):
            with transaction(self._session_factory) as session:
                batch = session.get(BulkInvoiceBatch, batch_id)
                if batch is None:
                    raise BatchNotFoundError(str(batch_id))
                batch.validation_passes += 1
                pass_number = batch.validation_passes
                references = load_references(session, batch.business_id)
                row_ids = list(session.execute(
                    select(BulkInvoiceItem.id)
                    .where(
                        BulkInvoiceItem.batch_id == batch_id,
                        BulkInvoiceItem.stage == RowStage.INGESTED.value,
                    )
                    .order_by(BulkInvoiceItem.row_number)
                ).scalars())

            logger.info(
                "batch_validation_started",
                extra={"pass_number": pass_number, "rows_to_check": len(row_ids)},
            )

            error_counts: Counter[str] = Counter()
            for start in range(0, len(row_ids), self._chunk_size):
                chunk = row_ids[start:start + self._chunk_size]
                with transaction(self._session_factory) as session:
                    items = session.execute(
                        select(BulkInvoiceItem).where(BulkInvoiceItem.id.in_(chunk))
                    ).scalars()
                    for item in items:
                        valid, errors = validate_row(item.invoice_data, references)
                        if valid:
                            item.advance(RowStage.VALIDATED)
                            item.updated_by_id = actor_id
                            continue
                        item.add_errors([e.to_dict() for e in errors], pass_number)
                        item.updated_by_id = actor_id
                        error_counts.update(e.code for e in errors)
                        logger.debug(
                            "batch_row_invalid",
                            extra={
                                "row_number": item.row_number,
                                "error_codes": [e.code for e in errors],
                            },
                        )

            with transaction(self._session_factory) as session:
                batch = session.get(BulkInvoiceBatch, batch_id)
                refresh_counters(session, batch)
                status = (
                    ValidationStatus.VALIDATED
                    if batch.valid_records > 0
                    else ValidationStatus.FAILED
                )
                batch.validation_status = status.value
                batch.validation_summary = {
                    "pass_number": pass_number,
                    "checked": len(row_ids),
                    "valid_records": batch.valid_records,
                    "invalid_records": batch.invalid_records,
                    "error_counts": dict(error_counts),
                }
                batch.updated_by_id = actor_id
                summary = ValidationSummary(
                    batch_id=batch_id,
                    pass_number=pass_number,
                    checked=len(row_ids),
                    valid_records=batch.valid_records,
                    invalid_records=batch.invalid_records,
                    validation_status=status,
                )

            logger.info(
                "batch_validation_completed",
                extra={
                    "pass_number": pass_number,
                    "checked": summary.checked,
                    "valid_records": summary.valid_records,
                    "invalid_records": summary.invalid_records,
                    "validation_status": status.value,
                },
            )
        return summary
