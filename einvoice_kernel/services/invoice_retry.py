"""
InvoiceRetryService -- scheduled resubmission of invoices that ran out of
in-process retries.

An invoice whose transient failures exhausted the backoff policy is left
FAILED with ``last_error_kind = TRANSIENT`` and a ``next_retry_at``.  A
periodic job calls ``retry_due`` to resubmit the ones whose time has come,
spacing later retries by the RetrySchedule until ``max_retries`` is used up.

Validation and auth failures are never picked up here: the former need a
data change, the latter a new token.
"""

from uuid import UUID

from sqlalchemy import select

from einvoice_kernel.db.engine import transaction
from einvoice_kernel.domain.clock import Clock, SystemClock
from einvoice_kernel.domain.invoice_lifecycle import InvoiceStatus
from einvoice_kernel.domain.retry_policy import RetrySchedule
from einvoice_kernel.exceptions import (
    EInvoiceError,
    ErrorKind,
    InvoiceNotFoundError,
    RetryNotAllowedError,
)
from einvoice_kernel.logging_config import get_logger
from einvoice_kernel.models.invoice import Invoice
from einvoice_kernel.services.invoice_submission import (
    InvoiceSubmissionService,
    SubmissionOutcome,
)

logger = get_logger("services.invoice_retry")


class InvoiceRetryService:
    def __init__(
        self,
        session_factory,
        submission: InvoiceSubmissionService,
        schedule: RetrySchedule | None = None,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._submission = submission
        self._schedule = schedule or RetrySchedule()
        self._clock = clock or SystemClock()

    def due_invoice_ids(self, limit: int = 100) -> list[UUID]:
        """Ids of FAILED transient invoices whose next retry time has passed."""
        now = self._clock.now_utc()
        with transaction(self._session_factory) as session:
            return list(session.execute(
                select(Invoice.id)
                .where(
                    Invoice.status == InvoiceStatus.FAILED.value,
                    Invoice.last_error_kind == ErrorKind.TRANSIENT.value,
                    Invoice.next_retry_at.is_not(None),
                    Invoice.next_retry_at <= now,
                    Invoice.retry_count < self._schedule.max_retries,
                )
                .order_by(Invoice.next_retry_at)
                .limit(limit)
            ).scalars())

    def retry_due(self, limit: int = 100, actor_id: UUID | None = None) -> list[SubmissionOutcome]:
        """
        Resubmit every due invoice, one at a time.

        An invoice that cannot be retried right now (lease held, state moved
        on) is skipped and logged; it does not stop the others.
        """
        outcomes: list[SubmissionOutcome] = []
        due = self.due_invoice_ids(limit)
        logger.info("invoice_retry_sweep_started", extra={"due_count": len(due)})
        for invoice_id in due:
            try:
                outcomes.append(self.retry_invoice(invoice_id, actor_id))
            except EInvoiceError as exc:
                logger.warning(
                    "invoice_retry_skipped",
                    extra={"invoice_id": str(invoice_id), "error_code": exc.code},
                )
        logger.info(
            "invoice_retry_sweep_completed",
            extra={
                "due_count": len(due),
                "validated": sum(1 for o in outcomes if o.validated),
            },
        )
        return outcomes

    def retry_invoice(self, invoice_id: UUID, actor_id: UUID | None = None) -> SubmissionOutcome:
        """
        Count one scheduled retry against the invoice and resubmit it.

        Raises:
            RetryNotAllowedError: not a FAILED transient invoice, or its
                scheduled retries are used up.
        """
        with transaction(self._session_factory) as session:
            invoice = session.get(Invoice, invoice_id)
            if invoice is None:
                raise InvoiceNotFoundError(str(invoice_id))
            if invoice.status_enum is not InvoiceStatus.FAILED:
                raise RetryNotAllowedError(str(invoice_id), f"status is {invoice.status}")
            if invoice.last_error_kind != ErrorKind.TRANSIENT.value:
                raise RetryNotAllowedError(
                    str(invoice_id), f"last failure was {invoice.last_error_kind}"
                )
            if not self._schedule.allows(invoice.retry_count):
                raise RetryNotAllowedError(
                    str(invoice_id),
                    f"scheduled retries exhausted ({invoice.retry_count}/{self._schedule.max_retries})",
                )
            invoice.retry_count += 1
            retry_number = invoice.retry_count
            actor = actor_id or invoice.created_by_id

        logger.info(
            "invoice_retry_started",
            extra={"invoice_id": str(invoice_id), "retry_number": retry_number},
        )
        return self._submission.submit(invoice_id, actor)
