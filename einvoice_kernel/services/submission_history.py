"""
SubmissionHistory -- read side of the submission_attempts log.

``attempts_for`` lists one invoice's external calls in order.
``retry_metrics`` rolls the log up for a business (or every business) over
an optional window:

    by_outcome            calls per AttemptOutcome
    by_error_kind         failed calls per ErrorKind
    accepted_first_try    invoices accepted on attempt 1
    accepted_after_retry  invoices accepted on a later attempt
    never_accepted        invoices with calls in the window but no acceptance

Attempt numbers run per invoice across every submission of it, so an
invoice rejected once and accepted on resubmission counts as accepted
after retry.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import case, func, select

from einvoice_kernel.db.engine import transaction
from einvoice_kernel.exceptions import InvoiceNotFoundError
from einvoice_kernel.logging_config import get_logger
from einvoice_kernel.models.invoice import AttemptOutcome, Invoice, SubmissionAttempt

logger = get_logger("services.submission_history")


@dataclass(frozen=True)
class AttemptRecord:
    invoice_id: UUID
    attempt_number: int
    mode: str
    invoice_sequence: int
    idempotency_key: str
    outcome: str
    attempted_at: datetime
    error_kind: str | None = None
    http_status: int | None = None
    error_message: str | None = None
    raw_response: dict[str, Any] | None = None

    @classmethod
    def from_model(cls, attempt: SubmissionAttempt) -> "AttemptRecord":
        return cls(
            invoice_id=attempt.invoice_id,
            attempt_number=attempt.attempt_number,
            mode=attempt.mode,
            invoice_sequence=attempt.invoice_sequence,
            idempotency_key=attempt.idempotency_key,
            outcome=attempt.outcome,
            attempted_at=attempt.attempted_at,
            error_kind=attempt.error_kind,
            http_status=attempt.http_status,
            error_message=attempt.error_message,
            raw_response=attempt.raw_response,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RetryMetrics:
    total_attempts: int = 0
    invoices: int = 0
    by_outcome: dict[str, int] = field(default_factory=dict)
    by_error_kind: dict[str, int] = field(default_factory=dict)
    accepted_first_try: int = 0
    accepted_after_retry: int = 0
    never_accepted: int = 0
    max_attempt_number: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SubmissionHistory:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def attempts_for(self, invoice_id: UUID) -> list[AttemptRecord]:
        """
        Every recorded call for the invoice, oldest first.

        Raises:
            InvoiceNotFoundError: unknown invoice.
        """
        with transaction(self._session_factory) as session:
            if session.get(Invoice, invoice_id) is None:
                raise InvoiceNotFoundError(str(invoice_id))
            return [
                AttemptRecord.from_model(a)
                for a in session.execute(
                    select(SubmissionAttempt)
                    .where(SubmissionAttempt.invoice_id == invoice_id)
                    .order_by(SubmissionAttempt.attempt_number)
                ).scalars()
            ]

    def retry_metrics(
        self,
        business_id: UUID | None = None,
        since: datetime | None = None,
    ) -> RetryMetrics:
        """Roll up attempts made at or after ``since`` for one business or all."""
        conditions = []
        if business_id is not None:
            conditions.append(
                SubmissionAttempt.invoice_id.in_(
                    select(Invoice.id).where(Invoice.business_id == business_id)
                )
            )
        if since is not None:
            conditions.append(SubmissionAttempt.attempted_at >= since)

        first_accepted = func.min(
            case(
                (SubmissionAttempt.outcome == AttemptOutcome.ACCEPTED.value,
                 SubmissionAttempt.attempt_number),
                else_=None,
            )
        )

        with transaction(self._session_factory) as session:
            by_outcome = dict(session.execute(
                select(SubmissionAttempt.outcome, func.count())
                .where(*conditions)
                .group_by(SubmissionAttempt.outcome)
            ).all())
            by_error_kind = dict(session.execute(
                select(SubmissionAttempt.error_kind, func.count())
                .where(*conditions, SubmissionAttempt.error_kind.is_not(None))
                .group_by(SubmissionAttempt.error_kind)
            ).all())
            per_invoice = session.execute(
                select(
                    SubmissionAttempt.invoice_id,
                    func.max(SubmissionAttempt.attempt_number),
                    first_accepted,
                )
                .where(*conditions)
                .group_by(SubmissionAttempt.invoice_id)
            ).all()

        metrics = RetryMetrics(
            total_attempts=sum(by_outcome.values()),
            invoices=len(per_invoice),
            by_outcome=by_outcome,
            by_error_kind=by_error_kind,
            accepted_first_try=sum(1 for _, _, first in per_invoice if first == 1),
            accepted_after_retry=sum(1 for _, _, first in per_invoice if first is not None and first > 1),
            never_accepted=sum(1 for _, _, first in per_invoice if first is None),
            max_attempt_number=max((last for _, last, _ in per_invoice), default=0),
        )
        logger.debug(
            "retry_metrics_computed",
            extra={
                "business_id": str(business_id) if business_id else None,
                "total_attempts": metrics.total_attempts,
                "invoices": metrics.invoices,
            },
        )
        return metrics
