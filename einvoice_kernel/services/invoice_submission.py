"""
InvoiceSubmissionService -- drives one invoice through the submission
state machine against the FBR gateway.

Responsibility:
    Owns every status change of an invoice after creation:

        DRAFT   -> PENDING    amounts checked, sequence allocated (once)
        PENDING -> SUBMITTED  the authority answered
        SUBMITTED -> VALIDATED / FAILED
        PENDING -> FAILED     auth, validation, or exhausted transient errors
        FAILED  -> PENDING    resubmission, same sequence
        DRAFT / PENDING -> CANCELLED

Architecture position:
    Kernel > Services -- imperative shell.  Uses short transactions from a
    session factory; no transaction is held open across an external call.

Invariants enforced:
    - Single flight: a database lease on the invoice row
      (lease_owner / lease_expires_at, claimed by a conditional UPDATE)
      ensures only one worker in any process drives an invoice at a time.
    - One invoice, one number: the sequence is allocated in the same
      transaction as DRAFT -> PENDING and never re-allocated.
    - Every external call carries ``<business_id>:<sequence>`` as its
      idempotency key and is recorded as a SubmissionAttempt.
    - Auth failures put the business+mode on hold; held invoices fail fast
      without calling the authority.

Failure modes:
    - InvoiceNotFoundError, SubmissionInProgressError.
    - InvoiceValidationError: amounts inconsistent; invoice stays DRAFT.
    - InvalidInvoiceTransitionError: submit/cancel from a status that does
      not allow it.
    - AuthHoldError: resubmitting an auth-failed invoice before the token
      was replaced.
    - SequenceError: sequence storage kept failing.

Audit relevance:
    Each transition logs ``invoice_transitioned`` with from/to status and
    event.  Each call logs ``fbr_attempt_recorded``.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from einvoice_kernel.db.engine import transaction
from einvoice_kernel.domain.amounts import check_invoice_amounts
from einvoice_kernel.domain.clock import Clock, SystemClock
from einvoice_kernel.domain.dtos import FieldError
from einvoice_kernel.domain.fbr_contract import FbrGateway, FbrResult
from einvoice_kernel.domain.fbr_payload import build_invoice_payload
from einvoice_kernel.domain.invoice_lifecycle import (
    IntegrationMode,
    InvoiceEvent,
    InvoiceStatus,
    apply_event,
)
from einvoice_kernel.domain.qr import build_qr_payload
from einvoice_kernel.domain.retry_policy import BackoffPolicy, RetrySchedule
from einvoice_kernel.exceptions import (
    AuthHoldError,
    ErrorKind,
    FbrAuthError,
    FbrTransientError,
    FbrValidationError,
    InvalidInvoiceTransitionError,
    InvoiceNotFoundError,
    InvoiceValidationError,
    SubmissionInProgressError,
)
from einvoice_kernel.logging_config import LogContext, get_logger
from einvoice_kernel.models.invoice import AttemptOutcome, Invoice, SubmissionAttempt
from einvoice_kernel.models.tenant import Business
from einvoice_kernel.services.sequence_service import SequenceAllocator, retry_on_storage_error

logger = get_logger("services.invoice_submission")


@dataclass(frozen=True)
class SubmissionOutcome:
    """Where a submit() call left the invoice."""

    invoice_id: UUID
    status: InvoiceStatus
    invoice_sequence: int | None
    invoice_number: str | None
    mode: IntegrationMode | None
    attempts: int = 0
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    needs_reauth: bool = False
    fbr_invoice_number: str | None = None
    raw_response: Any = None
    errors: tuple[FieldError, ...] = field(default_factory=tuple)

    @property
    def validated(self) -> bool:
        return self.status is InvoiceStatus.VALIDATED

    @classmethod
    def from_invoice(cls, invoice: Invoice, attempts: int = 0) -> "SubmissionOutcome":
        return cls(
            invoice_id=invoice.id,
            status=invoice.status_enum,
            invoice_sequence=invoice.invoice_sequence,
            invoice_number=invoice.invoice_number,
            mode=invoice.integration_mode,
            attempts=attempts,
            error_kind=ErrorKind(invoice.last_error_kind) if invoice.last_error_kind else None,
            error_message=invoice.last_error_message,
            needs_reauth=invoice.needs_reauth,
            fbr_invoice_number=invoice.fbr_invoice_number,
            raw_response=invoice.fbr_response,
            errors=tuple(FieldError.from_dict(e) for e in invoice.fbr_errors or ()),
        )


@dataclass(frozen=True)
class _Prepared:
    """Everything the external call needs, captured before the transaction closes."""

    invoice_id: UUID
    business_id: UUID
    invoice_sequence: int
    mode: IntegrationMode
    token: str | None
    payload: dict[str, Any]
    idempotency_key: str
    prior_attempts: int


class InvoiceSubmissionService:
    """
    The invoice submission state machine.

    Contract:
        ``submit`` takes an invoice in DRAFT, PENDING or FAILED and returns
        a SubmissionOutcome once the invoice has settled in VALIDATED or
        FAILED.  ``cancel`` moves DRAFT/PENDING invoices to CANCELLED.

    Guarantees:
        - Status only changes through ``_transition`` (table-checked twice:
          by ``apply_event`` and by the guarded ORM attribute).
        - Transient failures are retried up to ``policy.max_attempts``
          calls with exponential backoff; afterwards the invoice is FAILED
          with kind TRANSIENT and a ``next_retry_at`` for scheduled retry.

    Non-goals:
        - Does NOT create invoices (InvoiceFactory does).
        - Does NOT decide which invoices to retry later (InvoiceRetryService).
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        gateway: FbrGateway,
        policy: BackoffPolicy | None = None,
        clock: Clock | None = None,
        lease_seconds: float = 300.0,
        schedule: RetrySchedule | None = None,
        sequence_attempts: int = 3,
        sequence_delay: float = 0.05,
    ):
        self._session_factory = session_factory
        self._gateway = gateway
        self._policy = policy or BackoffPolicy()
        self._clock = clock or SystemClock()
        self._lease_seconds = lease_seconds
        self._schedule = schedule or RetrySchedule()
        self._sequence_attempts = sequence_attempts
        self._sequence_delay = sequence_delay

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def submit(self, invoice_id: UUID, actor_id: UUID) -> SubmissionOutcome:
        """
        Submit (or resubmit, or resume) an invoice.

        Raises:
            InvoiceNotFoundError, SubmissionInProgressError,
            InvoiceValidationError, InvalidInvoiceTransitionError,
            AuthHoldError, SequenceError.
        """
        owner = uuid4().hex
        with LogContext.bind(invoice_id=str(invoice_id), actor_id=str(actor_id)):
            self._acquire_lease(invoice_id, owner)
            try:
                prepared = self._prepare(invoice_id, actor_id)
                if isinstance(prepared, SubmissionOutcome):
                    return prepared
                return self._transmit(prepared, actor_id)
            finally:
                self._release_lease(invoice_id, owner)

    def cancel(self, invoice_id: UUID, actor_id: UUID) -> SubmissionOutcome:
        """
        Cancel a DRAFT or PENDING invoice.  Already submitted invoices are
        never rolled back.
        """
        owner = uuid4().hex
        with LogContext.bind(invoice_id=str(invoice_id), actor_id=str(actor_id)):
            self._acquire_lease(invoice_id, owner)
            try:
                with transaction(self._session_factory) as session:
                    invoice = self._load(session, invoice_id)
                    self._transition(invoice, InvoiceEvent.CANCEL, actor_id)
                    return SubmissionOutcome.from_invoice(invoice)
            finally:
                self._release_lease(invoice_id, owner)

    def get_invoice(self, invoice_id: UUID) -> Invoice:
        with transaction(self._session_factory) as session:
            return self._load(session, invoice_id, lock=False)

    # ------------------------------------------------------------------
    # Lease (single flight)
    # ------------------------------------------------------------------

    def _acquire_lease(self, invoice_id: UUID, owner: str) -> None:
        now = self._clock.now_utc()
        with transaction(self._session_factory) as session:
            result = session.execute(
                update(Invoice)
                .where(
                    Invoice.id == invoice_id,
                    or_(Invoice.lease_owner.is_(None), Invoice.lease_expires_at < now),
                )
                .values(
                    lease_owner=owner,
                    lease_expires_at=now + timedelta(seconds=self._lease_seconds),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return
            exists = session.execute(
                select(Invoice.id).where(Invoice.id == invoice_id)
            ).scalar_one_or_none()
        if exists is None:
            raise InvoiceNotFoundError(str(invoice_id))
        logger.warning("submission_lease_busy", extra={"invoice_id": str(invoice_id)})
        raise SubmissionInProgressError(str(invoice_id))

    def _release_lease(self, invoice_id: UUID, owner: str) -> None:
        with transaction(self._session_factory) as session:
            session.execute(
                update(Invoice)
                .where(Invoice.id == invoice_id, Invoice.lease_owner == owner)
                .values(lease_owner=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # DRAFT / FAILED / PENDING -> PENDING
    # ------------------------------------------------------------------

    def _prepare(self, invoice_id: UUID, actor_id: UUID) -> "_Prepared | SubmissionOutcome":
        business_id = self._business_of(invoice_id)
        return retry_on_storage_error(
            lambda: self._prepare_once(invoice_id, actor_id),
            business_id=business_id,
            attempts=self._sequence_attempts,
            delay=self._sequence_delay,
            sleep=self._policy.sleep,
        )

    def _prepare_once(self, invoice_id: UUID, actor_id: UUID) -> "_Prepared | SubmissionOutcome":
        with transaction(self._session_factory) as session:
            invoice = self._load(session, invoice_id)
            business = session.get(Business, invoice.business_id)
            status = invoice.status_enum

            if status is InvoiceStatus.DRAFT:
                self._check_amounts(invoice)
                if invoice.invoice_sequence is None:
                    sequence = SequenceAllocator(session).allocate(invoice.business_id)
                    invoice.invoice_sequence = sequence
                    invoice.invoice_number = f"{business.invoice_prefix}-{sequence:06d}"
                if invoice.mode is None:
                    invoice.mode = business.integration_mode
                self._transition(invoice, InvoiceEvent.SUBMIT, actor_id)
            elif status is InvoiceStatus.FAILED:
                mode = invoice.integration_mode or business.mode
                if invoice.needs_reauth and business.is_on_auth_hold(mode):
                    raise AuthHoldError(str(business.id), mode.value)
                self._check_amounts(invoice)
                self._transition(invoice, InvoiceEvent.RESUBMIT, actor_id)
                invoice.needs_reauth = False
                invoice.next_retry_at = None
            elif status is not InvoiceStatus.PENDING:
                raise InvalidInvoiceTransitionError(status.value, InvoiceStatus.PENDING.value)

            invoice.submission_count += 1
            mode = invoice.integration_mode

            if mode is IntegrationMode.LOCAL:
                self._finalize_locally(invoice, actor_id)
                return SubmissionOutcome.from_invoice(invoice)

            if business.is_on_auth_hold(mode):
                self._fail(
                    invoice,
                    actor_id,
                    ErrorKind.AUTH,
                    f"{mode.value} token is on hold pending re-authentication",
                    needs_reauth=True,
                )
                logger.warning(
                    "submission_blocked_by_auth_hold",
                    extra={"business_id": str(business.id), "mode": mode.value},
                )
                return SubmissionOutcome.from_invoice(invoice)

            session.flush()
            return _Prepared(
                invoice_id=invoice.id,
                business_id=business.id,
                invoice_sequence=invoice.invoice_sequence,
                mode=mode,
                token=business.token_for(mode),
                payload=build_invoice_payload(invoice, business, mode),
                idempotency_key=invoice.idempotency_key,
                prior_attempts=self._count_attempts(session, invoice.id),
            )

    def _check_amounts(self, invoice: Invoice) -> None:
        errors = check_invoice_amounts(invoice.amounts())
        if errors:
            logger.info(
                "invoice_validation_failed",
                extra={
                    "invoice_id": str(invoice.id),
                    "error_codes": [e.code for e in errors],
                },
            )
            raise InvoiceValidationError(str(invoice.id), errors)

    def _finalize_locally(self, invoice: Invoice, actor_id: UUID) -> None:
        # LOCAL mode: nothing leaves the building
        self._transition(invoice, InvoiceEvent.TRANSMIT, actor_id)
        self._transition(invoice, InvoiceEvent.ACCEPT, actor_id)
        invoice.qr_payload = build_qr_payload(
            invoice.invoice_number, invoice.total_amount, invoice.invoice_date
        )
        invoice.validated_at = self._clock.now_utc()
        invoice.last_error_kind = None
        invoice.last_error_message = None

    # ------------------------------------------------------------------
    # PENDING -> SUBMITTED -> VALIDATED / FAILED
    # ------------------------------------------------------------------

    def _transmit(self, prepared: _Prepared, actor_id: UUID) -> SubmissionOutcome:
        attempt = 0
        while True:
            attempt += 1
            logger.info(
                "fbr_submission_attempt",
                extra={
                    "invoice_id": str(prepared.invoice_id),
                    "mode": prepared.mode.value,
                    "attempt": attempt,
                    "idempotency_key": prepared.idempotency_key,
                },
            )
            try:
                result = self._gateway.submit(
                    prepared.mode,
                    prepared.token,
                    prepared.payload,
                    prepared.idempotency_key,
                )
            except FbrTransientError as exc:
                if not self._policy.should_retry(attempt):
                    return self._finish_transient(prepared, attempt, exc, actor_id)
                self._record_transient(prepared, attempt, exc)
                waited = self._policy.wait(attempt, exc.retry_after)
                logger.warning(
                    "fbr_transient_retry",
                    extra={
                        "invoice_id": str(prepared.invoice_id),
                        "attempt": attempt,
                        "max_attempts": self._policy.max_attempts,
                        "delay_seconds": waited,
                        "reason": exc.reason,
                    },
                )
                continue
            except FbrAuthError as exc:
                return self._finish_auth(prepared, attempt, exc, actor_id)
            except FbrValidationError as exc:
                return self._finish_validation(prepared, attempt, exc, actor_id)
            return self._finish_result(prepared, attempt, result, actor_id)

    def _record_transient(self, prepared: _Prepared, attempt: int, exc: FbrTransientError) -> None:
        with transaction(self._session_factory) as session:
            invoice = self._load(session, prepared.invoice_id)
            invoice.last_error_kind = ErrorKind.TRANSIENT.value
            invoice.last_error_message = str(exc)
            self._add_attempt(
                session, prepared, attempt, AttemptOutcome.TRANSIENT,
                error_kind=ErrorKind.TRANSIENT, http_status=exc.status_code,
                error_message=str(exc), raw_response=exc.raw_response,
            )

    def _finish_result(
        self, prepared: _Prepared, attempt: int, result: FbrResult, actor_id: UUID
    ) -> SubmissionOutcome:
        with transaction(self._session_factory) as session:
            invoice = self._load(session, prepared.invoice_id)
            self._transition(invoice, InvoiceEvent.TRANSMIT, actor_id)
            invoice.fbr_submitted = True
            invoice.fbr_response = _jsonable(result.raw_response)

            if result.accepted:
                self._transition(invoice, InvoiceEvent.ACCEPT, actor_id)
                invoice.fbr_validated = True
                invoice.fbr_transmission_id = result.transmission_id
                invoice.fbr_acknowledgment_number = result.acknowledgment_number
                invoice.fbr_invoice_number = result.invoice_number
                invoice.fbr_errors = None
                invoice.last_error_kind = None
                invoice.last_error_message = None
                invoice.validated_at = self._clock.now_utc()
                invoice.qr_payload = build_qr_payload(
                    result.invoice_number or invoice.invoice_number,
                    invoice.total_amount,
                    invoice.invoice_date,
                )
                outcome = AttemptOutcome.ACCEPTED
            else:
                self._transition(invoice, InvoiceEvent.REJECT, actor_id)
                invoice.fbr_validated = False
                invoice.fbr_errors = [e.to_dict() for e in result.errors]
                invoice.last_error_kind = ErrorKind.VALIDATION.value
                invoice.last_error_message = (
                    "; ".join(e.message for e in result.errors) or "Rejected by FBR"
                )
                outcome = AttemptOutcome.REJECTED

            self._add_attempt(
                session, prepared, attempt, outcome,
                error_kind=None if result.accepted else ErrorKind.VALIDATION,
                http_status=result.http_status, raw_response=result.raw_response,
            )
            return SubmissionOutcome.from_invoice(invoice, attempts=attempt)

    def _finish_auth(
        self, prepared: _Prepared, attempt: int, exc: FbrAuthError, actor_id: UUID
    ) -> SubmissionOutcome:
        with transaction(self._session_factory) as session:
            invoice = self._load(session, prepared.invoice_id)
            business = session.get(Business, prepared.business_id)
            business.set_auth_hold(prepared.mode, True)
            self._fail(invoice, actor_id, ErrorKind.AUTH, str(exc), needs_reauth=True)
            invoice.fbr_response = _jsonable(exc.raw_response)
            self._add_attempt(
                session, prepared, attempt, AttemptOutcome.AUTH,
                error_kind=ErrorKind.AUTH, http_status=exc.status_code,
                error_message=str(exc), raw_response=exc.raw_response,
            )
            logger.error(
                "fbr_auth_failed",
                extra={
                    "business_id": str(prepared.business_id),
                    "mode": prepared.mode.value,
                    "http_status": exc.status_code,
                },
            )
            return SubmissionOutcome.from_invoice(invoice, attempts=attempt)

    def _finish_validation(
        self, prepared: _Prepared, attempt: int, exc: FbrValidationError, actor_id: UUID
    ) -> SubmissionOutcome:
        with transaction(self._session_factory) as session:
            invoice = self._load(session, prepared.invoice_id)
            self._fail(invoice, actor_id, ErrorKind.VALIDATION, str(exc))
            invoice.fbr_errors = [
                e.to_dict() if isinstance(e, FieldError) else {"code": "FBR_ERROR", "message": str(e)}
                for e in exc.errors
            ]
            invoice.fbr_response = _jsonable(exc.raw_response)
            self._add_attempt(
                session, prepared, attempt, AttemptOutcome.VALIDATION,
                error_kind=ErrorKind.VALIDATION, http_status=exc.status_code,
                error_message=str(exc), raw_response=exc.raw_response,
            )
            return SubmissionOutcome.from_invoice(invoice, attempts=attempt)

    def _finish_transient(
        self, prepared: _Prepared, attempt: int, exc: FbrTransientError, actor_id: UUID
    ) -> SubmissionOutcome:
        with transaction(self._session_factory) as session:
            invoice = self._load(session, prepared.invoice_id)
            self._fail(invoice, actor_id, ErrorKind.TRANSIENT, str(exc))
            invoice.fbr_response = _jsonable(exc.raw_response)
            if self._schedule.allows(invoice.retry_count):
                invoice.next_retry_at = self._clock.now_utc() + timedelta(
                    seconds=self._schedule.next_delay(invoice.retry_count)
                )
            self._add_attempt(
                session, prepared, attempt, AttemptOutcome.TRANSIENT,
                error_kind=ErrorKind.TRANSIENT, http_status=exc.status_code,
                error_message=str(exc), raw_response=exc.raw_response,
            )
            logger.warning(
                "fbr_retries_exhausted",
                extra={
                    "invoice_id": str(prepared.invoice_id),
                    "attempts": attempt,
                    "next_retry_at": invoice.next_retry_at,
                },
            )
            return SubmissionOutcome.from_invoice(invoice, attempts=attempt)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _transition(self, invoice: Invoice, event: InvoiceEvent, actor_id: UUID) -> None:
        from_status = invoice.status_enum
        target = apply_event(from_status, event)
        invoice.status = target.value
        invoice.updated_by_id = actor_id
        logger.info(
            "invoice_transitioned",
            extra={
                "invoice_id": str(invoice.id),
                "event": event.value,
                "from_status": from_status.value,
                "to_status": target.value,
            },
        )

    def _fail(
        self,
        invoice: Invoice,
        actor_id: UUID,
        kind: ErrorKind,
        message: str,
        needs_reauth: bool = False,
    ) -> None:
        self._transition(invoice, InvoiceEvent.FAIL, actor_id)
        invoice.last_error_kind = kind.value
        invoice.last_error_message = message
        invoice.needs_reauth = needs_reauth

    def _add_attempt(
        self,
        session: Session,
        prepared: _Prepared,
        attempt: int,
        outcome: AttemptOutcome,
        error_kind: ErrorKind | None = None,
        http_status: int | None = None,
        error_message: str | None = None,
        raw_response: Any = None,
    ) -> None:
        session.add(SubmissionAttempt(
            invoice_id=prepared.invoice_id,
            attempt_number=prepared.prior_attempts + attempt,
            mode=prepared.mode.value,
            invoice_sequence=prepared.invoice_sequence,
            idempotency_key=prepared.idempotency_key,
            outcome=outcome.value,
            error_kind=error_kind.value if error_kind else None,
            http_status=http_status,
            error_message=error_message,
            raw_response=_jsonable(raw_response),
            attempted_at=self._clock.now_utc(),
        ))
        logger.info(
            "fbr_attempt_recorded",
            extra={
                "invoice_id": str(prepared.invoice_id),
                "attempt": attempt,
                "outcome": outcome.value,
                "http_status": http_status,
            },
        )

    @staticmethod
    def _count_attempts(session: Session, invoice_id: UUID) -> int:
        return session.execute(
            select(func.count())
            .select_from(SubmissionAttempt)
            .where(SubmissionAttempt.invoice_id == invoice_id)
        ).scalar_one()

    @staticmethod
    def _load(session: Session, invoice_id: UUID, lock: bool = True) -> Invoice:
        stmt = select(Invoice).where(Invoice.id == invoice_id)
        if lock:
            stmt = stmt.with_for_update()
        invoice = session.execute(stmt).scalar_one_or_none()
        if invoice is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return invoice

    def _business_of(self, invoice_id: UUID) -> UUID:
        with transaction(self._session_factory) as session:
            business_id = session.execute(
                select(Invoice.business_id).where(Invoice.id == invoice_id)
            ).scalar_one_or_none()
        if business_id is None:
            raise InvoiceNotFoundError(str(invoice_id))
        return business_id


def _jsonable(raw: Any) -> Any:
    """Raw responses are stored as JSON; wrap anything that is not a JSON object or list."""
    if raw is None or isinstance(raw, (dict, list)):
        return raw
    return {"text": str(raw)}
