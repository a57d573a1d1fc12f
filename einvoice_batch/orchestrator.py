"""
BatchOrchestrator -- entry point for bulk invoice uploads and single
invoice submission.

Contract:
    Wires the ingestor, validator, worker pool and submission state machine
    and drives a batch through

        UPLOADING -> PARSING -> VALIDATING -> SUBMITTING -> COMPLETE

    A batch-level failure (unreadable file, database unavailable) marks the
    batch FAILED with an ``errors`` blob and re-raises.  A cancel request
    observed while running ends the batch CANCELLED.

Architecture: einvoice_batch (top-level).  The only module that composes
    collaborators; ``from_settings`` builds them from einvoice_config.

Non-goals:
    - Does NOT run in the background; callers decide when to process.
    - Does NOT roll back invoices the authority already accepted.
"""

from __future__ import annotations

from datetime import datetime
from typing import BinaryIO
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from einvoice_batch.domain.types import (
    BATCH_TRANSITIONS,
    BatchProcessingStatus,
    BatchSummary,
    RowStage,
    SourceFormat,
    ValidationStatus,
    ValidationSummary,
)
from einvoice_batch.models.batch import BulkInvoiceBatch, BulkInvoiceItem
from einvoice_batch.services.progress import refresh_counters
from einvoice_batch.services.validator import BatchValidator
from einvoice_batch.services.worker_pool import (
    BatchSubmissionWorkerPool,
    RateLimitedGateway,
    RateLimiter,
)
from einvoice_fbr.client import FbrClient
from einvoice_ingestion.services.ingestor import BatchIngestor
from einvoice_kernel.db.engine import transaction
from einvoice_kernel.domain.clock import Clock, SystemClock
from einvoice_kernel.domain.fbr_contract import FbrGateway
from einvoice_kernel.domain.invoice_lifecycle import IntegrationMode
from einvoice_kernel.domain.retry_policy import BackoffPolicy, RetrySchedule
from einvoice_kernel.exceptions import (
    BatchNotFoundError,
    BatchStateError,
    BusinessNotFoundError,
    ErrorKind,
    MalformedSourceError,
)
from einvoice_kernel.logging_config import LogContext, get_logger
from einvoice_kernel.models.tenant import Business
from einvoice_kernel.services.invoice_retry import InvoiceRetryService
from einvoice_kernel.services.invoice_submission import (
    InvoiceSubmissionService,
    SubmissionOutcome,
)
from einvoice_kernel.services.submission_history import (
    AttemptRecord,
    RetryMetrics,
    SubmissionHistory,
)

logger = get_logger("batch.orchestrator")

# Row failures worth another attempt without changing the data.  AUTH rows
# additionally need the business's hold for that mode cleared.
RETRYABLE_ROW_KINDS = frozenset({
    ErrorKind.TRANSIENT.value,
    ErrorKind.UNEXPECTED.value,
    ErrorKind.SEQUENCE.value,
    ErrorKind.STATE_CONFLICT.value,
    ErrorKind.AUTH.value,
})

ACTIVE_BATCH_STATUSES = frozenset({
    BatchProcessingStatus.PARSING,
    BatchProcessingStatus.VALIDATING,
    BatchProcessingStatus.SUBMITTING,
})


class BatchOrchestrator:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        submission: InvoiceSubmissionService,
        ingestor: BatchIngestor | None = None,
        validator: BatchValidator | None = None,
        worker_pool: BatchSubmissionWorkerPool | None = None,
        retry_service: InvoiceRetryService | None = None,
        history: SubmissionHistory | None = None,
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._submission = submission
        self._ingestor = ingestor or BatchIngestor(session_factory)
        self._validator = validator or BatchValidator(session_factory)
        self._worker_pool = worker_pool or BatchSubmissionWorkerPool(
            session_factory, submission, clock=self._clock
        )
        self._retry_service = retry_service or InvoiceRetryService(
            session_factory, submission, clock=self._clock
        )
        self._history = history or SubmissionHistory(session_factory)

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_settings(
        cls,
        settings,
        session_factory: sessionmaker[Session],
        gateway: FbrGateway | None = None,
        clock: Clock | None = None,
        sleep=None,
    ) -> BatchOrchestrator:
        """
        Build a fully wired orchestrator from an einvoice_config Settings.

        Args:
            gateway: Defaults to an FbrClient built from ``settings.fbr``.
            sleep: Replaces ``time.sleep`` in the backoff policy (tests).
        """
        if gateway is None:
            gateway = FbrClient.from_settings(settings.fbr)
        if settings.workers.requests_per_second:
            gateway = RateLimitedGateway(
                gateway, RateLimiter(settings.workers.requests_per_second)
            )

        effective_clock = clock or SystemClock()
        retry = settings.retry
        policy_args = dict(
            max_attempts=retry.max_attempts,
            base_delay=retry.base_delay_seconds,
            multiplier=retry.multiplier,
            max_delay=retry.max_delay_seconds,
        )
        if sleep is not None:
            policy_args["sleep"] = sleep
        schedule = RetrySchedule(
            max_retries=retry.scheduled_max_retries,
            initial_delay=retry.scheduled_initial_delay_seconds,
            max_delay=retry.scheduled_max_delay_seconds,
        )
        submission = InvoiceSubmissionService(
            session_factory,
            gateway,
            policy=BackoffPolicy(**policy_args),
            clock=effective_clock,
            lease_seconds=settings.workers.lease_seconds,
            schedule=schedule,
            sequence_attempts=retry.sequence_attempts,
            sequence_delay=retry.sequence_delay_seconds,
        )
        return cls(
            session_factory=session_factory,
            submission=submission,
            ingestor=BatchIngestor(
                session_factory,
                commit_every=settings.ingestion.commit_every,
                max_rows=settings.ingestion.max_rows,
            ),
            validator=BatchValidator(session_factory),
            worker_pool=BatchSubmissionWorkerPool(
                session_factory,
                submission,
                clock=effective_clock,
                pool_size=settings.workers.pool_size,
                claim_seconds=settings.workers.claim_seconds,
            ),
            retry_service=InvoiceRetryService(
                session_factory, submission, schedule=schedule, clock=effective_clock
            ),
            clock=effective_clock,
        )

    # -------------------------------------------------------------------------
    # Upload / process
    # -------------------------------------------------------------------------

    def upload_batch(
        self,
        business_id: UUID,
        stream: BinaryIO,
        source_format: str,
        actor_id: UUID,
        filename: str | None = None,
        process: bool = True,
    ) -> UUID:
        """
        Create a batch from ``stream``, ingest it and (by default) process it.

        Raises:
            BusinessNotFoundError: unknown business.
            MalformedSourceError: unsupported format or unreadable file; the
                batch is left FAILED.
        """
        try:
            fmt = SourceFormat(source_format.lower())
        except ValueError:
            raise MalformedSourceError(source_format, "unsupported source format") from None

        with transaction(self._session_factory) as session:
            if session.get(Business, business_id) is None:
                raise BusinessNotFoundError(str(business_id))
            batch = BulkInvoiceBatch(
                business_id=business_id,
                source_filename=filename,
                source_format=fmt.value,
                processing_status=BatchProcessingStatus.UPLOADING.value,
                validation_status=ValidationStatus.PENDING.value,
                started_at=self._clock.now_utc(),
                created_by_id=actor_id,
            )
            session.add(batch)
            session.flush()
            batch_id = batch.id

        with LogContext.bind(
            batch_id=str(batch_id), business_id=str(business_id), actor_id=str(actor_id)
        ):
            logger.info(
                "batch_uploaded",
                extra={"source_format": fmt.value, "source_filename": filename},
            )
            self._guarded(batch_id, actor_id, self._ingest, batch_id, stream, fmt, actor_id)
            if process:
                self._guarded(batch_id, actor_id, self._pipeline, batch_id, actor_id)
        return batch_id

    def process_batch(self, batch_id: UUID, actor_id: UUID) -> BatchSummary:
        """
        Validate and submit whatever the batch still has outstanding.

        Raises:
            BatchNotFoundError, BatchStateError (cancelled, or never ingested).
        """
        with LogContext.bind(batch_id=str(batch_id), actor_id=str(actor_id)):
            with transaction(self._session_factory) as session:
                batch = self._load(session, batch_id)
                if batch.status in (BatchProcessingStatus.UPLOADING, BatchProcessingStatus.CANCELLED):
                    raise BatchStateError(
                        str(batch_id), batch.status.value, BatchProcessingStatus.VALIDATING.value
                    )
            self._guarded(batch_id, actor_id, self._pipeline, batch_id, actor_id)
        return self.get_batch_status(batch_id)

    def _ingest(self, batch_id: UUID, stream: BinaryIO, fmt: SourceFormat, actor_id: UUID) -> None:
        self._move(batch_id, BatchProcessingStatus.PARSING, actor_id)
        self._ingestor.ingest(batch_id, stream, fmt.value, actor_id)
        with transaction(self._session_factory) as session:
            refresh_counters(session, self._load(session, batch_id))

    def _pipeline(self, batch_id: UUID, actor_id: UUID) -> None:
        if self._finish_if_cancelled(batch_id, actor_id):
            return
        self._move(batch_id, BatchProcessingStatus.VALIDATING, actor_id)
        self._validator.validate_batch(batch_id, actor_id)

        if self._finish_if_cancelled(batch_id, actor_id):
            return
        self._move(batch_id, BatchProcessingStatus.SUBMITTING, actor_id)
        summary = self._worker_pool.process_batch(batch_id, actor_id)

        if self._finish_if_cancelled(batch_id, actor_id):
            return
        if summary.is_complete:
            self._move(batch_id, BatchProcessingStatus.COMPLETE, actor_id)
            logger.info(
                "batch_completed",
                extra={
                    "total_records": summary.total_records,
                    "sandbox_validated_records": summary.sandbox_validated_records,
                    "production_submitted_records": summary.production_submitted_records,
                    "failed_records": summary.failed_records,
                },
            )

    def _guarded(self, batch_id: UUID, actor_id: UUID, step, *args) -> None:
        """Run a batch step; any error marks the batch FAILED and is re-raised."""
        try:
            step(*args)
        except Exception as exc:
            try:
                self._abort(batch_id, actor_id, exc)
            except Exception:
                logger.error("batch_abort_not_recorded", exc_info=True)
            raise

    def _abort(self, batch_id: UUID, actor_id: UUID, exc: Exception) -> None:
        logger.error(
            "batch_aborted",
            exc_info=True,
            extra={"batch_id": str(batch_id), "error_type": type(exc).__name__},
        )
        with transaction(self._session_factory) as session:
            batch = self._load(session, batch_id)
            if BatchProcessingStatus.FAILED not in BATCH_TRANSITIONS[batch.status]:
                return
            batch.move_to(BatchProcessingStatus.FAILED)
            batch.errors = {
                "code": getattr(exc, "code", "UNEXPECTED"),
                "kind": getattr(exc, "kind", ErrorKind.UNEXPECTED).value,
                "type": type(exc).__name__,
                "message": str(exc),
                "at": self._clock.now_utc().isoformat(),
            }
            batch.completed_at = self._clock.now_utc()
            batch.updated_by_id = actor_id

    def _finish_if_cancelled(self, batch_id: UUID, actor_id: UUID) -> bool:
        with transaction(self._session_factory) as session:
            batch = self._load(session, batch_id)
            if not batch.cancel_requested:
                return False
            batch.move_to(BatchProcessingStatus.CANCELLED)
            if batch.completed_at is None:
                batch.completed_at = self._clock.now_utc()
            batch.updated_by_id = actor_id
            refresh_counters(session, batch)
        logger.info("batch_cancelled")
        return True

    # -------------------------------------------------------------------------
    # Operator actions
    # -------------------------------------------------------------------------

    def get_batch_status(self, batch_id: UUID, include_rows: bool = True) -> BatchSummary:
        """Counters, statuses and (by default) per-row detail."""
        with transaction(self._session_factory) as session:
            batch = self._load(session, batch_id)
            rows = ()
            if include_rows:
                rows = tuple(
                    item.to_dto()
                    for item in session.execute(
                        select(BulkInvoiceItem)
                        .where(BulkInvoiceItem.batch_id == batch_id)
                        .order_by(BulkInvoiceItem.row_number)
                    ).scalars()
                )
            return batch.to_dto(rows)

    def retry_failed_rows(self, batch_id: UUID, actor_id: UUID, process: bool = True) -> int:
        """
        Put retryable FAILED rows back to the stage they failed from and
        reprocess the batch.

        Structural and validation failures are not retried; AUTH failures
        only once the business's hold for that mode has been cleared.

        Returns:
            Number of rows reset.
        """
        with LogContext.bind(batch_id=str(batch_id), actor_id=str(actor_id)):
            with transaction(self._session_factory) as session:
                batch = self._load(session, batch_id)
                if batch.status is BatchProcessingStatus.CANCELLED:
                    raise BatchStateError(
                        str(batch_id), batch.status.value, BatchProcessingStatus.SUBMITTING.value
                    )
                business = session.get(Business, batch.business_id)
                failed = session.execute(
                    select(BulkInvoiceItem).where(
                        BulkInvoiceItem.batch_id == batch_id,
                        BulkInvoiceItem.stage == RowStage.FAILED.value,
                        BulkInvoiceItem.last_error_kind.in_(RETRYABLE_ROW_KINDS),
                        BulkInvoiceItem.failed_from_stage.in_([
                            RowStage.VALIDATED.value,
                            RowStage.SANDBOX_SUBMITTED.value,
                        ]),
                    )
                ).scalars().all()

                reset = 0
                for item in failed:
                    mode = (
                        IntegrationMode.SANDBOX
                        if item.failed_from is RowStage.VALIDATED
                        else IntegrationMode.PRODUCTION
                    )
                    if item.last_error_kind == ErrorKind.AUTH.value and business.is_on_auth_hold(mode):
                        continue
                    item.reopen()
                    item.updated_by_id = actor_id
                    reset += 1

                if reset:
                    batch.completed_at = None
                    if batch.status is BatchProcessingStatus.FAILED:
                        batch.errors = None
                    session.flush()
                    refresh_counters(session, batch)

            logger.info("batch_rows_reset", extra={"rows_reset": reset})
            if reset and process:
                self._guarded(batch_id, actor_id, self._pipeline, batch_id, actor_id)
        return reset

    def revalidate_batch(self, batch_id: UUID, actor_id: UUID) -> ValidationSummary:
        """
        Re-run validation on rows not yet valid; new errors are appended.

        The batch is left VALIDATING; ``process_batch`` submits rows that
        became valid.
        """
        with LogContext.bind(batch_id=str(batch_id), actor_id=str(actor_id)):
            self._move(batch_id, BatchProcessingStatus.VALIDATING, actor_id)
            return self._validator.validate_batch(batch_id, actor_id)

    def cancel_batch(self, batch_id: UUID, actor_id: UUID) -> BatchSummary:
        """
        Request cancellation.  Rows already dispatched finish; no new rows
        are dispatched.  Accepted invoices are never rolled back.
        """
        with LogContext.bind(batch_id=str(batch_id), actor_id=str(actor_id)):
            with transaction(self._session_factory) as session:
                batch = self._load(session, batch_id)
                if batch.status is BatchProcessingStatus.COMPLETE:
                    raise BatchStateError(
                        str(batch_id), batch.status.value, BatchProcessingStatus.CANCELLED.value
                    )
                batch.cancel_requested = True
                batch.updated_by_id = actor_id
            logger.info("batch_cancel_requested")
        return self.get_batch_status(batch_id, include_rows=False)

    # -------------------------------------------------------------------------
    # Single invoices
    # -------------------------------------------------------------------------

    def submit_invoice(self, invoice_id: UUID, actor_id: UUID) -> SubmissionOutcome:
        return self._submission.submit(invoice_id, actor_id)

    def retry_due_invoices(self, actor_id: UUID, limit: int = 100) -> list[SubmissionOutcome]:
        """Resubmit FAILED transient invoices whose scheduled retry time has passed."""
        return self._retry_service.retry_due(limit=limit, actor_id=actor_id)

    def invoice_attempts(self, invoice_id: UUID) -> list[AttemptRecord]:
        """The invoice's recorded calls to the authority, oldest first."""
        return self._history.attempts_for(invoice_id)

    def retry_metrics(self, business_id: UUID | None = None, since: datetime | None = None) -> RetryMetrics:
        """Attempt counts by outcome and error kind, and how often retries paid off."""
        return self._history.retry_metrics(business_id=business_id, since=since)


    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _load(session: Session, batch_id: UUID) -> BulkInvoiceBatch:
        batch = session.get(BulkInvoiceBatch, batch_id)
        if batch is None:
            raise BatchNotFoundError(str(batch_id))
        return batch

    def _move(self, batch_id: UUID, target: BatchProcessingStatus, actor_id: UUID) -> None:
        with transaction(self._session_factory) as session:
            batch = self._load(session, batch_id)
            previous = batch.move_to(target)
            if target in ACTIVE_BATCH_STATUSES:
                batch.completed_at = None
            batch.updated_by_id = actor_id
        if previous is not target:
            logger.info(
                "batch_status_changed",
                extra={"from_status": previous.value, "to_status": target.value},
            )

    @property
    def submission(self) -> InvoiceSubmissionService:
        return self._submission

    @property
    def clock(self) -> Clock:
        return self._clock
