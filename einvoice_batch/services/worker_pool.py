"""
BatchSubmissionWorkerPool -- bounded parallel submission of validated rows.

Contract:
    ``process_batch`` drives every row that still has work through the
    invoice submission state machine, sandbox first and then, when the
    business has production enabled, production.  Returns the batch
    summary with recomputed counters.

Architecture: einvoice_batch/services.  Creates invoices through the
    kernel InvoiceFactory and submits them through InvoiceSubmissionService;
    never talks to the authority directly.

Invariants enforced:
    - At most ``pool_size`` rows are in flight.
    - A row is claimed (conditional UPDATE on claim_owner) before any work;
      a row claimed by another run, or already past the stage this run saw,
      is skipped and left untouched.
    - A row's invoice is created once per mode and linked on the row before
      it is submitted, so a reprocessed row resubmits the same invoice (and
      therefore the same sequence number).
    - Row failures are persisted on the row and never stop other rows.
    - After an auth failure the (business, mode) breaker is open: remaining
      rows for it fail as AUTH without an external call.
    - ``cancel_requested`` is read before every dispatch; in-flight rows
      finish.

Failure modes:
    - BatchNotFoundError: unknown batch.
    - Storage errors that prevent recording a row's outcome propagate once
      in-flight rows have finished.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable
from uuid import UUID, uuid4

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from einvoice_batch.domain.rules import ReferenceIndex, resolve_row
from einvoice_batch.domain.types import BatchSummary, RowStage
from einvoice_batch.models.batch import BulkInvoiceBatch, BulkInvoiceItem
from einvoice_batch.services.progress import awaits_submission, refresh_counters
from einvoice_batch.services.validator import load_references
from einvoice_kernel.db.engine import transaction
from einvoice_kernel.domain.clock import Clock, SystemClock
from einvoice_kernel.domain.fbr_contract import FbrGateway, FbrResult
from einvoice_kernel.domain.invoice_lifecycle import IntegrationMode, InvoiceStatus
from einvoice_kernel.exceptions import (
    AuthError,
    BatchNotFoundError,
    EInvoiceError,
    ErrorKind,
    SubmissionInProgressError,
)
from einvoice_kernel.logging_config import LogContext, get_logger
from einvoice_kernel.models.tenant import Business
from einvoice_kernel.services.invoice_factory import InvoiceFactory, LineSpec
from einvoice_kernel.services.invoice_submission import InvoiceSubmissionService, SubmissionOutcome

logger = get_logger("batch.worker_pool")

DEFAULT_POOL_SIZE = 8
DEFAULT_CLAIM_SECONDS = 600.0

_STAGE_FOR_MODE = {
    IntegrationMode.SANDBOX: RowStage.SANDBOX_SUBMITTED,
    IntegrationMode.PRODUCTION: RowStage.PRODUCTION_SUBMITTED,
}


class RateLimiter:
    """
    Spaces calls at least ``1 / per_second`` apart across all threads.

    ``acquire`` reserves the next slot under the lock and sleeps outside it.
    """

    def __init__(
        self,
        per_second: float,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if per_second <= 0:
            raise ValueError("per_second must be positive")
        self._interval = 1.0 / per_second
        self._monotonic = monotonic
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot = 0.0

    def acquire(self) -> float:
        """Block until the caller may proceed; returns the seconds waited."""
        with self._lock:
            now = self._monotonic()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self._interval
        delay = slot - now
        if delay > 0:
            self._sleep(delay)
        return delay


class RateLimitedGateway:
    """FbrGateway that passes every call through a RateLimiter first."""

    def __init__(self, gateway: FbrGateway, limiter: RateLimiter):
        self._gateway = gateway
        self._limiter = limiter

    def submit(
        self,
        mode: IntegrationMode,
        token: str | None,
        payload: dict[str, Any],
        idempotency_key: str,
    ) -> FbrResult:
        self._limiter.acquire()
        return self._gateway.submit(mode, token, payload, idempotency_key)


class AuthBreaker:
    """Thread-safe set of (business, mode) pairs whose token was refused."""

    def __init__(self):
        self._lock = threading.Lock()
        self._open: set[tuple[UUID, IntegrationMode]] = set()

    def trip(self, business_id: UUID, mode: IntegrationMode) -> None:
        with self._lock:
            newly_open = (business_id, mode) not in self._open
            self._open.add((business_id, mode))
        if newly_open:
            logger.warning(
                "auth_breaker_opened",
                extra={"business_id": str(business_id), "mode": mode.value},
            )

    def is_open(self, business_id: UUID, mode: IntegrationMode) -> bool:
        with self._lock:
            return (business_id, mode) in self._open


class _RowFailure(Exception):
    """Internal: a row step ended without acceptance."""

    def __init__(self, kind: ErrorKind, message: str, raw_response: Any = None):
        self.kind = kind
        self.raw_response = raw_response
        super().__init__(message)


@dataclass(frozen=True)
class _RowContext:
    """Per-run state shared by every worker thread."""

    batch_id: UUID
    business_id: UUID
    actor_id: UUID
    production_enabled: bool
    references: ReferenceIndex
    breaker: AuthBreaker


class BatchSubmissionWorkerPool:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        submission: InvoiceSubmissionService,
        clock: Clock | None = None,
        pool_size: int = DEFAULT_POOL_SIZE,
        claim_seconds: float = DEFAULT_CLAIM_SECONDS,
    ):
        self._session_factory = session_factory
        self._submission = submission
        self._clock = clock or SystemClock()
        self._pool_size = max(1, pool_size)
        self._claim_seconds = claim_seconds

    @property
    def pool_size(self) -> int:
        return self._pool_size

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def process_batch(self, batch_id: UUID, actor_id: UUID) -> BatchSummary:
        """
        Submit every row with outstanding work.

        Raises:
            BatchNotFoundError: unknown batch.
        """
        with LogContext.bind(batch_id=str(batch_id), actor_id=str(actor_id)):
            with transaction(self._session_factory) as session:
                batch = session.get(BulkInvoiceBatch, batch_id)
                if batch is None:
                    raise BatchNotFoundError(str(batch_id))
                business = session.get(Business, batch.business_id)
                business_id = business.id
                production_enabled = business.production_enabled
                references = load_references(session, business_id)
                breaker = AuthBreaker()
                for mode in (IntegrationMode.SANDBOX, IntegrationMode.PRODUCTION):
                    if business.is_on_auth_hold(mode):
                        breaker.trip(business_id, mode)

                waiting = [BulkInvoiceItem.stage == RowStage.VALIDATED.value]
                if production_enabled:
                    waiting.append(BulkInvoiceItem.stage == RowStage.SANDBOX_SUBMITTED.value)
                row_ids = list(session.execute(
                    select(BulkInvoiceItem.id)
                    .where(BulkInvoiceItem.batch_id == batch_id, or_(*waiting))
                    .order_by(BulkInvoiceItem.row_number)
                ).scalars())
                if batch.started_at is None:
                    batch.started_at = self._clock.now_utc()

            logger.info(
                "batch_submission_started",
                extra={
                    "rows_to_submit": len(row_ids),
                    "pool_size": self._pool_size,
                    "production_enabled": production_enabled,
                },
            )

            context = _RowContext(
                batch_id=batch_id,
                business_id=business_id,
                actor_id=actor_id,
                production_enabled=production_enabled,
                references=references,
                breaker=breaker,
            )
            dispatched, cancelled = self._run(context, row_ids)

            with transaction(self._session_factory) as session:
                batch = session.get(BulkInvoiceBatch, batch_id)
                stages = refresh_counters(session, batch)
                finished = not any(awaits_submission(s, production_enabled) for s in stages)
                if finished and batch.completed_at is None:
                    batch.completed_at = self._clock.now_utc()
                rows = tuple(
                    item.to_dto()
                    for item in session.execute(
                        select(BulkInvoiceItem)
                        .where(BulkInvoiceItem.batch_id == batch_id)
                        .order_by(BulkInvoiceItem.row_number)
                    ).scalars()
                )
                summary = batch.to_dto(rows)

            logger.info(
                "batch_submission_completed",
                extra={
                    "rows_dispatched": dispatched,
                    "cancelled": cancelled,
                    "sandbox_validated_records": summary.sandbox_validated_records,
                    "production_submitted_records": summary.production_submitted_records,
                    "failed_records": summary.failed_records,
                },
            )
        return summary

    def _run(self, context: _RowContext, row_ids: list[UUID]) -> tuple[int, bool]:
        dispatched = 0
        cancelled = False
        batch_error: BaseException | None = None
        in_flight: set[Future] = set()

        with ThreadPoolExecutor(
            max_workers=self._pool_size, thread_name_prefix="batch-worker"
        ) as pool:
            for row_id in row_ids:
                if len(in_flight) >= self._pool_size:
                    done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                    batch_error = batch_error or self._collect(done)
                if batch_error is not None:
                    break
                if self._cancel_requested(context.batch_id):
                    cancelled = True
                    logger.info("batch_cancel_observed", extra={"rows_dispatched": dispatched})
                    break
                in_flight.add(pool.submit(self._process_row, context, row_id))
                dispatched += 1
            done, _ = wait(in_flight)
            batch_error = batch_error or self._collect(done)

        if batch_error is not None:
            raise batch_error
        return dispatched, cancelled

    def _collect(self, done: set[Future]) -> BaseException | None:
        error = None
        for future in done:
            exc = future.exception()
            if exc is not None and error is None:
                error = exc
        return error

    def _cancel_requested(self, batch_id: UUID) -> bool:
        with transaction(self._session_factory) as session:
            return bool(session.execute(
                select(BulkInvoiceBatch.cancel_requested).where(BulkInvoiceBatch.id == batch_id)
            ).scalar_one())

    # ------------------------------------------------------------------
    # Row
    # ------------------------------------------------------------------

    def _process_row(self, context: _RowContext, row_id: UUID) -> None:
        with LogContext.bind(
            batch_id=str(context.batch_id),
            business_id=str(context.business_id),
            actor_id=str(context.actor_id),
        ):
            owner = uuid4().hex
            stage = self._claim(context, row_id, owner)
            if stage is None:
                logger.info("batch_row_skipped", extra={"row_id": str(row_id), "reason": "claimed"})
                return
            try:
                self._work_row(context, row_id, stage)
            finally:
                self._release(row_id, owner)

    def _work_row(self, context: _RowContext, row_id: UUID, stage: RowStage) -> None:
        mode = IntegrationMode.SANDBOX
        try:
            if stage is RowStage.VALIDATED:
                self._submit_step(context, row_id, mode)
                stage = RowStage.SANDBOX_SUBMITTED
            if stage is RowStage.SANDBOX_SUBMITTED and context.production_enabled:
                mode = IntegrationMode.PRODUCTION
                self._submit_step(context, row_id, mode)
        except _RowFailure as failure:
            self._fail_row(context, row_id, mode, failure.kind, str(failure), failure.raw_response)
        except SubmissionInProgressError:
            # The invoice is being submitted by someone else; the row keeps its stage.
            logger.info(
                "batch_row_skipped",
                extra={"row_id": str(row_id), "mode": mode.value, "reason": "invoice_in_progress"},
            )
        except EInvoiceError as exc:
            if isinstance(exc, AuthError):
                context.breaker.trip(context.business_id, mode)
            self._fail_row(
                context, row_id, mode, exc.kind, str(exc), getattr(exc, "raw_response", None)
            )
        except Exception as exc:
            logger.error(
                "batch_row_unexpected_error",
                exc_info=True,
                extra={"row_id": str(row_id), "mode": mode.value},
            )
            self._fail_row(context, row_id, mode, ErrorKind.UNEXPECTED, repr(exc), None)

    def _claim(self, context: _RowContext, row_id: UUID, owner: str) -> RowStage | None:
        """Take the row for ``owner`` if it still has work and nobody holds it."""
        workable = [RowStage.VALIDATED.value]
        if context.production_enabled:
            workable.append(RowStage.SANDBOX_SUBMITTED.value)
        now = self._clock.now_utc()
        with transaction(self._session_factory) as session:
            result = session.execute(
                update(BulkInvoiceItem)
                .where(
                    BulkInvoiceItem.id == row_id,
                    BulkInvoiceItem.stage.in_(workable),
                    or_(
                        BulkInvoiceItem.claim_owner.is_(None),
                        BulkInvoiceItem.claim_expires_at < now,
                    ),
                )
                .values(
                    claim_owner=owner,
                    claim_expires_at=now + timedelta(seconds=self._claim_seconds),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            return RowStage(session.execute(
                select(BulkInvoiceItem.stage).where(BulkInvoiceItem.id == row_id)
            ).scalar_one())

    def _release(self, row_id: UUID, owner: str) -> None:
        with transaction(self._session_factory) as session:
            session.execute(
                update(BulkInvoiceItem)
                .where(BulkInvoiceItem.id == row_id, BulkInvoiceItem.claim_owner == owner)
                .values(claim_owner=None, claim_expires_at=None)
                .execution_options(synchronize_session=False)
            )

    def _submit_step(self, context: _RowContext, row_id: UUID, mode: IntegrationMode) -> None:
        """Create (once) and submit the row's invoice for ``mode``."""
        if context.breaker.is_open(context.business_id, mode):
            raise _RowFailure(
                ErrorKind.AUTH, f"{mode.value} token is on hold pending re-authentication"
            )

        invoice_id = self._ensure_invoice(context, row_id, mode)
        outcome = self._settle(invoice_id, context.actor_id)

        if not outcome.validated:
            kind = outcome.error_kind or ErrorKind.VALIDATION
            if kind is ErrorKind.AUTH:
                context.breaker.trip(context.business_id, mode)
            raise _RowFailure(
                kind,
                outcome.error_message or f"{mode.value} submission ended {outcome.status.value}",
                outcome.raw_response,
            )

        with transaction(self._session_factory) as session:
            item = session.get(BulkInvoiceItem, row_id)
            item.advance(_STAGE_FOR_MODE[mode])
            if mode is IntegrationMode.SANDBOX:
                item.sandbox_response = outcome.raw_response
            else:
                item.production_response = outcome.raw_response
            item.updated_by_id = context.actor_id

        logger.info(
            "batch_row_submitted",
            extra={
                "row_id": str(row_id),
                "mode": mode.value,
                "invoice_id": str(invoice_id),
                "invoice_number": outcome.invoice_number,
            },
        )

    def _ensure_invoice(self, context: _RowContext, row_id: UUID, mode: IntegrationMode) -> UUID:
        with transaction(self._session_factory) as session:
            item = session.get(BulkInvoiceItem, row_id)
            item.attempts += 1
            linked = (
                item.sandbox_invoice_id
                if mode is IntegrationMode.SANDBOX
                else item.production_invoice_id
            )
            if linked is not None:
                return linked

            resolved, errors = resolve_row(item.invoice_data, context.references)
            if resolved is None:
                raise _RowFailure(
                    ErrorKind.VALIDATION, "; ".join(e.message for e in errors)
                )
            invoice = InvoiceFactory(session).create_draft(
                context.business_id,
                invoice_date=resolved.invoice_date,
                lines=[
                    LineSpec(
                        description=line.description,
                        hs_code=line.hs_code,
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        tax_rate=line.tax_rate,
                        total_value=line.total_value,
                        tax_amount=line.tax_amount,
                        uom=line.uom,
                        product_id=line.product_id,
                    )
                    for line in resolved.lines
                ],
                actor_id=context.actor_id,
                customer_id=resolved.customer_id,
                discount=resolved.discount,
                subtotal=resolved.subtotal,
                tax_amount=resolved.tax_amount,
                total_amount=resolved.total_amount,
                mode=mode,
                buyer_name=resolved.buyer_name,
                buyer_ntn_cnic=resolved.buyer_ntn_cnic,
                buyer_province=resolved.buyer_province,
                buyer_address=resolved.buyer_address,
                buyer_registration_type=resolved.buyer_registration_type,
            )
            if mode is IntegrationMode.SANDBOX:
                item.sandbox_invoice_id = invoice.id
            else:
                item.production_invoice_id = invoice.id
            return invoice.id

    def _settle(self, invoice_id: UUID, actor_id: UUID) -> SubmissionOutcome:
        invoice = self._submission.get_invoice(invoice_id)
        # Accepted before a crash, row not yet updated
        if invoice.status_enum is InvoiceStatus.VALIDATED:
            return SubmissionOutcome.from_invoice(invoice)
        return self._submission.submit(invoice_id, actor_id)

    def _fail_row(
        self,
        context: _RowContext,
        row_id: UUID,
        mode: IntegrationMode,
        kind: ErrorKind,
        message: str,
        raw_response: Any,
    ) -> None:
        with transaction(self._session_factory) as session:
            item = session.get(BulkInvoiceItem, row_id)
            item.fail(kind.value, message)
            if raw_response is not None:
                if mode is IntegrationMode.SANDBOX:
                    item.sandbox_response = raw_response
                else:
                    item.production_response = raw_response
            item.updated_by_id = context.actor_id
            row_number = item.row_number
        logger.warning(
            "batch_row_failed",
            extra={
                "row_number": row_number,
                "mode": mode.value,
                "error_kind": kind.value,
                "error_message": message,
            },
        )
