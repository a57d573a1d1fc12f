"""
ORM models for bulk invoice batches.

Contract:
    BulkInvoiceBatch holds one uploaded file's lifecycle and counters;
    BulkInvoiceItem holds one row of it.  Each has ``to_dto()``.

Architecture: einvoice_batch/models. Imports from einvoice_kernel.db.base
and einvoice_batch.domain only.

Invariants enforced:
    - ``row_number`` and ``local_id`` are unique within a batch.
    - ``invoice_data`` is written once, at ingestion, and never changed.
    - ``stage`` only moves forward one step at a time, to FAILED, or from
      FAILED back to the stage it failed from (``_guard_stage``).
    - ``validation_errors`` only grows.
    - A row is worked on by one submitter at a time (``claim_owner``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, inspect
from sqlalchemy.orm import Mapped, mapped_column, validates

from einvoice_batch.domain.types import (
    BatchProcessingStatus,
    BatchSummary,
    RowStage,
    RowStatus,
    ValidationStatus,
    reached,
    validate_batch_transition,
    validate_stage_transition,
)
from einvoice_kernel.db.base import TrackedBase, UUIDString
from einvoice_kernel.exceptions import ImmutabilityViolationError, InvalidRowStageError


class BulkInvoiceBatch(TrackedBase):
    """One uploaded batch file.  ``created_by_id`` is the uploader."""

    __tablename__ = "bulk_invoice_batches"

    __table_args__ = (
        Index("ix_bulk_batches_business", "business_id"),
        Index("ix_bulk_batches_status", "processing_status"),
    )

    business_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
    )
    source_filename: Mapped[str | None] = mapped_column(String(500), nullable=True)
    source_format: Mapped[str] = mapped_column(String(10), nullable=False)

    total_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    valid_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    invalid_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    sandbox_validated_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    production_submitted_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed_records: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    processing_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BatchProcessingStatus.UPLOADING.value
    )
    validation_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ValidationStatus.PENDING.value
    )
    validation_passes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    errors: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    validation_summary: Mapped[Any | None] = mapped_column(JSON, nullable=True)

    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def status(self) -> BatchProcessingStatus:
        return BatchProcessingStatus(self.processing_status)

    def move_to(self, target: BatchProcessingStatus) -> BatchProcessingStatus:
        """Change processing_status along BATCH_TRANSITIONS; returns the old status."""
        current = self.status
        if current is not target:
            validate_batch_transition(str(self.id), current, target)
            self.processing_status = target.value
        return current

    def to_dto(self, rows: tuple[RowStatus, ...] = ()) -> BatchSummary:
        return BatchSummary(
            batch_id=self.id,
            business_id=self.business_id,
            source_filename=self.source_filename,
            source_format=self.source_format,
            processing_status=BatchProcessingStatus(self.processing_status),
            validation_status=ValidationStatus(self.validation_status),
            total_records=self.total_records,
            valid_records=self.valid_records,
            invalid_records=self.invalid_records,
            sandbox_validated_records=self.sandbox_validated_records,
            production_submitted_records=self.production_submitted_records,
            failed_records=self.failed_records,
            cancel_requested=self.cancel_requested,
            errors=self.errors,
            validation_summary=self.validation_summary,
            started_at=self.started_at,
            completed_at=self.completed_at,
            rows=rows,
        )


# Longest key the local_id column stores; longer caller ids are replaced.
LOCAL_ID_MAX_LENGTH = 100


class BulkInvoiceItem(TrackedBase):
    """One row of a batch and its progress towards sandbox and production."""

    __tablename__ = "bulk_invoice_items"

    __table_args__ = (
        UniqueConstraint("batch_id", "row_number", name="uq_bulk_item_row"),
        UniqueConstraint("batch_id", "local_id", name="uq_bulk_item_local_id"),
        Index("ix_bulk_items_batch_stage", "batch_id", "stage"),
    )

    batch_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("bulk_invoice_batches.id", ondelete="CASCADE"),
        nullable=False,
    )
    row_number: Mapped[int] = mapped_column(Integer, nullable=False)
    local_id: Mapped[str] = mapped_column(String(LOCAL_ID_MAX_LENGTH), nullable=False)
    invoice_data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    stage: Mapped[str] = mapped_column(String(30), nullable=False, default=RowStage.INGESTED.value)
    failed_from_stage: Mapped[str | None] = mapped_column(String(30), nullable=True)

    validation_errors: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    last_error_kind: Mapped[str | None] = mapped_column(String(20), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    sandbox_invoice_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True
    )
    production_invoice_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("invoices.id", ondelete="SET NULL"), nullable=True
    )
    sandbox_response: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    production_response: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # Held by the worker submitting the row; taken by a conditional UPDATE.
    claim_owner: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # -- guards ---------------------------------------------------------

    def _current(self, key: str) -> Any:
        state = inspect(self)
        if state.transient or state.pending:
            return self.__dict__.get(key)
        return getattr(self, key)

    @validates("invoice_data")
    def _guard_invoice_data(self, key, value):
        if self._current(key) is not None:
            raise ImmutabilityViolationError(
                "BulkInvoiceItem", str(self.id), "invoice_data is frozen after ingestion"
            )
        return value

    @validates("stage")
    def _guard_stage(self, key, value):
        target = RowStage(value)
        current = self._current(key)
        if current is None:
            if target not in (RowStage.INGESTED, RowStage.FAILED):
                raise InvalidRowStageError("<new>", target.value)
            return target.value
        failed_from = self._current("failed_from_stage")
        validate_stage_transition(
            RowStage(current),
            target,
            RowStage(failed_from) if failed_from else None,
        )
        return target.value

    # -- stage moves ----------------------------------------------------

    @property
    def stage_enum(self) -> RowStage:
        return RowStage(self.stage)

    @property
    def failed_from(self) -> RowStage | None:
        return RowStage(self.failed_from_stage) if self.failed_from_stage else None

    def advance(self, target: RowStage) -> None:
        self.stage = target.value

    def fail(self, kind: str, message: str) -> None:
        """Move to FAILED, remembering the stage reached."""
        if self.stage_enum is not RowStage.FAILED:
            self.failed_from_stage = self.stage
            self.stage = RowStage.FAILED.value
        self.last_error_kind = kind
        self.last_error_message = message

    def reopen(self) -> RowStage:
        """Put a FAILED row back to the stage it failed from."""
        target = self.failed_from
        if self.stage_enum is not RowStage.FAILED or target is None:
            raise InvalidRowStageError(self.stage, "<reopen>")
        self.stage = target.value
        self.failed_from_stage = None
        self.last_error_kind = None
        self.last_error_message = None
        return target

    def add_errors(self, errors: list[dict[str, Any]], pass_number: int) -> None:
        """Append errors tagged with the validation pass; earlier ones are kept."""
        tagged = [dict(e, validation_pass=pass_number) for e in errors]
        self.validation_errors = list(self.validation_errors or []) + tagged

    # -- derived flags --------------------------------------------------

    @property
    def data_valid(self) -> bool:
        return reached(self.stage_enum, self.failed_from, RowStage.VALIDATED)

    @property
    def sandbox_validated(self) -> bool:
        return reached(self.stage_enum, self.failed_from, RowStage.SANDBOX_SUBMITTED)

    @property
    def sandbox_submitted(self) -> bool:
        return reached(self.stage_enum, self.failed_from, RowStage.SANDBOX_SUBMITTED)

    @property
    def production_submitted(self) -> bool:
        return reached(self.stage_enum, self.failed_from, RowStage.PRODUCTION_SUBMITTED)

    def to_dto(self) -> RowStatus:
        return RowStatus(
            row_id=self.id,
            row_number=self.row_number,
            local_id=self.local_id,
            stage=self.stage_enum,
            failed_from_stage=self.failed_from,
            data_valid=self.data_valid,
            sandbox_validated=self.sandbox_validated,
            sandbox_submitted=self.sandbox_submitted,
            production_submitted=self.production_submitted,
            last_error_kind=self.last_error_kind,
            last_error_message=self.last_error_message,
            validation_errors=tuple(self.validation_errors or ()),
            sandbox_invoice_id=self.sandbox_invoice_id,
            production_invoice_id=self.production_invoice_id,
            sandbox_response=self.sandbox_response,
            production_response=self.production_response,
            attempts=self.attempts,
        )
