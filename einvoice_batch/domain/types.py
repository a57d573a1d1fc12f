"""
einvoice_batch.domain.types -- Pure frozen dataclasses and enums for bulk
invoice batches.  ZERO I/O.

Row progress is one ordered stage instead of four independent flags:

    INGESTED < VALIDATED < SANDBOX_SUBMITTED < PRODUCTION_SUBMITTED

plus FAILED, which remembers the last stage reached.  The flags operators
see (data_valid, sandbox_validated, sandbox_submitted, production_submitted)
are derived from the stage, so a row can never claim to be submitted
without having been validated first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from einvoice_kernel.exceptions import BatchStateError, InvalidRowStageError


class RowStage(str, Enum):
    """Per-row progress."""

    INGESTED = "ingested"
    VALIDATED = "validated"
    SANDBOX_SUBMITTED = "sandbox_submitted"
    PRODUCTION_SUBMITTED = "production_submitted"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STAGE_RANK[self]


_STAGE_RANK = {
    RowStage.INGESTED: 0,
    RowStage.VALIDATED: 1,
    RowStage.SANDBOX_SUBMITTED: 2,
    RowStage.PRODUCTION_SUBMITTED: 3,
}

# Forward moves only, one step at a time; any non-terminal stage may fail,
# and a failed row may be put back to the stage it failed from.
_FORWARD = {
    RowStage.INGESTED: RowStage.VALIDATED,
    RowStage.VALIDATED: RowStage.SANDBOX_SUBMITTED,
    RowStage.SANDBOX_SUBMITTED: RowStage.PRODUCTION_SUBMITTED,
}


def validate_stage_transition(
    current: RowStage,
    target: RowStage,
    failed_from: RowStage | None = None,
) -> None:
    """Raise InvalidRowStageError unless current -> target is a legal move."""
    if target is RowStage.FAILED:
        if current in (RowStage.FAILED, RowStage.PRODUCTION_SUBMITTED):
            raise InvalidRowStageError(current.value, target.value)
        return
    if current is RowStage.FAILED:
        if failed_from is not None and target is failed_from:
            return
        raise InvalidRowStageError(current.value, target.value)
    if _FORWARD.get(current) is not target:
        raise InvalidRowStageError(current.value, target.value)


def reached(stage: RowStage, failed_from: RowStage | None, threshold: RowStage) -> bool:
    """True if the row got at least as far as ``threshold`` (FAILED counts its last stage)."""
    effective = failed_from if stage is RowStage.FAILED else stage
    if effective is None:
        return False
    return effective.rank >= threshold.rank


class BatchProcessingStatus(str, Enum):
    UPLOADING = "uploading"
    PARSING = "parsing"
    VALIDATING = "validating"
    SUBMITTING = "submitting"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_BATCH_STATUSES = frozenset({
    BatchProcessingStatus.COMPLETE,
    BatchProcessingStatus.FAILED,
    BatchProcessingStatus.CANCELLED,
})

# COMPLETE and FAILED batches may be picked up again (revalidation, retry of
# failed rows, resumed ingestion); CANCELLED is final.
BATCH_TRANSITIONS: dict[BatchProcessingStatus, frozenset[BatchProcessingStatus]] = {
    BatchProcessingStatus.UPLOADING: frozenset({
        BatchProcessingStatus.PARSING,
        BatchProcessingStatus.FAILED,
        BatchProcessingStatus.CANCELLED,
    }),
    BatchProcessingStatus.PARSING: frozenset({
        BatchProcessingStatus.VALIDATING,
        BatchProcessingStatus.FAILED,
        BatchProcessingStatus.CANCELLED,
    }),
    BatchProcessingStatus.VALIDATING: frozenset({
        BatchProcessingStatus.SUBMITTING,
        BatchProcessingStatus.FAILED,
        BatchProcessingStatus.CANCELLED,
    }),
    BatchProcessingStatus.SUBMITTING: frozenset({
        BatchProcessingStatus.VALIDATING,
        BatchProcessingStatus.COMPLETE,
        BatchProcessingStatus.FAILED,
        BatchProcessingStatus.CANCELLED,
    }),
    BatchProcessingStatus.COMPLETE: frozenset({
        BatchProcessingStatus.VALIDATING,
        BatchProcessingStatus.SUBMITTING,
    }),
    BatchProcessingStatus.FAILED: frozenset({
        BatchProcessingStatus.PARSING,
        BatchProcessingStatus.VALIDATING,
        BatchProcessingStatus.SUBMITTING,
        BatchProcessingStatus.CANCELLED,
    }),
    BatchProcessingStatus.CANCELLED: frozenset(),
}


def validate_batch_transition(
    batch_id: str,
    current: BatchProcessingStatus,
    target: BatchProcessingStatus,
) -> None:
    """Raise BatchStateError unless the batch may move from current to target."""
    if target not in BATCH_TRANSITIONS[current]:
        raise BatchStateError(batch_id, current.value, target.value)


class ValidationStatus(str, Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    FAILED = "failed"


class SourceFormat(str, Enum):
    CSV = "csv"
    JSON = "json"
    JSONL = "jsonl"
    XLSX = "xlsx"


# =============================================================================
# DTOs
# =============================================================================


@dataclass(frozen=True)
class RowStatus:
    """Immutable snapshot of one batch row, as reported to operators."""

    row_id: UUID
    row_number: int
    local_id: str
    stage: RowStage
    failed_from_stage: RowStage | None
    data_valid: bool
    sandbox_validated: bool
    sandbox_submitted: bool
    production_submitted: bool
    last_error_kind: str | None = None
    last_error_message: str | None = None
    validation_errors: tuple[dict[str, Any], ...] = ()
    sandbox_invoice_id: UUID | None = None
    production_invoice_id: UUID | None = None
    sandbox_response: Any = None
    production_response: Any = None
    attempts: int = 0


@dataclass(frozen=True)
class BatchSummary:
    """Immutable snapshot of a batch with its counters and, optionally, rows."""

    batch_id: UUID
    business_id: UUID
    source_filename: str | None
    source_format: str
    processing_status: BatchProcessingStatus
    validation_status: ValidationStatus
    total_records: int = 0
    valid_records: int = 0
    invalid_records: int = 0
    sandbox_validated_records: int = 0
    production_submitted_records: int = 0
    failed_records: int = 0
    cancel_requested: bool = False
    errors: Any = None
    validation_summary: Any = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    rows: tuple[RowStatus, ...] = field(default_factory=tuple)

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None


@dataclass(frozen=True)
class ValidationSummary:
    """Result of one validation pass over a batch."""

    batch_id: UUID
    pass_number: int
    checked: int
    valid_records: int
    invalid_records: int
    validation_status: ValidationStatus
