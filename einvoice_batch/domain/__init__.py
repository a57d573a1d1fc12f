"""Pure batch domain types and row rules (no I/O)."""

from einvoice_batch.domain.rules import (
    CustomerRef,
    ProductRef,
    ReferenceIndex,
    ResolvedInvoice,
    ResolvedLine,
    resolve_row,
    validate_row,
)
from einvoice_batch.domain.types import (
    BATCH_TRANSITIONS,
    TERMINAL_BATCH_STATUSES,
    BatchProcessingStatus,
    BatchSummary,
    RowStage,
    RowStatus,
    SourceFormat,
    ValidationStatus,
    ValidationSummary,
    reached,
    validate_batch_transition,
    validate_stage_transition,
)

__all__ = [
    "BATCH_TRANSITIONS",
    "BatchProcessingStatus",
    "BatchSummary",
    "CustomerRef",
    "ProductRef",
    "ReferenceIndex",
    "ResolvedInvoice",
    "ResolvedLine",
    "RowStage",
    "RowStatus",
    "SourceFormat",
    "TERMINAL_BATCH_STATUSES",
    "ValidationStatus",
    "ValidationSummary",
    "reached",
    "resolve_row",
    "validate_batch_transition",
    "validate_row",
    "validate_stage_transition",
]
