"""Pure ingestion domain logic (no I/O)."""

from einvoice_ingestion.domain.normalize import (
    RowShapeError,
    canonical_json,
    fallback_local_id,
    normalize_row,
)

__all__ = [
    "RowShapeError",
    "canonical_json",
    "fallback_local_id",
    "normalize_row",
]
