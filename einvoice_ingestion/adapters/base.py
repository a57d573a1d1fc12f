"""
Source adapter protocol and DTOs.

Contract:
    SourceAdapter.read() yields one SourceRecord per source row, lazily.
    A row that cannot be parsed still yields a record, carrying an error
    instead of data, so the row is kept and reported.
    SourceAdapter.probe() returns a quick snapshot: row count, columns,
    sample rows.

Architecture: einvoice_ingestion/adapters. Stream I/O only, no DB imports.
"""

from __future__ import annotations

import io
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, BinaryIO, Iterator, Protocol, runtime_checkable

from einvoice_kernel.domain.dtos import FieldError


@dataclass(frozen=True)
class SourceRecord:
    """One source row: 1-based position plus either data or a parse error."""

    row_number: int
    data: dict[str, Any] | None
    error: FieldError | None = None
    raw: str | None = None  # Original text for rows that failed to parse


@dataclass(frozen=True)
class SourceProbe:
    """Result of probing a source (row count, columns, first N rows)."""

    row_count: int
    columns: tuple[str, ...]
    sample_rows: tuple[dict[str, Any], ...]


@runtime_checkable
class SourceAdapter(Protocol):
    def read(self, stream: BinaryIO, options: dict[str, Any]) -> Iterator[SourceRecord]:
        ...

    def probe(self, stream: BinaryIO, options: dict[str, Any]) -> SourceProbe:
        ...


@contextmanager
def text_stream(stream: BinaryIO, encoding: str = "utf-8") -> Iterator[io.TextIOWrapper]:
    """Wrap a binary stream for text reading without closing the caller's stream."""
    if encoding.lower() == "utf-8":
        encoding = "utf-8-sig"  # Strip BOM if present
    wrapper = io.TextIOWrapper(stream, encoding=encoding, newline="")
    try:
        yield wrapper
    finally:
        wrapper.detach()


def normalize_key(key: Any) -> str:
    """Column names compare case- and spacing-insensitively: 'HS Code' -> 'hs_code'."""
    return "_".join(str(key).strip().lower().replace("-", " ").split())


SAMPLE_SIZE = 5
