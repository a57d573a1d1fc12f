"""
CSV source adapter.

Uses csv.DictReader over the binary stream (BOM stripped).  Configurable:
delimiter, encoding.  A row with more or fewer cells than the header is
yielded with a COLUMN_COUNT_MISMATCH error.
"""

from __future__ import annotations

import csv
from typing import Any, BinaryIO, Iterator

from einvoice_ingestion.adapters.base import (
    SAMPLE_SIZE,
    SourceProbe,
    SourceRecord,
    normalize_key,
    text_stream,
)
from einvoice_kernel.domain.dtos import FieldError

_EXTRA = "__extra__"


class CsvSourceAdapter:
    """Read CSV files as one record per data row. Streams; does not load the file."""

    def read(self, stream: BinaryIO, options: dict[str, Any]) -> Iterator[SourceRecord]:
        delimiter = options.get("delimiter", ",")
        with text_stream(stream, options.get("encoding", "utf-8")) as f:
            reader = csv.DictReader(f, delimiter=delimiter, restkey=_EXTRA)
            if reader.fieldnames is None:
                return
            for row_number, row in enumerate(reader, start=1):
                if _EXTRA in row or any(v is None for v in row.values()):
                    yield SourceRecord(
                        row_number=row_number,
                        data=None,
                        error=FieldError(
                            code="COLUMN_COUNT_MISMATCH",
                            message=f"Row has a different number of cells than the header ({len(reader.fieldnames)})",
                        ),
                        raw=delimiter.join(
                            str(v) for k, v in row.items() if k != _EXTRA and v is not None
                        ),
                    )
                    continue
                yield SourceRecord(
                    row_number=row_number,
                    data={normalize_key(k): v for k, v in row.items()},
                )

    def probe(self, stream: BinaryIO, options: dict[str, Any]) -> SourceProbe:
        delimiter = options.get("delimiter", ",")
        with text_stream(stream, options.get("encoding", "utf-8")) as f:
            reader = csv.DictReader(f, delimiter=delimiter)
            columns = tuple(normalize_key(c) for c in reader.fieldnames or ())
            sample: list[dict[str, Any]] = []
            count = 0
            for row in reader:
                count += 1
                if len(sample) < SAMPLE_SIZE:
                    sample.append({normalize_key(k): v for k, v in row.items() if k is not None})
        return SourceProbe(row_count=count, columns=columns, sample_rows=tuple(sample))
