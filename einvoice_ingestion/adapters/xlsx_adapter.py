"""
XLSX source adapter (openpyxl, read-only mode).

The header row (first row after ``skip_rows`` unless ``header_row`` is
given) supplies the column names; every later non-empty row is one record.
Options:
  sheet: 0-based sheet index (int) or sheet name (str). Default: active sheet.
  skip_rows: rows to skip at the top of the sheet. Default: 0.
  header_row: 0-based row index (after skip_rows) of the header. Default: 0.

Cell values keep their openpyxl types (dates stay datetimes, numbers stay
numbers); the row normaliser turns them into invoice fields.
"""

from __future__ import annotations

from typing import Any, BinaryIO, Iterator

import openpyxl

from einvoice_ingestion.adapters.base import SAMPLE_SIZE, SourceProbe, SourceRecord, normalize_key


def _cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, float) and value == int(value):
        return int(value)
    if isinstance(value, str):
        return value.strip()
    return value


def _headers(row: tuple[Any, ...]) -> list[str]:
    headers: list[str] = []
    for c, value in enumerate(row):
        key = normalize_key(value) if value not in (None, "") else f"column_{c + 1}"
        base, n = key, 0
        while key in headers:
            n += 1
            key = f"{base}_{n}"
        headers.append(key)
    return headers


class XlsxSourceAdapter:
    """Read .xlsx workbooks as one record per data row."""

    def read(self, stream: BinaryIO, options: dict[str, Any]) -> Iterator[SourceRecord]:
        wb = openpyxl.load_workbook(stream, read_only=True, data_only=True)
        try:
            rows = self._sheet(wb, options).iter_rows(
                min_row=1 + int(options.get("skip_rows", 0)), values_only=True
            )
            for _ in range(int(options.get("header_row", 0))):
                next(rows, None)
            header = next(rows, None)
            if header is None:
                return
            headers = _headers(header)
            row_number = 0
            for row in rows:
                values = [_cell(v) for v in row[: len(headers)]]
                if not any(v != "" for v in values):
                    continue
                row_number += 1
                yield SourceRecord(row_number=row_number, data=dict(zip(headers, values)))
        finally:
            wb.close()

    def probe(self, stream: BinaryIO, options: dict[str, Any]) -> SourceProbe:
        columns: tuple[str, ...] = ()
        sample: list[dict[str, Any]] = []
        count = 0
        for record in self.read(stream, options):
            count += 1
            if record.data is not None:
                columns = columns or tuple(record.data)
                if len(sample) < SAMPLE_SIZE:
                    sample.append(record.data)
        return SourceProbe(row_count=count, columns=columns, sample_rows=tuple(sample))

    @staticmethod
    def _sheet(wb: Any, options: dict[str, Any]) -> Any:
        sheet_ref = options.get("sheet")
        if sheet_ref is None:
            return wb.active
        if isinstance(sheet_ref, int):
            return wb.worksheets[sheet_ref]
        return wb[sheet_ref]
