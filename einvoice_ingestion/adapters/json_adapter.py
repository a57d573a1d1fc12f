"""
JSON source adapter.

Handles a JSON array (``[{...}, {...}]``), an object holding the array
under ``json_path`` (e.g. ``"data.invoices"``), and JSON Lines (one object
per line).  ``format`` may be "array", "jsonl" or "auto" (default), which
picks by the first non-blank character.

A JSON Lines line that is not valid JSON, or an element that is not an
object, is yielded as a record with an error; the rest of the file is
still read.  A whole-file array that is not valid JSON cannot be split
into rows and raises MalformedSourceError.
"""

from __future__ import annotations

import json
from typing import Any, BinaryIO, Iterator

from einvoice_ingestion.adapters.base import (
    SAMPLE_SIZE,
    SourceProbe,
    SourceRecord,
    normalize_key,
    text_stream,
)
from einvoice_kernel.domain.dtos import FieldError
from einvoice_kernel.exceptions import MalformedSourceError


def _get_nested(data: Any, path: str) -> Any:
    """Follow dot-separated path into dict/list. Returns None if key missing."""
    for key in path.split("."):
        key = key.strip()
        if not key:
            continue
        if isinstance(data, list):
            try:
                data = data[int(key)]
            except (ValueError, IndexError):
                return None
        elif isinstance(data, dict) and key in data:
            data = data[key]
        else:
            return None
    return data


def _normalize_row_keys(item: dict[str, Any]) -> dict[str, Any]:
    return {normalize_key(k): v for k, v in item.items()}


def _record(row_number: int, item: Any, raw: str | None = None) -> SourceRecord:
    if not isinstance(item, dict):
        return SourceRecord(
            row_number=row_number,
            data=None,
            error=FieldError(
                code="ROW_NOT_OBJECT",
                message=f"Expected a JSON object, got {type(item).__name__}",
            ),
            raw=raw if raw is not None else json.dumps(item, default=str),
        )
    return SourceRecord(row_number=row_number, data=_normalize_row_keys(item))


class JsonSourceAdapter:
    """Read JSON array or JSON Lines sources as one record per invoice."""

    def read(self, stream: BinaryIO, options: dict[str, Any]) -> Iterator[SourceRecord]:
        fmt = options.get("format", "auto")
        with text_stream(stream, options.get("encoding", "utf-8")) as f:
            first = ""
            for line in f:
                if line.strip():
                    first = line
                    break
            if not first:
                return
            if fmt == "array" or (fmt == "auto" and _looks_like_document(first, options)):
                yield from self._read_array(first + f.read(), options)
            else:
                yield from self._read_lines(first, f)

    def _read_array(self, text: str, options: dict[str, Any]) -> Iterator[SourceRecord]:
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise MalformedSourceError("json", f"invalid JSON at line {exc.lineno}: {exc.msg}") from exc
        json_path = options.get("json_path")
        root = _get_nested(data, json_path) if json_path else data
        if not isinstance(root, list):
            raise MalformedSourceError("json", "expected a list of invoices")
        for row_number, item in enumerate(root, start=1):
            yield _record(row_number, item)

    def _read_lines(self, first: str, rest: Iterator[str]) -> Iterator[SourceRecord]:
        row_number = 0
        for line in _chain(first, rest):
            line = line.strip()
            if not line:
                continue
            row_number += 1
            try:
                item = json.loads(line)
            except json.JSONDecodeError as exc:
                yield SourceRecord(
                    row_number=row_number,
                    data=None,
                    error=FieldError(
                        code="MALFORMED_JSON",
                        message=f"Invalid JSON: {exc.msg} (column {exc.colno})",
                    ),
                    raw=line,
                )
                continue
            yield _record(row_number, item, raw=line)

    def probe(self, stream: BinaryIO, options: dict[str, Any]) -> SourceProbe:
        sample: list[dict[str, Any]] = []
        columns: set[str] = set()
        count = 0
        for record in self.read(stream, options):
            count += 1
            if record.data is not None and len(sample) < SAMPLE_SIZE:
                sample.append(record.data)
                columns.update(record.data)
        return SourceProbe(row_count=count, columns=tuple(sorted(columns)), sample_rows=tuple(sample))


def _looks_like_document(first: str, options: dict[str, Any]) -> bool:
    """A whole-file JSON document, as opposed to JSON Lines."""
    if options.get("json_path"):
        return True
    text = first.strip()
    if text.startswith("["):
        return True
    return text.startswith("{") and not _is_json_line(text)


def _is_json_line(text: str) -> bool:
    """A first line that is a complete object means JSON Lines."""
    try:
        return isinstance(json.loads(text), dict)
    except json.JSONDecodeError:
        return False


def _chain(first: str, rest: Iterator[str]) -> Iterator[str]:
    yield first
    yield from rest
