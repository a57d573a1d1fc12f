"""
BatchIngestor -- streams an uploaded file into bulk_invoice_items.

Responsibility:
    Reads the source through the adapter for its format and persists one
    BulkInvoiceItem per source row as it goes:

        parsed row          -> stage INGESTED, invoice_data normalised
        unparseable row     -> stage FAILED (from INGESTED), kind STRUCTURAL
        duplicate local_id  -> stage FAILED, DUPLICATE_LOCAL_ID, suffixed key
        over-long local_id  -> stage FAILED, LOCAL_ID_TOO_LONG, hashed key

    Rows are committed every ``commit_every`` rows, so a crash loses at
    most one chunk.  Re-running ``ingest`` on the same batch skips row
    numbers that are already stored, which resumes an interrupted upload.

Architecture position:
    Outer layer (ingestion).  Writes batch rows only; never touches
    invoices.

Failure modes:
    - BatchNotFoundError: unknown batch.
    - MalformedSourceError: the file as a whole cannot be split into rows,
      or it has more than ``max_rows`` rows.
    - Storage errors propagate; rows committed so far stay committed.
"""

from __future__ import annotations

from typing import Any, BinaryIO
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from einvoice_batch.domain.types import RowStage, SourceFormat
from einvoice_batch.models.batch import LOCAL_ID_MAX_LENGTH, BulkInvoiceBatch, BulkInvoiceItem
from einvoice_ingestion.adapters.base import SourceAdapter, SourceProbe, SourceRecord
from einvoice_ingestion.adapters.csv_adapter import CsvSourceAdapter
from einvoice_ingestion.adapters.json_adapter import JsonSourceAdapter
from einvoice_ingestion.adapters.xlsx_adapter import XlsxSourceAdapter
from einvoice_ingestion.domain.normalize import (
    RowShapeError,
    fallback_local_id,
    normalize_row,
)
from einvoice_kernel.db.engine import transaction
from einvoice_kernel.domain.dtos import FieldError
from einvoice_kernel.exceptions import BatchNotFoundError, ErrorKind, MalformedSourceError
from einvoice_kernel.logging_config import LogContext, get_logger

logger = get_logger("ingestion.ingestor")

INGESTION_PASS = 0


def default_adapters() -> dict[str, SourceAdapter]:
    json_adapter = JsonSourceAdapter()
    return {
        SourceFormat.CSV.value: CsvSourceAdapter(),
        SourceFormat.JSON.value: json_adapter,
        SourceFormat.JSONL.value: json_adapter,
        SourceFormat.XLSX.value: XlsxSourceAdapter(),
    }


class BatchIngestor:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        adapters: dict[str, SourceAdapter] | None = None,
        commit_every: int = 1,
        max_rows: int | None = None,
    ):
        self._session_factory = session_factory
        self._adapters = adapters or default_adapters()
        self._commit_every = max(1, commit_every)
        self._max_rows = max_rows

    def _adapter(self, source_format: str) -> tuple[SourceAdapter, dict[str, Any]]:
        fmt = source_format.lower()
        adapter = self._adapters.get(fmt)
        if adapter is None:
            raise MalformedSourceError(source_format, "unsupported source format")
        options = {"format": "jsonl"} if fmt == SourceFormat.JSONL.value else {}
        return adapter, options

    def probe(self, stream: BinaryIO, source_format: str) -> SourceProbe:
        """Row count, columns and a sample, without storing anything."""
        adapter, options = self._adapter(source_format)
        return adapter.probe(stream, options)

    def ingest(
        self,
        batch_id: UUID,
        stream: BinaryIO,
        source_format: str,
        actor_id: UUID,
    ) -> int:
        """
        Persist every not-yet-stored row of ``stream`` into the batch.

        Returns:
            Number of rows stored by this call.
        """
        adapter, options = self._adapter(source_format)

        with LogContext.bind(batch_id=str(batch_id), actor_id=str(actor_id), producer="ingestion"):
            with transaction(self._session_factory) as session:
                if session.get(BulkInvoiceBatch, batch_id) is None:
                    raise BatchNotFoundError(str(batch_id))
                existing = session.execute(
                    select(BulkInvoiceItem.row_number, BulkInvoiceItem.local_id)
                    .where(BulkInvoiceItem.batch_id == batch_id)
                ).all()
            seen_rows = {row_number for row_number, _ in existing}
            seen_ids = {local_id for _, local_id in existing}

            logger.info(
                "ingestion_started",
                extra={"source_format": source_format, "already_stored": len(seen_rows)},
            )

            pending: list[BulkInvoiceItem] = []
            stored = failed = 0
            for record in adapter.read(stream, options):
                if self._max_rows is not None and record.row_number > self._max_rows:
                    self._flush(batch_id, pending)
                    raise MalformedSourceError(
                        source_format, f"more than {self._max_rows} rows"
                    )
                if record.row_number in seen_rows:
                    continue
                item = self._build_item(batch_id, record, seen_ids, actor_id)
                seen_rows.add(record.row_number)
                seen_ids.add(item.local_id)
                pending.append(item)
                stored += 1
                if item.stage == RowStage.FAILED.value:
                    failed += 1
                if len(pending) >= self._commit_every:
                    self._flush(batch_id, pending)
                    pending = []
            self._flush(batch_id, pending)

            logger.info(
                "ingestion_completed",
                extra={"rows_stored": stored, "rows_failed": failed},
            )
        return stored

    def _build_item(
        self,
        batch_id: UUID,
        record: SourceRecord,
        seen_ids: set[str],
        actor_id: UUID,
    ) -> BulkInvoiceItem:
        error = record.error
        invoice_data: dict[str, Any] = {}
        if error is None and record.data is not None:
            try:
                invoice_data = normalize_row(record.data)
            except RowShapeError as exc:
                error = FieldError(code=exc.code, message=str(exc))

        if error is not None:
            local_id = (
                fallback_local_id(record.raw or record.data or f"row:{record.row_number}")
            )
        else:
            local_id = invoice_data.get("local_id") or fallback_local_id(
                {k: v for k, v in invoice_data.items() if k != "local_id"}
            )
            invoice_data["local_id"] = local_id

        if len(local_id) > LOCAL_ID_MAX_LENGTH:
            error = error or FieldError(
                code="LOCAL_ID_TOO_LONG",
                message=f"local_id is {len(local_id)} characters; at most {LOCAL_ID_MAX_LENGTH} allowed",
                field="local_id",
            )
            local_id = fallback_local_id(local_id)

        if local_id in seen_ids:
            original = local_id
            local_id = f"{original}#{record.row_number}"
            if len(local_id) > LOCAL_ID_MAX_LENGTH:
                local_id = f"{fallback_local_id(original)}#{record.row_number}"
            error = error or FieldError(
                code="DUPLICATE_LOCAL_ID",
                message=f"local_id {original!r} already used in this batch",
                field="local_id",
            )

        if error is None:
            return BulkInvoiceItem(
                batch_id=batch_id,
                row_number=record.row_number,
                local_id=local_id,
                invoice_data=invoice_data,
                stage=RowStage.INGESTED.value,
                validation_errors=[],
                created_by_id=actor_id,
            )

        logger.warning(
            "batch_row_structural_failure",
            extra={"row_number": record.row_number, "error_code": error.code},
        )
        item = BulkInvoiceItem(
            batch_id=batch_id,
            row_number=record.row_number,
            local_id=local_id,
            invoice_data=invoice_data or {"raw": record.raw},
            failed_from_stage=RowStage.INGESTED.value,
            stage=RowStage.FAILED.value,
            validation_errors=[],
            last_error_kind=ErrorKind.STRUCTURAL.value,
            last_error_message=error.message,
            created_by_id=actor_id,
        )
        item.add_errors([error.to_dict()], INGESTION_PASS)
        return item

    def _flush(self, batch_id: UUID, items: list[BulkInvoiceItem]) -> None:
        if not items:
            return
        with transaction(self._session_factory) as session:
            session.add_all(items)
            session.flush()
            batch = session.get(BulkInvoiceBatch, batch_id)
            batch.total_records = session.execute(
                select(func.count())
                .select_from(BulkInvoiceItem)
                .where(BulkInvoiceItem.batch_id == batch_id)
            ).scalar_one()
        logger.debug("ingestion_chunk_committed", extra={"rows": len(items)})
