"""
BatchIngestor: uploaded file -> bulk_invoice_items.

Validates:
- Parsed rows are stored INGESTED with normalised invoice_data
- Unparseable rows are stored FAILED (from INGESTED) with kind STRUCTURAL
- A repeated local_id is stored under a suffixed key and FAILED
- A local_id too long to store is FAILED under a hashed key
- Re-ingesting resumes: row numbers already stored are skipped
- max_rows and unsupported formats raise MalformedSourceError
"""

from uuid import uuid4

import pytest

from einvoice_batch.domain.types import RowStage
from einvoice_batch.models.batch import LOCAL_ID_MAX_LENGTH, BulkInvoiceBatch
from einvoice_ingestion.services.ingestor import BatchIngestor
from einvoice_kernel.db.engine import transaction
from einvoice_kernel.exceptions import BatchNotFoundError, ErrorKind, MalformedSourceError


@pytest.fixture
def ingestor(session_factory):
    return BatchIngestor(session_factory)


def _total_records(session_factory, batch_id):
    with transaction(session_factory) as session:
        return session.get(BulkInvoiceBatch, batch_id).total_records


class TestIngest:
    def test_rows_are_stored_in_order(
        self, ingestor, business_id, create_batch, jsonl, invoice_row, batch_rows, actor_id,
        session_factory,
    ):
        batch_id = create_batch(business_id)

        stored = ingestor.ingest(batch_id, jsonl([invoice_row(1), invoice_row(2)]), "jsonl", actor_id)

        assert stored == 2
        rows = batch_rows(batch_id)
        assert [(r.row_number, r.local_id, r.stage) for r in rows] == [
            (1, "INV-0001", RowStage.INGESTED.value),
            (2, "INV-0002", RowStage.INGESTED.value),
        ]
        data = rows[0].invoice_data
        assert data["customer_code"] == "C001"
        assert data["items"][0]["unit_price"] == "100.00"
        assert rows[0].validation_errors == []
        assert _total_records(session_factory, batch_id) == 2

    def test_malformed_line_becomes_a_structural_failure(
        self, ingestor, business_id, create_batch, jsonl, invoice_row, batch_rows, actor_id,
    ):
        batch_id = create_batch(business_id)

        ingestor.ingest(batch_id, jsonl([invoice_row(1), '{"local_id": "INV-0002",']), "jsonl", actor_id)

        bad = batch_rows(batch_id)[1]
        assert bad.stage == RowStage.FAILED.value
        assert bad.failed_from_stage == RowStage.INGESTED.value
        assert bad.last_error_kind == ErrorKind.STRUCTURAL.value
        assert bad.local_id.startswith("row-")
        assert bad.invoice_data == {"raw": '{"local_id": "INV-0002",'}
        assert [(e["code"], e["validation_pass"]) for e in bad.validation_errors] == [("MALFORMED_JSON", 0)]
        assert not bad.data_valid

    def test_bad_items_shape(self, ingestor, business_id, create_batch, jsonl, invoice_row, batch_rows, actor_id):
        batch_id = create_batch(business_id)

        ingestor.ingest(batch_id, jsonl([invoice_row(1, items=[5])]), "jsonl", actor_id)

        row = batch_rows(batch_id)[0]
        assert row.stage == RowStage.FAILED.value
        assert row.validation_errors[0]["code"] == "ITEM_NOT_OBJECT"

    def test_duplicate_local_id(
        self, ingestor, business_id, create_batch, jsonl, invoice_row, batch_rows, actor_id,
    ):
        batch_id = create_batch(business_id)

        ingestor.ingest(
            batch_id, jsonl([invoice_row(1), invoice_row(2), invoice_row(1)]), "jsonl", actor_id
        )

        rows = batch_rows(batch_id)
        assert [r.local_id for r in rows] == ["INV-0001", "INV-0002", "INV-0001#3"]
        duplicate = rows[2]
        assert duplicate.stage == RowStage.FAILED.value
        assert duplicate.validation_errors[0]["code"] == "DUPLICATE_LOCAL_ID"
        assert duplicate.validation_errors[0]["field"] == "local_id"

    def test_over_long_local_id(
        self, ingestor, business_id, create_batch, jsonl, invoice_row, batch_rows, actor_id,
    ):
        batch_id = create_batch(business_id)
        long_id = "X" * 150

        ingestor.ingest(
            batch_id,
            jsonl([invoice_row(1, local_id=long_id), invoice_row(2, local_id=long_id), invoice_row(3)]),
            "jsonl",
            actor_id,
        )

        rows = batch_rows(batch_id)
        first, second, ok = rows
        for row in (first, second):
            assert row.stage == RowStage.FAILED.value
            assert row.last_error_kind == ErrorKind.STRUCTURAL.value
            assert row.validation_errors[0]["code"] == "LOCAL_ID_TOO_LONG"
            assert len(row.local_id) <= LOCAL_ID_MAX_LENGTH
        assert first.local_id.startswith("row-")
        assert second.local_id == f"{first.local_id}#2"
        assert ok.stage == RowStage.INGESTED.value

    def test_duplicate_of_a_full_length_local_id(
        self, ingestor, business_id, create_batch, jsonl, invoice_row, batch_rows, actor_id,
    ):
        batch_id = create_batch(business_id)
        full = "A" * LOCAL_ID_MAX_LENGTH

        ingestor.ingest(
            batch_id, jsonl([invoice_row(1, local_id=full), invoice_row(2, local_id=full)]), "jsonl", actor_id
        )

        original, duplicate = batch_rows(batch_id)
        assert original.local_id == full
        assert original.stage == RowStage.INGESTED.value
        assert duplicate.validation_errors[0]["code"] == "DUPLICATE_LOCAL_ID"
        assert duplicate.local_id.startswith("row-")
        assert duplicate.local_id.endswith("#2")
        assert len(duplicate.local_id) <= LOCAL_ID_MAX_LENGTH

    def test_rows_without_local_id_get_a_content_key(
        self, ingestor, business_id, create_batch, jsonl, invoice_row, batch_rows, actor_id,
    ):
        batch_id = create_batch(business_id)
        row = invoice_row(1)
        del row["local_id"]

        ingestor.ingest(batch_id, jsonl([row]), "jsonl", actor_id)

        stored = batch_rows(batch_id)[0]
        assert stored.local_id.startswith("row-")
        assert stored.invoice_data["local_id"] == stored.local_id

    def test_resume_skips_stored_rows(
        self, ingestor, business_id, create_batch, jsonl, invoice_row, batch_rows, actor_id,
        session_factory,
    ):
        batch_id = create_batch(business_id)
        rows = [invoice_row(n) for n in range(1, 6)]
        ingestor.ingest(batch_id, jsonl(rows[:3]), "jsonl", actor_id)

        stored = ingestor.ingest(batch_id, jsonl(rows), "jsonl", actor_id)

        assert stored == 2
        assert [r.row_number for r in batch_rows(batch_id)] == [1, 2, 3, 4, 5]
        assert _total_records(session_factory, batch_id) == 5

    def test_chunked_commits(self, session_factory, business_id, create_batch, jsonl, invoice_row, actor_id):
        batch_id = create_batch(business_id)
        ingestor = BatchIngestor(session_factory, commit_every=3)

        stored = ingestor.ingest(batch_id, jsonl([invoice_row(n) for n in range(1, 8)]), "jsonl", actor_id)

        assert stored == 7
        assert _total_records(session_factory, batch_id) == 7

    def test_logs(self, ingestor, business_id, create_batch, jsonl, invoice_row, actor_id, captured_logs):
        batch_id = create_batch(business_id)

        ingestor.ingest(batch_id, jsonl([invoice_row(1), "nope"]), "jsonl", actor_id)

        logs = captured_logs()
        completed = next(r for r in logs if r["message"] == "ingestion_completed")
        assert completed["rows_stored"] == 2
        assert completed["rows_failed"] == 1
        assert completed["batch_id"] == str(batch_id)
        assert any(r["message"] == "batch_row_structural_failure" for r in logs)


class TestIngestFailures:
    def test_max_rows(self, session_factory, business_id, create_batch, jsonl, invoice_row, batch_rows, actor_id):
        batch_id = create_batch(business_id)
        ingestor = BatchIngestor(session_factory, max_rows=2)

        with pytest.raises(MalformedSourceError):
            ingestor.ingest(batch_id, jsonl([invoice_row(n) for n in range(1, 4)]), "jsonl", actor_id)

        assert len(batch_rows(batch_id)) == 2

    def test_unknown_batch(self, ingestor, jsonl, invoice_row, actor_id):
        with pytest.raises(BatchNotFoundError):
            ingestor.ingest(uuid4(), jsonl([invoice_row(1)]), "jsonl", actor_id)

    def test_unsupported_format(self, ingestor, business_id, create_batch, jsonl, invoice_row, actor_id):
        batch_id = create_batch(business_id)
        with pytest.raises(MalformedSourceError):
            ingestor.ingest(batch_id, jsonl([invoice_row(1)]), "pdf", actor_id)


def test_probe(ingestor, jsonl, invoice_row):
    probe = ingestor.probe(jsonl([invoice_row(n) for n in range(1, 8)]), "JSONL")

    assert probe.row_count == 7
    assert "local_id" in probe.columns
    assert len(probe.sample_rows) == 5
