"""
Batch row stages and batch status transitions.

Validates:
- Row stages move forward one step, to FAILED, or back to the failed-from stage
- Derived flags follow the stage (a failed row keeps what it reached)
- Batch status moves along BATCH_TRANSITIONS; CANCELLED is final
- invoice_data and stage are guarded on the ORM model
"""

from uuid import uuid4

import pytest

from einvoice_batch.domain.types import (
    BATCH_TRANSITIONS,
    TERMINAL_BATCH_STATUSES,
    BatchProcessingStatus,
    RowStage,
    reached,
    validate_batch_transition,
    validate_stage_transition,
)
from einvoice_batch.models.batch import BulkInvoiceBatch, BulkInvoiceItem
from einvoice_kernel.db.engine import transaction
from einvoice_kernel.exceptions import (
    BatchStateError,
    ImmutabilityViolationError,
    InvalidRowStageError,
    StateConflictError,
)


def _item(stage=RowStage.INGESTED):
    return BulkInvoiceItem(
        batch_id=uuid4(),
        row_number=1,
        local_id="INV-1",
        invoice_data={"local_id": "INV-1", "items": []},
        stage=stage.value,
        validation_errors=[],
    )


class TestStageTransitions:
    @pytest.mark.parametrize(
        "current,target",
        [
            (RowStage.INGESTED, RowStage.VALIDATED),
            (RowStage.VALIDATED, RowStage.SANDBOX_SUBMITTED),
            (RowStage.SANDBOX_SUBMITTED, RowStage.PRODUCTION_SUBMITTED),
            (RowStage.INGESTED, RowStage.FAILED),
            (RowStage.SANDBOX_SUBMITTED, RowStage.FAILED),
        ],
    )
    def test_allowed(self, current, target):
        validate_stage_transition(current, target)

    @pytest.mark.parametrize(
        "current,target",
        [
            (RowStage.INGESTED, RowStage.SANDBOX_SUBMITTED),
            (RowStage.VALIDATED, RowStage.INGESTED),
            (RowStage.PRODUCTION_SUBMITTED, RowStage.FAILED),
            (RowStage.PRODUCTION_SUBMITTED, RowStage.SANDBOX_SUBMITTED),
            (RowStage.FAILED, RowStage.FAILED),
        ],
    )
    def test_rejected(self, current, target):
        with pytest.raises(InvalidRowStageError):
            validate_stage_transition(current, target)

    def test_failed_row_returns_only_to_its_stage(self):
        validate_stage_transition(RowStage.FAILED, RowStage.VALIDATED, failed_from=RowStage.VALIDATED)
        with pytest.raises(InvalidRowStageError):
            validate_stage_transition(RowStage.FAILED, RowStage.SANDBOX_SUBMITTED, failed_from=RowStage.VALIDATED)
        with pytest.raises(InvalidRowStageError):
            validate_stage_transition(RowStage.FAILED, RowStage.INGESTED)

    def test_stage_errors_are_state_conflicts(self):
        assert issubclass(InvalidRowStageError, StateConflictError)

    def test_reached(self):
        assert reached(RowStage.SANDBOX_SUBMITTED, None, RowStage.VALIDATED)
        assert not reached(RowStage.INGESTED, None, RowStage.VALIDATED)
        assert reached(RowStage.FAILED, RowStage.VALIDATED, RowStage.VALIDATED)
        assert not reached(RowStage.FAILED, RowStage.INGESTED, RowStage.VALIDATED)
        assert not reached(RowStage.FAILED, None, RowStage.INGESTED)


class TestRowModel:
    def test_new_row_must_start_ingested_or_failed(self):
        with pytest.raises(InvalidRowStageError):
            _item(RowStage.VALIDATED)
        assert _item(RowStage.FAILED).stage == RowStage.FAILED.value

    def test_advance_one_step_at_a_time(self):
        item = _item()
        item.advance(RowStage.VALIDATED)

        with pytest.raises(InvalidRowStageError):
            item.advance(RowStage.PRODUCTION_SUBMITTED)
        assert item.stage == RowStage.VALIDATED.value

    def test_fail_and_reopen(self):
        item = _item()
        item.advance(RowStage.VALIDATED)
        item.advance(RowStage.SANDBOX_SUBMITTED)

        item.fail("transient", "HTTP 503")

        assert item.stage_enum is RowStage.FAILED
        assert item.failed_from is RowStage.SANDBOX_SUBMITTED
        assert item.data_valid
        assert item.sandbox_submitted
        assert not item.production_submitted

        item.fail("auth", "token expired")
        assert item.failed_from is RowStage.SANDBOX_SUBMITTED
        assert item.last_error_kind == "auth"

        assert item.reopen() is RowStage.SANDBOX_SUBMITTED
        assert item.stage_enum is RowStage.SANDBOX_SUBMITTED
        assert item.failed_from is None
        assert item.last_error_kind is None

    def test_reopen_requires_a_failed_row(self):
        with pytest.raises(InvalidRowStageError):
            _item().reopen()

    def test_errors_accumulate_with_pass_numbers(self):
        item = _item()
        item.add_errors([{"code": "UNKNOWN_CUSTOMER"}], 1)
        item.add_errors([{"code": "UNKNOWN_CUSTOMER"}, {"code": "INVALID_DATE"}], 2)

        assert [(e["code"], e["validation_pass"]) for e in item.validation_errors] == [
            ("UNKNOWN_CUSTOMER", 1),
            ("UNKNOWN_CUSTOMER", 2),
            ("INVALID_DATE", 2),
        ]

    def test_invoice_data_is_write_once(self):
        item = _item()
        with pytest.raises(ImmutabilityViolationError):
            item.invoice_data = {"local_id": "changed"}

    def test_to_dto(self):
        item = _item()
        item.advance(RowStage.VALIDATED)

        dto = item.to_dto()

        assert dto.stage is RowStage.VALIDATED
        assert dto.data_valid
        assert not dto.sandbox_submitted
        assert dto.validation_errors == ()


class TestStoredRowGuards:
    def test_invoice_data_frozen_after_load(self, session_factory, business_id, create_batch, actor_id):
        batch_id = create_batch(business_id)
        with transaction(session_factory) as session:
            item = _item()
            item.batch_id = batch_id
            item.created_by_id = actor_id
            session.add(item)
            session.flush()
            item_id = item.id

        with transaction(session_factory) as session:
            stored = session.get(BulkInvoiceItem, item_id)
            with pytest.raises(ImmutabilityViolationError):
                stored.invoice_data = {}
            stored.advance(RowStage.VALIDATED)

        with transaction(session_factory) as session:
            stored = session.get(BulkInvoiceItem, item_id)
            assert stored.stage == RowStage.VALIDATED.value
            with pytest.raises(InvalidRowStageError):
                stored.advance(RowStage.VALIDATED)


class TestBatchTransitions:
    def test_every_status_has_an_entry(self):
        assert set(BATCH_TRANSITIONS) == set(BatchProcessingStatus)

    def test_cancelled_is_final(self):
        assert BATCH_TRANSITIONS[BatchProcessingStatus.CANCELLED] == frozenset()
        assert BatchProcessingStatus.CANCELLED in TERMINAL_BATCH_STATUSES

    def test_finished_batches_can_be_picked_up_again(self):
        validate_batch_transition("b", BatchProcessingStatus.COMPLETE, BatchProcessingStatus.SUBMITTING)
        validate_batch_transition("b", BatchProcessingStatus.FAILED, BatchProcessingStatus.VALIDATING)

    @pytest.mark.parametrize(
        "current,target",
        [
            (BatchProcessingStatus.UPLOADING, BatchProcessingStatus.SUBMITTING),
            (BatchProcessingStatus.COMPLETE, BatchProcessingStatus.CANCELLED),
            (BatchProcessingStatus.CANCELLED, BatchProcessingStatus.SUBMITTING),
        ],
    )
    def test_rejected(self, current, target):
        with pytest.raises(BatchStateError):
            validate_batch_transition("b", current, target)

    def test_move_to(self):
        batch = BulkInvoiceBatch(
            business_id=uuid4(),
            source_format="jsonl",
            processing_status=BatchProcessingStatus.UPLOADING.value,
        )

        assert batch.move_to(BatchProcessingStatus.PARSING) is BatchProcessingStatus.UPLOADING
        assert batch.move_to(BatchProcessingStatus.PARSING) is BatchProcessingStatus.PARSING
        with pytest.raises(BatchStateError):
            batch.move_to(BatchProcessingStatus.COMPLETE)
        assert batch.status is BatchProcessingStatus.PARSING
