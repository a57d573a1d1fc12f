"""
Batch counters, recomputed from the rows.

Counters are never incremented in place: every writer calls
``refresh_counters`` inside its own transaction, so concurrent workers
cannot drift the totals.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from einvoice_batch.domain.types import RowStage, reached
from einvoice_batch.models.batch import BulkInvoiceBatch, BulkInvoiceItem


def awaits_submission(stage: RowStage, production_enabled: bool) -> bool:
    """True while the worker pool still has something to do for the row."""
    if stage is RowStage.VALIDATED:
        return True
    return stage is RowStage.SANDBOX_SUBMITTED and production_enabled


def refresh_counters(session: Session, batch: BulkInvoiceBatch) -> list[RowStage]:
    """Recompute every counter on ``batch``; returns the row stages seen."""
    rows = session.execute(
        select(BulkInvoiceItem.stage, BulkInvoiceItem.failed_from_stage)
        .where(BulkInvoiceItem.batch_id == batch.id)
    ).all()

    stages = []
    valid = sandbox = production = failed = 0
    for stage_value, failed_from_value in rows:
        stage = RowStage(stage_value)
        failed_from = RowStage(failed_from_value) if failed_from_value else None
        stages.append(stage)
        valid += reached(stage, failed_from, RowStage.VALIDATED)
        sandbox += reached(stage, failed_from, RowStage.SANDBOX_SUBMITTED)
        production += reached(stage, failed_from, RowStage.PRODUCTION_SUBMITTED)
        failed += stage is RowStage.FAILED

    batch.total_records = len(rows)
    batch.valid_records = valid
    if batch.validation_passes:
        batch.invalid_records = len(rows) - valid
    else:
        # Before the first pass only structural failures are known
        batch.invalid_records = failed
    batch.sandbox_validated_records = sandbox
    batch.production_submitted_records = production
    batch.failed_records = failed
    return stages
