"""
Scheduled retry of invoices whose in-process retries ran out.

Validates:
- Only FAILED/TRANSIENT invoices past next_retry_at are due
- A retry resubmits with the same sequence and counts against max_retries
- Later retries are spaced by the schedule; exhausted invoices are refused
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from einvoice_kernel.domain.invoice_lifecycle import InvoiceStatus
from einvoice_kernel.domain.retry_policy import RetrySchedule
from einvoice_kernel.exceptions import (
    ErrorKind,
    FbrTransientError,
    InvoiceNotFoundError,
    RetryNotAllowedError,
)
from einvoice_kernel.services.invoice_retry import InvoiceRetryService

SCHEDULE = RetrySchedule(max_retries=2, initial_delay=5.0, multiplier=2.0, max_delay=300.0)


@pytest.fixture
def scheduled(make_submission, session_factory, clock):
    submission = make_submission(max_attempts=1, schedule=SCHEDULE)
    return submission, InvoiceRetryService(session_factory, submission, schedule=SCHEDULE, clock=clock)


def _unavailable():
    return FbrTransientError("HTTP 503", status_code=503)


class TestDueInvoices:
    def test_not_due_before_next_retry_at(self, scheduled, gateway, clock, create_invoice,
                                          business_id, actor_id):
        submission, retries = scheduled
        gateway.script(_unavailable())
        invoice_id = create_invoice(business_id)
        submission.submit(invoice_id, actor_id)

        assert retries.due_invoice_ids() == []
        clock.advance(5)
        assert retries.due_invoice_ids() == [invoice_id]

    def test_validation_failures_are_never_due(self, scheduled, gateway, clock, create_invoice,
                                               business_id, actor_id):
        submission, retries = scheduled
        gateway.script(gateway.rejected("bad buyer"))
        submission.submit(create_invoice(business_id), actor_id)

        clock.advance(3600)
        assert retries.due_invoice_ids() == []


class TestRetryDue:
    def test_retry_resubmits_same_sequence(self, scheduled, gateway, clock, create_invoice,
                                           business_id, actor_id):
        submission, retries = scheduled
        gateway.script(_unavailable())
        invoice_id = create_invoice(business_id)
        submission.submit(invoice_id, actor_id)
        clock.advance(5)

        outcomes = retries.retry_due(actor_id=actor_id)

        assert [o.status for o in outcomes] == [InvoiceStatus.VALIDATED]
        assert outcomes[0].invoice_sequence == 1
        assert [c.idempotency_key for c in gateway.calls] == [f"{business_id}:1"] * 2
        invoice = submission.get_invoice(invoice_id)
        assert invoice.retry_count == 1
        assert invoice.next_retry_at is None

    def test_retries_are_spaced_then_exhausted(self, scheduled, gateway, clock, create_invoice,
                                               business_id, actor_id):
        submission, retries = scheduled
        gateway.script(_unavailable(), always=True)
        invoice_id = create_invoice(business_id)
        submission.submit(invoice_id, actor_id)

        clock.advance(5)
        retries.retry_due(actor_id=actor_id)
        invoice = submission.get_invoice(invoice_id)
        assert invoice.retry_count == 1
        assert invoice.next_retry_at.replace(tzinfo=None) == (
            clock.now_utc() + timedelta(seconds=10)
        ).replace(tzinfo=None)

        clock.advance(10)
        retries.retry_due(actor_id=actor_id)
        invoice = submission.get_invoice(invoice_id)
        assert invoice.retry_count == 2
        assert invoice.status == InvoiceStatus.FAILED.value
        assert invoice.last_error_kind == ErrorKind.TRANSIENT.value
        assert invoice.next_retry_at is None

        clock.advance(3600)
        assert retries.due_invoice_ids() == []
        with pytest.raises(RetryNotAllowedError):
            retries.retry_invoice(invoice_id, actor_id)

    def test_retry_invoice_refuses_non_transient(self, scheduled, gateway, create_invoice,
                                                 business_id, actor_id):
        submission, retries = scheduled
        gateway.script(gateway.rejected("bad buyer"))
        invoice_id = create_invoice(business_id)
        submission.submit(invoice_id, actor_id)

        with pytest.raises(RetryNotAllowedError):
            retries.retry_invoice(invoice_id, actor_id)

    def test_retry_invoice_refuses_drafts_and_unknown(self, scheduled, create_invoice, business_id, actor_id):
        _, retries = scheduled
        with pytest.raises(RetryNotAllowedError):
            retries.retry_invoice(create_invoice(business_id), actor_id)
        with pytest.raises(InvoiceNotFoundError):
            retries.retry_invoice(uuid4(), actor_id)

    def test_sweep_is_logged(self, scheduled, gateway, clock, create_invoice, business_id,
                             actor_id, captured_logs):
        submission, retries = scheduled
        gateway.script(_unavailable())
        submission.submit(create_invoice(business_id), actor_id)
        clock.advance(5)

        retries.retry_due(actor_id=actor_id)

        completed = next(r for r in captured_logs() if r["message"] == "invoice_retry_sweep_completed")
        assert completed["due_count"] == 1
        assert completed["validated"] == 1
