"""
Invoice submission state machine as data.

Validates:
- The transition table is exactly the allowed set, nothing more
- Events map onto table transitions and are refused elsewhere
- Any sequence of events keeps the status inside the table (property test)
- The ORM status attribute enforces the same table
"""

from datetime import date
from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from einvoice_kernel.db.engine import transaction
from einvoice_kernel.domain.invoice_lifecycle import (
    EVENT_TRANSITIONS,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    InvoiceEvent,
    InvoiceStatus,
    apply_event,
    can_transition,
    validate_transition,
)
from einvoice_kernel.exceptions import InvalidInvoiceTransitionError, StateConflictError
from einvoice_kernel.models.invoice import Invoice

S = InvoiceStatus

ALLOWED = {
    (S.DRAFT, S.PENDING),
    (S.DRAFT, S.CANCELLED),
    (S.PENDING, S.SUBMITTED),
    (S.PENDING, S.FAILED),
    (S.PENDING, S.CANCELLED),
    (S.SUBMITTED, S.VALIDATED),
    (S.SUBMITTED, S.FAILED),
    (S.FAILED, S.PENDING),
}


class TestTransitionTable:
    @pytest.mark.parametrize("src", list(S))
    @pytest.mark.parametrize("dst", list(S))
    def test_every_pair(self, src, dst):
        assert can_transition(src, dst) is ((src, dst) in ALLOWED)
        if (src, dst) in ALLOWED:
            validate_transition(src, dst)
        else:
            with pytest.raises(InvalidInvoiceTransitionError):
                validate_transition(src, dst)

    def test_terminal_statuses_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert VALID_TRANSITIONS[status] == frozenset()

    def test_accepts_stored_strings(self):
        assert can_transition("failed", "pending")
        assert not can_transition("validated", "failed")

    def test_transition_error_is_a_state_conflict(self):
        with pytest.raises(StateConflictError) as exc_info:
            validate_transition(S.VALIDATED, S.PENDING)
        assert exc_info.value.from_status == "validated"
        assert exc_info.value.to_status == "pending"


class TestEvents:
    @pytest.mark.parametrize(
        "status,event,expected",
        [
            (S.DRAFT, InvoiceEvent.SUBMIT, S.PENDING),
            (S.PENDING, InvoiceEvent.TRANSMIT, S.SUBMITTED),
            (S.SUBMITTED, InvoiceEvent.ACCEPT, S.VALIDATED),
            (S.SUBMITTED, InvoiceEvent.REJECT, S.FAILED),
            (S.PENDING, InvoiceEvent.FAIL, S.FAILED),
            (S.FAILED, InvoiceEvent.RESUBMIT, S.PENDING),
            (S.DRAFT, InvoiceEvent.CANCEL, S.CANCELLED),
            (S.PENDING, InvoiceEvent.CANCEL, S.CANCELLED),
        ],
    )
    def test_legal_events(self, status, event, expected):
        assert apply_event(status, event) is expected

    @pytest.mark.parametrize(
        "status,event",
        [
            (S.SUBMITTED, InvoiceEvent.CANCEL),
            (S.VALIDATED, InvoiceEvent.CANCEL),
            (S.VALIDATED, InvoiceEvent.RESUBMIT),
            (S.FAILED, InvoiceEvent.ACCEPT),
            (S.DRAFT, InvoiceEvent.TRANSMIT),
            (S.CANCELLED, InvoiceEvent.SUBMIT),
        ],
    )
    def test_illegal_events(self, status, event):
        with pytest.raises(InvalidInvoiceTransitionError) as exc_info:
            apply_event(status, event)
        assert exc_info.value.to_status == f"<{event.value}>"

    def test_every_event_target_is_in_the_table(self):
        for mapping in EVENT_TRANSITIONS.values():
            for src, dst in mapping.items():
                assert (src, dst) in ALLOWED


class TestEventStreams:
    @settings(max_examples=300)
    @given(events=st.lists(st.sampled_from(list(InvoiceEvent)), max_size=30))
    def test_any_event_stream_stays_inside_the_table(self, events):
        status = S.DRAFT
        for event in events:
            try:
                target = apply_event(status, event)
            except InvalidInvoiceTransitionError:
                continue
            assert (status, target) in ALLOWED
            status = target

    @settings(max_examples=200)
    @given(events=st.lists(st.sampled_from(list(InvoiceEvent)), max_size=30))
    def test_terminal_statuses_absorb(self, events):
        status = S.DRAFT
        reached_terminal = None
        for event in events:
            try:
                status = apply_event(status, event)
            except InvalidInvoiceTransitionError:
                pass
            if reached_terminal is not None:
                assert status is reached_terminal
            elif status in TERMINAL_STATUSES:
                reached_terminal = status


class TestInvoiceStatusAttribute:
    """The ORM attribute refuses moves the table does not allow."""

    def _draft(self, session_factory, business_id, actor_id):
        with transaction(session_factory) as session:
            invoice = Invoice(
                business_id=business_id,
                status=S.DRAFT.value,
                invoice_date=date(2025, 1, 15),
                subtotal=Decimal("100.00"),
                tax_amount=Decimal("18.00"),
                total_amount=Decimal("118.00"),
                created_by_id=actor_id,
            )
            session.add(invoice)
            session.flush()
            return invoice.id

    def test_new_invoice_must_start_in_draft(self, business_id, actor_id):
        with pytest.raises(InvalidInvoiceTransitionError):
            Invoice(
                business_id=business_id,
                status=S.VALIDATED.value,
                invoice_date=date(2025, 1, 15),
                subtotal=Decimal("0"),
                tax_amount=Decimal("0"),
                total_amount=Decimal("0"),
                created_by_id=actor_id,
            )

    def test_illegal_assignment_is_refused(self, session_factory, business_id, actor_id):
        invoice_id = self._draft(session_factory, business_id, actor_id)
        with transaction(session_factory) as session:
            invoice = session.get(Invoice, invoice_id)
            with pytest.raises(InvalidInvoiceTransitionError):
                invoice.status = S.VALIDATED.value
            assert invoice.status == S.DRAFT.value

    def test_legal_assignment_is_stored(self, session_factory, business_id, actor_id):
        invoice_id = self._draft(session_factory, business_id, actor_id)
        with transaction(session_factory) as session:
            session.get(Invoice, invoice_id).status = S.CANCELLED
        with transaction(session_factory) as session:
            assert session.get(Invoice, invoice_id).status == "cancelled"

    def test_sequence_cannot_change_once_set(self, session_factory, business_id, actor_id):
        invoice_id = self._draft(session_factory, business_id, actor_id)
        with transaction(session_factory) as session:
            session.get(Invoice, invoice_id).invoice_sequence = 1
        with transaction(session_factory) as session:
            invoice = session.get(Invoice, invoice_id)
            with pytest.raises(ValueError):
                invoice.invoice_sequence = 2
            invoice.invoice_sequence = 1

    def test_idempotency_key_needs_a_sequence(self, session_factory, business_id, actor_id):
        invoice_id = self._draft(session_factory, business_id, actor_id)
        with transaction(session_factory) as session:
            invoice = session.get(Invoice, invoice_id)
            with pytest.raises(ValueError):
                invoice.idempotency_key
            invoice.invoice_sequence = 12
            assert invoice.idempotency_key == f"{business_id}:12"
