"""
Invoice sequence allocation.

Validates:
- Numbers are 1, 2, 3, ... per business, independent across businesses
- A rolled-back allocation returns its number to the counter (no gap)
- Unknown businesses are refused, missing counters are created
- Storage errors are retried a bounded number of times, then SequenceError
- The allocator never derives numbers from the invoices table
"""

import inspect as pyinspect
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

from einvoice_kernel.db.engine import transaction
from einvoice_kernel.exceptions import BusinessNotFoundError, SequenceError
from einvoice_kernel.models.sequence import SequenceCounter
from einvoice_kernel.services import sequence_service
from einvoice_kernel.services.sequence_service import SequenceAllocator, retry_on_storage_error


def _allocate(session_factory, business_id):
    with transaction(session_factory) as session:
        return SequenceAllocator(session).allocate(business_id)


class TestAllocate:
    def test_first_number_is_one_and_numbers_increase(self, session_factory, business_id):
        values = [_allocate(session_factory, business_id) for _ in range(5)]
        assert values == [1, 2, 3, 4, 5]

    def test_businesses_have_independent_counters(self, session_factory, register_business):
        first = register_business()
        second = register_business()

        assert _allocate(session_factory, first) == 1
        assert _allocate(session_factory, first) == 2
        assert _allocate(session_factory, second) == 1

    def test_rolled_back_allocation_is_reissued(self, session_factory, business_id):
        assert _allocate(session_factory, business_id) == 1

        with pytest.raises(RuntimeError):
            with transaction(session_factory) as session:
                assert SequenceAllocator(session).allocate(business_id) == 2
                raise RuntimeError("invoice insert failed")

        assert _allocate(session_factory, business_id) == 2

    def test_current_reports_last_issued_value(self, session_factory, business_id):
        with transaction(session_factory) as session:
            assert SequenceAllocator(session).current(business_id) == 0
        _allocate(session_factory, business_id)
        _allocate(session_factory, business_id)
        with transaction(session_factory) as session:
            assert SequenceAllocator(session).current(business_id) == 2

    def test_missing_counter_is_created_on_first_allocation(self, session_factory, business_id):
        with transaction(session_factory) as session:
            counter = session.query(SequenceCounter).filter_by(business_id=business_id).one()
            session.delete(counter)

        assert _allocate(session_factory, business_id) == 1

    def test_unknown_business_is_refused(self, session_factory):
        with pytest.raises(BusinessNotFoundError):
            _allocate(session_factory, uuid4())

    def test_ensure_counter_is_idempotent(self, session_factory, business_id):
        with transaction(session_factory) as session:
            allocator = SequenceAllocator(session)
            allocator.ensure_counter(business_id)
            allocator.ensure_counter(business_id)
        with transaction(session_factory) as session:
            assert session.query(SequenceCounter).filter_by(business_id=business_id).count() == 1


class TestRetryOnStorageError:
    @staticmethod
    def _operational_error():
        return OperationalError("UPDATE sequence_counters", {}, Exception("database is locked"))

    def test_retries_then_succeeds(self):
        sleeps = []
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise self._operational_error()
            return 7

        result = retry_on_storage_error(
            flaky, business_id=uuid4(), attempts=3, delay=0.05, sleep=sleeps.append
        )

        assert result == 7
        assert len(calls) == 3
        assert sleeps == [0.05, 0.1]

    def test_exhausted_retries_raise_sequence_error(self):
        business_id = uuid4()
        sleeps = []

        def always_locked():
            raise self._operational_error()

        with pytest.raises(SequenceError) as exc_info:
            retry_on_storage_error(
                always_locked, business_id=business_id, attempts=3, delay=0.05, sleep=sleeps.append
            )

        assert exc_info.value.business_id == str(business_id)
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert len(sleeps) == 2

    def test_non_storage_errors_are_not_retried(self):
        calls = []

        def broken():
            calls.append(1)
            raise IntegrityError("INSERT", {}, Exception("duplicate"))

        with pytest.raises(IntegrityError):
            retry_on_storage_error(broken, business_id=uuid4(), attempts=3, delay=0, sleep=lambda s: None)
        assert len(calls) == 1


class TestAllocatorSource:
    """The allocator advances a counter row; it never scans invoices."""

    def test_no_aggregate_max_plus_one(self):
        source = pyinspect.getsource(sequence_service).lower()
        assert "func.max" not in source
        assert "max(invoice" not in source
        assert "from invoices" not in source

    def test_uses_update_returning(self):
        source = pyinspect.getsource(SequenceAllocator._increment)
        assert ".returning(" in source
