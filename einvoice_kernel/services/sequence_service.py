"""
SequenceAllocator -- per-business invoice numbering via an atomic counter row.

Responsibility:
    Issues invoice sequence numbers that are unique and strictly increasing
    per business.  The counter lives in ``sequence_counters`` (one row per
    business) and is advanced with a single atomic statement:

        UPDATE sequence_counters
           SET current_value = current_value + 1
         WHERE business_id = :business_id
     RETURNING current_value

    The statement runs on the caller's session, inside the same transaction
    that stamps the number on the invoice.  If that transaction rolls back,
    so does the increment, and no gap appears.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by the invoice submission state machine at DRAFT -> PENDING.

Invariants enforced:
    - Uniqueness: the row lock taken by the UPDATE serialises concurrent
      allocators across threads AND processes.  No in-process counter is
      ever consulted.
    - Monotonicity: the counter only grows.  The aggregate max-plus-one
      pattern is never used.

Failure modes:
    - BusinessNotFoundError: the tenant does not exist.
    - SQLAlchemyError: storage failures surface unwrapped.  Callers retry
      them a fixed number of times via ``retry_on_storage_error`` and then
      raise SequenceError.

Audit relevance:
    Every allocation is logged at DEBUG with business_id and value.
"""

from typing import Callable, TypeVar
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session

from einvoice_kernel.exceptions import BusinessNotFoundError, SequenceError
from einvoice_kernel.logging_config import get_logger
from einvoice_kernel.models.sequence import SequenceCounter
from einvoice_kernel.models.tenant import Business

logger = get_logger("services.sequence")

T = TypeVar("T")

# Errors worth retrying: lock timeouts, dropped connections, serialization failures
RETRYABLE_STORAGE_ERRORS = (OperationalError, InterfaceError)


class SequenceAllocator:
    """
    Allocates invoice sequence numbers on a caller-owned session.

    Contract:
        ``allocate(business_id)`` returns the next integer for the business.
        The increment becomes visible only when the caller commits.

    Guarantees:
        - Concurrent callers never receive the same value.
        - Successive committed allocations strictly increase.
        - Rolled-back allocations are returned to the counter.

    Non-goals:
        - Does NOT call ``session.commit()`` -- caller controls boundaries.
        - Does NOT retry storage errors itself.
    """

    def __init__(self, session: Session):
        self._session = session

    def allocate(self, business_id: UUID) -> int:
        """
        Advance and return the business's counter.

        Preconditions:
            The caller is inside an active transaction on ``session``.

        Raises:
            BusinessNotFoundError: No such business.
        """
        value = self._increment(business_id)

        if value is None:
            if self._session.get(Business, business_id) is None:
                raise BusinessNotFoundError(str(business_id))
            self._create_counter(business_id)
            value = self._increment(business_id)

        if value is None or value <= 0:
            # Counter row vanished or went backwards under us
            raise SequenceError(str(business_id), 1, "counter row unavailable")

        logger.debug(
            "sequence_allocated",
            extra={"business_id": str(business_id), "value": value},
        )
        return value

    def current(self, business_id: UUID) -> int:
        """Last value issued for the business; 0 if none yet."""
        value = self._session.execute(
            select(SequenceCounter.current_value)
            .where(SequenceCounter.business_id == business_id)
        ).scalar_one_or_none()
        return value or 0

    def ensure_counter(self, business_id: UUID) -> None:
        """Create the counter row if the business does not have one yet."""
        exists = self._session.execute(
            select(SequenceCounter.id).where(SequenceCounter.business_id == business_id)
        ).scalar_one_or_none()
        if exists is None:
            self._create_counter(business_id)

    def _increment(self, business_id: UUID) -> int | None:
        return self._session.execute(
            update(SequenceCounter)
            .where(SequenceCounter.business_id == business_id)
            .values(current_value=SequenceCounter.current_value + 1)
            .returning(SequenceCounter.current_value)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()

    def _create_counter(self, business_id: UUID) -> None:
        # Savepoint so a concurrent creator only costs us this insert
        try:
            with self._session.begin_nested():
                self._session.add(SequenceCounter(business_id=business_id, current_value=0))
        except IntegrityError:
            logger.debug(
                "sequence_counter_race_retry",
                extra={"business_id": str(business_id)},
            )


def retry_on_storage_error(
    fn: Callable[[], T],
    *,
    business_id: UUID,
    attempts: int,
    delay: float,
    sleep: Callable[[float], None],
) -> T:
    """
    Run ``fn`` (a whole unit of work), retrying transient storage failures.

    Each retry waits ``delay * 2 ** (n - 1)`` seconds.

    Raises:
        SequenceError: storage kept failing after ``attempts`` tries.
    """
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except RETRYABLE_STORAGE_ERRORS as exc:
            last_error = exc
            logger.warning(
                "sequence_storage_retry",
                extra={
                    "business_id": str(business_id),
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "error": str(exc),
                },
            )
            if attempt < attempts:
                sleep(delay * (2 ** (attempt - 1)))
    raise SequenceError(str(business_id), attempts, str(last_error)) from last_error
