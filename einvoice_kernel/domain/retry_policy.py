"""
Backoff policy -- bounded exponential retry as a value object.

Responsibility:
    Decides how many times a transient failure may be retried and how long
    to wait before each retry.  The retry loop itself lives with the caller
    (the submission state machine); the policy only answers questions, so
    the ceiling and the delays are testable without any I/O.

        delay(n) = min(base_delay * multiplier ** (n - 1), max_delay)

    where n is the number of the attempt that just failed (1-based).
"""

import time
from dataclasses import dataclass, field
from typing import Callable


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Bounded exponential backoff.

    Guarantees:
        - At most ``max_attempts`` calls are made per submission.
        - No single wait exceeds ``max_delay``.
    """

    max_attempts: int = 5
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0
    sleep: Callable[[float], None] = field(default=time.sleep, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must not be negative")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")

    def delay(self, failed_attempt: int) -> float:
        """Seconds to wait after attempt number ``failed_attempt`` failed."""
        exponent = max(failed_attempt - 1, 0)
        return min(self.base_delay * (self.multiplier ** exponent), self.max_delay)

    def should_retry(self, failed_attempt: int) -> bool:
        return failed_attempt < self.max_attempts

    def wait(self, failed_attempt: int, retry_after: float | None = None) -> float:
        """
        Sleep before the next attempt and return the seconds slept.

        A server-provided ``retry_after`` is honoured but still capped at
        ``max_delay``.
        """
        seconds = self.delay(failed_attempt)
        if retry_after is not None:
            seconds = min(max(seconds, retry_after), self.max_delay)
        self.sleep(seconds)
        return seconds

    def delays(self) -> list[float]:
        """All waits a fully failing submission would go through."""
        return [self.delay(n) for n in range(1, self.max_attempts)]


@dataclass(frozen=True)
class RetrySchedule:
    """
    Spacing of scheduled resubmissions for invoices whose in-process
    retries were exhausted.

        next_delay(n) = min(initial_delay * multiplier ** n, max_delay)

    where n is the number of scheduled retries already made.
    """

    max_retries: int = 3
    initial_delay: float = 5.0
    multiplier: float = 2.0
    max_delay: float = 300.0

    def next_delay(self, retry_count: int) -> float:
        return min(self.initial_delay * (self.multiplier ** retry_count), self.max_delay)

    def allows(self, retry_count: int) -> bool:
        return retry_count < self.max_retries
