"""Capped exponential backoff shared by rate-limit retries and job polling."""

from __future__ import annotations

from collections.abc import Iterator

from tenacity import RetryCallState
from tenacity.wait import wait_base


class BackoffPolicy(wait_base):
    """Doubling delay sequence ``initial, 2*initial, ...`` capped at ``maximum``.

    Also usable directly as a tenacity ``wait=`` strategy: the delay for
    attempt *n* is the *n*-th element of the sequence.
    """

    def __init__(self, initial: float = 1.0, maximum: float = 60.0) -> None:
        if initial <= 0:
            raise ValueError(f"initial delay must be positive, got {initial}")
        if maximum < initial:
            raise ValueError(
                f"maximum delay {maximum} is smaller than initial delay {initial}"
            )
        self.initial = initial
        self.maximum = maximum

    def next(self, previous: float) -> float:
        """Delay that follows *previous*: ``min(maximum, previous * 2)``."""
        return min(self.maximum, previous * 2)

    def delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (1-based)."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        current = self.initial
        for _ in range(attempt - 1):
            if current >= self.maximum:
                break
            current = self.next(current)
        return current

    def delays(self) -> Iterator[float]:
        current = self.initial
        while True:
            yield current
            current = self.next(current)

    def __call__(self, retry_state: RetryCallState) -> float:
        return self.delay(retry_state.attempt_number)

    def __repr__(self) -> str:
        return f"BackoffPolicy(initial={self.initial}, maximum={self.maximum})"
