"""Request deadline propagated to every pipeline stage."""

import time
from typing import Callable, Optional


class Deadline:
    """
    Absolute point in (monotonic) time by which a request must finish.

    ``Deadline(None)`` never expires, so stages can treat every request the
    same way.
    """

    def __init__(
        self,
        timeout_ms: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self.timeout_ms = timeout_ms
        self._started = clock()
        self._expires_at = (
            None if timeout_ms is None else self._started + timeout_ms / 1000.0
        )

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(None)

    @property
    def is_bounded(self) -> bool:
        return self._expires_at is not None

    def remaining(self) -> Optional[float]:
        """Seconds left, or None for an unbounded deadline. Never negative."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def remaining_ms(self) -> Optional[float]:
        remaining = self.remaining()
        return None if remaining is None else remaining * 1000.0

    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at

    def elapsed_ms(self) -> float:
        return (self._clock() - self._started) * 1000.0

    def cap(self, timeout_seconds: Optional[float]) -> Optional[float]:
        """The smaller of ``timeout_seconds`` and the time left."""
        remaining = self.remaining()
        if remaining is None:
            return timeout_seconds
        if timeout_seconds is None:
            return remaining
        return min(timeout_seconds, remaining)

    def __repr__(self) -> str:
        return f"Deadline(timeout_ms={self.timeout_ms}, remaining={self.remaining()})"
