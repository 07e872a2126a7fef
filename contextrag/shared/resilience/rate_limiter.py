"""Sliding-window rate limiter for the worker pool."""

import asyncio
import logging
import time
from collections import deque
from typing import Callable

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Admit at most ``max_events`` per ``period`` seconds.

    Tracks admission times of the last window in a deque; ``acquire`` sleeps
    until the oldest admission leaves the window when the window is full.
    """

    def __init__(
        self,
        max_events: int = 10,
        period: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_events = max_events
        self.period = period
        self._clock = clock
        self._events: deque = deque()
        self._lock = asyncio.Lock()

    def _evict(self, now: float) -> None:
        window_start = now - self.period
        while self._events and self._events[0] <= window_start:
            self._events.popleft()

    def time_until_available(self) -> float:
        now = self._clock()
        self._evict(now)
        if len(self._events) < self.max_events:
            return 0.0
        return max(0.0, self._events[0] + self.period - now)

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                wait_time = self.time_until_available()
                if wait_time <= 0:
                    self._events.append(self._clock())
                    return
                logger.debug(
                    "rate_limit_throttle",
                    extra={
                        "wait_seconds": round(wait_time, 3),
                        "events_in_window": len(self._events),
                        "max_events": self.max_events,
                    },
                )
                await asyncio.sleep(wait_time)

    @property
    def events_in_window(self) -> int:
        self._evict(self._clock())
        return len(self._events)
