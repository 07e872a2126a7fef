"""
Thread-safe circuit breaker for external provider calls.

One breaker exists per logical service (embedding, vector_search, lexical_search,
web_search, rerank, llm). The ErrorRecoveryCoordinator consults it before every
call and feeds it the outcome:

    breaker = CircuitBreaker("vector_search", failure_threshold=5, recovery_timeout=30.0)

    if not breaker.allow_request():
        raise CircuitOpenError("vector_search")
    try:
        result = call_provider()
    except Exception:
        breaker.record_failure()
        raise
    breaker.record_success()
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..observability.metrics import circuit_breaker_state

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation, requests pass through
    OPEN = "open"  # Failing, reject requests immediately
    HALF_OPEN = "half_open"  # Testing recovery with a trial request


_STATE_GAUGE_VALUE = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


class CircuitBreaker:
    """
    Thread-safe circuit breaker.

    CLOSED counts consecutive failures and opens at ``failure_threshold``.
    OPEN rejects calls until ``recovery_timeout`` seconds have passed since the
    last failure, then moves to HALF_OPEN. HALF_OPEN admits one trial call at a
    time, closes on its success and reopens on its failure. A trial that never
    reports back stops blocking after another ``recovery_timeout``.

    Args:
        name: Service name (used in logs and metrics)
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Seconds to wait before allowing a trial request
        clock: Monotonic time source, injectable for tests
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._trial_started_at: Optional[float] = None
        self._opened_count = 0
        self._lock = threading.Lock()

        circuit_breaker_state.labels(service=name).set(0)
        logger.debug(
            "circuit_breaker_initialized",
            extra={
                "service": name,
                "failure_threshold": failure_threshold,
                "recovery_timeout": recovery_timeout,
            },
        )

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    def _transition(self, new_state: CircuitState) -> None:
        # Caller holds the lock
        self._state = new_state
        circuit_breaker_state.labels(service=self.name).set(
            _STATE_GAUGE_VALUE[new_state]
        )

    def allow_request(self) -> bool:
        """
        Whether a call may go out now.

        An OPEN breaker whose recovery timeout elapsed moves to HALF_OPEN and
        lets the call through as the trial. Other callers are rejected until
        the trial reports its outcome.
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            now = self._clock()
            if self._state == CircuitState.HALF_OPEN:
                if (
                    self._trial_started_at is not None
                    and now - self._trial_started_at < self.recovery_timeout
                ):
                    return False
                self._trial_started_at = now
                return True

            if self._state == CircuitState.OPEN:
                if self._last_failure_time is None:
                    return False
                elapsed = now - self._last_failure_time
                if elapsed < self.recovery_timeout:
                    return False
                self._transition(CircuitState.HALF_OPEN)
                self._trial_started_at = now
                logger.info(
                    "circuit_breaker_half_open",
                    extra={"service": self.name, "elapsed_seconds": elapsed},
                )
            return True

    def record_success(self) -> None:
        with self._lock:
            self._trial_started_at = None
            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED)
                logger.info(
                    "circuit_breaker_closed",
                    extra={"service": self.name, "reason": "recovery_success"},
                )
            self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._trial_started_at = None
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
                self._opened_count += 1
                logger.warning(
                    "circuit_breaker_reopened",
                    extra={"service": self.name, "reason": "recovery_failed"},
                )
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._transition(CircuitState.OPEN)
                self._opened_count += 1
                logger.warning(
                    "circuit_breaker_opened",
                    extra={
                        "service": self.name,
                        "failure_count": self._failure_count,
                        "threshold": self.failure_threshold,
                    },
                )

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        with self._lock:
            previous_state = self._state
            self._transition(CircuitState.CLOSED)
            self._failure_count = 0
            self._last_failure_time = None
            self._trial_started_at = None
            logger.info(
                "circuit_breaker_reset",
                extra={"service": self.name, "previous_state": previous_state.value},
            )

    def is_open(self) -> bool:
        """True while calls are being rejected (recovery timeout not yet elapsed)."""
        with self._lock:
            if self._state != CircuitState.OPEN:
                return False
            if self._last_failure_time is None:
                return True
            return self._clock() - self._last_failure_time < self.recovery_timeout

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "service": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "times_opened": self._opened_count,
            }

    def __repr__(self) -> str:
        with self._lock:
            return (
                f"CircuitBreaker(name={self.name!r}, state={self._state.value}, "
                f"failures={self._failure_count}/{self.failure_threshold})"
            )
