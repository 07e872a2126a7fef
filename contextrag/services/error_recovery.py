"""
Error recovery coordinator.

Wraps every external call (embedding, vector search, lexical search, web
search, rerank, llm) with:

- a per-service circuit breaker that gates calls
- a per-call timeout capped by the request deadline
- error categorization and strategy selection from a single dispatch table
- bounded, lock-protected recovery history and running statistics

Usage:
    coordinator = ErrorRecoveryCoordinator(config.recovery)
    vector = await coordinator.execute(
        "embedding",
        lambda: asyncio.to_thread(embedder.embed, query),
        timeout=2.5,
        deadline=deadline,
    )
"""

import asyncio
import re
import threading
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from contextrag.shared.config import RecoveryConfig
from contextrag.shared.errors import CircuitOpenError
from contextrag.shared.observability import get_logger
from contextrag.shared.observability.metrics import (
    recovery_attempts_total,
    recovery_duration_ms,
)
from contextrag.shared.resilience import CircuitBreaker, CircuitState, Deadline

logger = get_logger(__name__)


class ErrorCategory(str, Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    AUTH = "auth"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class RecoveryStrategy(str, Enum):
    RETRY = "retry"
    WAIT = "wait"
    FALLBACK = "fallback"
    DEGRADE = "degrade"
    CIRCUIT_BREAK = "circuit_break"
    SKIP = "skip"


# Category -> strategy; DEGRADE and FALLBACK are refined in determine_strategy
STRATEGY_TABLE: Dict[ErrorCategory, RecoveryStrategy] = {
    ErrorCategory.RATE_LIMIT: RecoveryStrategy.WAIT,
    ErrorCategory.NETWORK: RecoveryStrategy.RETRY,
    ErrorCategory.TIMEOUT: RecoveryStrategy.RETRY,
    ErrorCategory.SERVER_ERROR: RecoveryStrategy.DEGRADE,
    ErrorCategory.AUTH: RecoveryStrategy.SKIP,
    ErrorCategory.VALIDATION: RecoveryStrategy.SKIP,
    ErrorCategory.NOT_FOUND: RecoveryStrategy.SKIP,
    ErrorCategory.UNKNOWN: RecoveryStrategy.FALLBACK,
}

# Failures in these categories count against the circuit breaker
BREAKER_CATEGORIES = frozenset(
    {
        ErrorCategory.NETWORK,
        ErrorCategory.TIMEOUT,
        ErrorCategory.SERVER_ERROR,
        ErrorCategory.RATE_LIMIT,
    }
)

NETWORK_ERROR_CODES = frozenset(
    {"ETIMEDOUT", "ECONNREFUSED", "ECONNRESET", "ENOTFOUND", "EAI_AGAIN"}
)

_RATE_LIMIT_RE = re.compile(r"rate.?limit|too many requests", re.I)
_TIMEOUT_RE = re.compile(r"time(d)?.?out", re.I)
_NETWORK_RE = re.compile(r"connection|network|unreachable", re.I)


def _status_code(error: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    return None


def categorize_error(error: BaseException) -> ErrorCategory:
    """Map an exception to an ErrorCategory (status code, error code, type, message)."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return ErrorCategory.TIMEOUT

    status = _status_code(error)
    code = str(getattr(error, "code", "") or "")
    if status == 429 or code == "rate_limit_exceeded":
        return ErrorCategory.RATE_LIMIT
    if status is not None:
        if 500 <= status < 600:
            return ErrorCategory.SERVER_ERROR
        if status in (401, 403):
            return ErrorCategory.AUTH
        if status in (400, 422):
            return ErrorCategory.VALIDATION
        if status == 404:
            return ErrorCategory.NOT_FOUND

    if code in NETWORK_ERROR_CODES:
        return ErrorCategory.NETWORK
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return ErrorCategory.NETWORK

    message = str(error)
    if _RATE_LIMIT_RE.search(message):
        return ErrorCategory.RATE_LIMIT
    if _TIMEOUT_RE.search(message):
        return ErrorCategory.TIMEOUT
    if _NETWORK_RE.search(message):
        return ErrorCategory.NETWORK
    return ErrorCategory.UNKNOWN


@dataclass(frozen=True)
class RecoveryAttempt:
    service: str
    error_category: ErrorCategory
    strategy: RecoveryStrategy
    success: bool
    duration_ms: float
    attempts: int
    error: str
    timestamp: float = field(default_factory=time.time)
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "error_category": self.error_category.value,
            "strategy": self.strategy.value,
            "success": self.success,
            "duration_ms": round(self.duration_ms, 2),
            "attempts": self.attempts,
            "error": self.error,
            "timestamp": self.timestamp,
            "reason": self.reason,
        }


@dataclass
class _RecoveryContext:
    service: str
    error: BaseException
    category: ErrorCategory
    operation: Callable[[], Awaitable[Any]]
    fallback: Optional[Callable[[], Awaitable[Any]]]
    timeout: Optional[float]
    deadline: Deadline
    attempts: int = 0


class ErrorRecoveryCoordinator:
    """
    Categorizes failures of external calls and applies a recovery strategy.

    Args:
        config: Retry/backoff/history settings
        sleep: Awaitable sleep, injectable for tests
    """

    def __init__(
        self,
        config: Optional[RecoveryConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or RecoveryConfig()
        self._sleep = sleep
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._last_category: Dict[str, ErrorCategory] = {}
        self._lock = threading.Lock()
        self._history: deque = deque(maxlen=self.config.history_size)
        self._recent_success_ms: deque = deque(maxlen=self.config.average_window)
        self._total = 0
        self._successful = 0
        self._failed = 0
        self._by_category: Counter = Counter()
        self._by_strategy: Counter = Counter()

        self._handlers: Dict[
            RecoveryStrategy, Callable[[_RecoveryContext], Awaitable[Any]]
        ] = {
            RecoveryStrategy.RETRY: self._handle_retry,
            RecoveryStrategy.WAIT: self._handle_wait,
            RecoveryStrategy.FALLBACK: self._handle_fallback,
            RecoveryStrategy.DEGRADE: self._handle_degrade,
            RecoveryStrategy.CIRCUIT_BREAK: self._handle_circuit_break,
            RecoveryStrategy.SKIP: self._handle_skip,
        }

    # ------------------------------------------------------------------
    # Circuit breakers
    # ------------------------------------------------------------------

    def breaker(self, service: str) -> CircuitBreaker:
        with self._lock:
            if service not in self._breakers:
                cb = self.config.circuit_breaker
                self._breakers[service] = CircuitBreaker(
                    service,
                    failure_threshold=cb.failure_threshold,
                    recovery_timeout=cb.recovery_timeout_seconds,
                )
            return self._breakers[service]

    def determine_strategy(
        self, category: ErrorCategory, service: str, has_fallback: bool
    ) -> RecoveryStrategy:
        strategy = STRATEGY_TABLE[category]
        if strategy == RecoveryStrategy.DEGRADE and not has_fallback:
            if self.config.circuit_breaker.enabled and self.breaker(service).is_open():
                return RecoveryStrategy.CIRCUIT_BREAK
        elif strategy == RecoveryStrategy.FALLBACK and not has_fallback:
            return RecoveryStrategy.RETRY
        return strategy

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _invoke(
        self,
        operation: Callable[[], Awaitable[Any]],
        timeout: Optional[float],
        deadline: Deadline,
    ) -> Any:
        effective = deadline.cap(timeout)
        if effective is not None and effective <= 0:
            raise asyncio.TimeoutError("request deadline exceeded")
        if effective is None:
            return await operation()
        return await asyncio.wait_for(operation(), timeout=effective)

    async def execute(
        self,
        service: str,
        operation: Callable[[], Awaitable[Any]],
        *,
        fallback: Optional[Callable[[], Awaitable[Any]]] = None,
        timeout: Optional[float] = None,
        deadline: Optional[Deadline] = None,
    ) -> Any:
        """
        Run ``operation`` under the service breaker and recover on failure.

        Args:
            service: Logical service name (breaker and statistics key)
            operation: Zero-argument callable returning a fresh awaitable per call
            fallback: Optional zero-argument callable used by FALLBACK/DEGRADE
            timeout: Per-call timeout in seconds
            deadline: Request deadline; caps the timeout and every retry delay

        Raises:
            CircuitOpenError: Breaker open and no fallback
            Exception: The original (or last) error when recovery is exhausted
        """
        deadline = deadline or Deadline.unbounded()
        breaker = self.breaker(service)

        if self.config.circuit_breaker.enabled and not breaker.allow_request():
            return await self._short_circuit(service, fallback)

        try:
            result = await self._invoke(operation, timeout, deadline)
        except Exception as error:
            return await self._recover(
                _RecoveryContext(
                    service=service,
                    error=error,
                    category=categorize_error(error),
                    operation=operation,
                    fallback=fallback,
                    timeout=timeout,
                    deadline=deadline,
                )
            )
        breaker.record_success()
        return result

    async def _short_circuit(
        self, service: str, fallback: Optional[Callable[[], Awaitable[Any]]]
    ) -> Any:
        start = time.monotonic()
        error = CircuitOpenError(service)
        category = self._last_category.get(service, ErrorCategory.SERVER_ERROR)
        logger.warning("circuit_open_short_circuit", service=service, has_fallback=bool(fallback))
        if fallback is None:
            self._record(service, category, RecoveryStrategy.CIRCUIT_BREAK, False, start, 0, error)
            raise error
        try:
            result = await fallback()
        except Exception:
            self._record(service, category, RecoveryStrategy.FALLBACK, False, start, 1, error)
            raise
        self._record(service, category, RecoveryStrategy.FALLBACK, True, start, 1, error)
        return result

    def _note_failure(self, service: str, category: ErrorCategory) -> None:
        self._last_category[service] = category
        if category in BREAKER_CATEGORIES:
            self.breaker(service).record_failure()

    async def _recover(self, ctx: _RecoveryContext) -> Any:
        start = time.monotonic()
        self._note_failure(ctx.service, ctx.category)
        strategy = self.determine_strategy(ctx.category, ctx.service, ctx.fallback is not None)

        logger.info(
            "attempting_error_recovery",
            service=ctx.service,
            category=ctx.category.value,
            strategy=strategy.value,
            error=str(ctx.error),
        )

        try:
            result = await self._handlers[strategy](ctx)
        except Exception as final_error:
            self._record(
                ctx.service, ctx.category, strategy, False, start, ctx.attempts, ctx.error
            )
            logger.warning(
                "error_recovery_failed",
                service=ctx.service,
                category=ctx.category.value,
                strategy=strategy.value,
                attempts=ctx.attempts,
                error=str(final_error),
            )
            raise
        self._record(ctx.service, ctx.category, strategy, True, start, ctx.attempts, ctx.error)
        logger.info(
            "error_recovery_successful",
            service=ctx.service,
            category=ctx.category.value,
            strategy=strategy.value,
            attempts=ctx.attempts,
        )
        return result

    # ------------------------------------------------------------------
    # Strategy handlers
    # ------------------------------------------------------------------

    async def _reinvoke(self, ctx: _RecoveryContext) -> Any:
        ctx.attempts += 1
        breaker = self.breaker(ctx.service)
        try:
            result = await self._invoke(ctx.operation, ctx.timeout, ctx.deadline)
        except Exception as error:
            self._note_failure(ctx.service, categorize_error(error))
            raise
        breaker.record_success()
        return result

    def _delay_allowed(self, ctx: _RecoveryContext, delay_s: float, spent_ms: float) -> bool:
        if spent_ms + delay_s * 1000 > self.config.max_total_retry_ms:
            return False
        remaining = ctx.deadline.remaining()
        return remaining is None or remaining > delay_s

    async def _handle_retry(self, ctx: _RecoveryContext) -> Any:
        cfg = self.config
        started = time.monotonic()
        last_error: BaseException = ctx.error
        for attempt in range(cfg.max_attempts):
            delay_s = cfg.retry_delay_ms * (cfg.backoff_multiplier**attempt) / 1000.0
            spent_ms = (time.monotonic() - started) * 1000
            if not self._delay_allowed(ctx, delay_s, spent_ms):
                logger.debug(
                    "retry_budget_exhausted",
                    service=ctx.service,
                    attempts=ctx.attempts,
                    spent_ms=round(spent_ms, 1),
                )
                break
            await self._sleep(delay_s)
            try:
                return await self._reinvoke(ctx)
            except Exception as error:
                last_error = error
                if STRATEGY_TABLE[categorize_error(error)] == RecoveryStrategy.SKIP:
                    break
        raise last_error

    async def _handle_wait(self, ctx: _RecoveryContext) -> Any:
        cfg = self.config
        delay_ms = float(cfg.rate_limit_delay_ms)
        retry_after = getattr(ctx.error, "retry_after", None)
        if retry_after is not None:
            delay_ms = min(float(retry_after) * 1000, float(cfg.max_retry_after_ms))
        if not self._delay_allowed(ctx, delay_ms / 1000.0, 0.0):
            raise ctx.error
        await self._sleep(delay_ms / 1000.0)
        return await self._reinvoke(ctx)

    async def _handle_fallback(self, ctx: _RecoveryContext) -> Any:
        ctx.attempts += 1
        return await ctx.fallback()

    async def _handle_degrade(self, ctx: _RecoveryContext) -> Any:
        if ctx.fallback is None:
            raise ctx.error
        ctx.attempts += 1
        return await ctx.fallback()

    async def _handle_circuit_break(self, ctx: _RecoveryContext) -> Any:
        raise CircuitOpenError(ctx.service) from ctx.error

    async def _handle_skip(self, ctx: _RecoveryContext) -> Any:
        raise ctx.error

    # ------------------------------------------------------------------
    # Recording and statistics
    # ------------------------------------------------------------------

    def _record(
        self,
        service: str,
        category: ErrorCategory,
        strategy: RecoveryStrategy,
        success: bool,
        started: float,
        attempts: int,
        error: BaseException,
        reason: str = "",
    ) -> RecoveryAttempt:
        attempt = RecoveryAttempt(
            service=service,
            error_category=category,
            strategy=strategy,
            success=success,
            duration_ms=(time.monotonic() - started) * 1000,
            attempts=attempts,
            error=f"{type(error).__name__}: {error}",
            reason=reason,
        )
        with self._lock:
            self._history.append(attempt)
            self._total += 1
            self._by_category[category.value] += 1
            self._by_strategy[strategy.value] += 1
            if success:
                self._successful += 1
                self._recent_success_ms.append(attempt.duration_ms)
            else:
                self._failed += 1

        recovery_attempts_total.labels(
            service=service,
            category=category.value,
            strategy=strategy.value,
            result="success" if success else "failure",
        ).inc()
        recovery_duration_ms.labels(service=service, strategy=strategy.value).observe(
            attempt.duration_ms
        )
        return attempt

    def record_degradation(
        self,
        service: str,
        error: BaseException,
        *,
        category: Optional[ErrorCategory] = None,
        reason: str = "",
    ) -> RecoveryAttempt:
        """
        Record that a stage continued without ``service`` (partial results).

        Used when the owning stage, not the coordinator, absorbed the failure,
        e.g. a source cancelled at the retrieval join timeout.
        """
        category = category or categorize_error(error)
        self._last_category[service] = category
        logger.warning(
            "service_degraded",
            service=service,
            category=category.value,
            reason=reason,
            error=str(error),
        )
        return self._record(
            service,
            category,
            RecoveryStrategy.DEGRADE,
            True,
            time.monotonic(),
            0,
            error,
            reason=reason,
        )

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            finished = self._successful + self._failed
            recent = list(self._recent_success_ms)
            return {
                "total_attempts": self._total,
                "successful_recoveries": self._successful,
                "failed_recoveries": self._failed,
                "by_category": dict(self._by_category),
                "by_strategy": dict(self._by_strategy),
                "average_recovery_time_ms": sum(recent) / len(recent) if recent else 0.0,
                "success_rate": (self._successful / finished * 100) if finished else 0.0,
            }

    def get_history(
        self,
        service: Optional[str] = None,
        category: Optional[str] = None,
        strategy: Optional[str] = None,
        limit: int = 100,
    ) -> List[RecoveryAttempt]:
        """Most recent attempts (oldest first), optionally filtered."""
        with self._lock:
            items = list(self._history)
        if service:
            items = [a for a in items if a.service == service]
        if category:
            items = [a for a in items if a.error_category.value == category]
        if strategy:
            items = [a for a in items if a.strategy.value == strategy]
        return items[-limit:] if limit > 0 else []

    def get_degradation_status(self, window_seconds: float = 60.0) -> Dict[str, Any]:
        """Breaker state and recent failures per service."""
        cutoff = time.time() - window_seconds
        with self._lock:
            recent = [a for a in self._history if a.timestamp >= cutoff]
            breakers = dict(self._breakers)

        services: Dict[str, Dict[str, Any]] = {}
        for name, cb in breakers.items():
            snapshot = cb.snapshot()
            failures = [a for a in recent if a.service == name and not a.success]
            degradations = [
                a for a in recent if a.service == name and a.strategy == RecoveryStrategy.DEGRADE
            ]
            snapshot["recent_failures"] = len(failures)
            snapshot["recent_degradations"] = len(degradations)
            snapshot["degraded"] = bool(
                cb.state != CircuitState.CLOSED or failures or degradations
            )
            services[name] = snapshot

        degraded = sorted(name for name, s in services.items() if s["degraded"])
        return {
            "status": "degraded" if degraded else "healthy",
            "degraded_services": degraded,
            "services": services,
        }

    def reset_stats(self) -> None:
        with self._lock:
            self._history.clear()
            self._recent_success_ms.clear()
            self._total = self._successful = self._failed = 0
            self._by_category.clear()
            self._by_strategy.clear()
            self._last_category.clear()
            breakers = list(self._breakers.values())
        for cb in breakers:
            cb.reset()
        logger.info("recovery_stats_reset")

    def breaker_states(self) -> List[Tuple[str, str]]:
        with self._lock:
            return [(name, cb.state.value) for name, cb in self._breakers.items()]
