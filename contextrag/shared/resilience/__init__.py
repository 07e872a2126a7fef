"""Resilience primitives: circuit breakers, deadlines and rate limiting."""

from contextrag.shared.resilience.circuit_breaker import CircuitBreaker, CircuitState
from contextrag.shared.resilience.deadline import Deadline
from contextrag.shared.resilience.rate_limiter import SlidingWindowRateLimiter

__all__ = ["CircuitBreaker", "CircuitState", "Deadline", "SlidingWindowRateLimiter"]
