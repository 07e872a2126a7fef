# Prometheus metrics for the contextrag retrieval pipeline

from typing import Callable

from prometheus_client import Counter, Gauge, Histogram, Info, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from ..config import Settings
from .logging import get_logger

logger = get_logger(__name__)

# ===== Request metrics =====
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ===== Retrieval metrics =====
retrieval_requests_total = Counter(
    "retrieval_requests_total",
    "Total retrieve_context calls",
    ["status"],  # success, degraded, cache_hit, error
)

retrieval_duration_seconds = Histogram(
    "retrieval_duration_seconds",
    "End-to-end retrieve_context duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0, 10.0),
)

retrieval_stage_duration_seconds = Histogram(
    "retrieval_stage_duration_seconds",
    "Per-stage pipeline duration in seconds",
    ["stage"],  # analyze, expand, retrieve, web, rerank, diversity, dedup, assemble
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

retrieval_candidates = Histogram(
    "retrieval_candidates",
    "Number of candidates surviving each stage",
    ["stage"],
    buckets=(0, 1, 3, 5, 10, 20, 50, 100),
)

retrieval_degraded_total = Counter(
    "retrieval_degraded_total",
    "Degraded retrieval results by reason",
    ["reason"],
)

context_tokens = Histogram(
    "context_tokens",
    "Context tokens per assembled window",
    buckets=(100, 250, 500, 1000, 2000, 4000, 8000, 16000),
)

# ===== Cache metrics =====
cache_operations_total = Counter(
    "cache_operations_total",
    "Total cache operations",
    ["operation", "layer", "result"],
)

cache_hit_rate = Gauge(
    "cache_hit_rate",
    "Cache hit rate (rolling average)",
    ["layer"],
)

cache_version = Gauge(
    "cache_version",
    "Current global cache version",
)

cache_invalidations_total = Counter(
    "cache_invalidations_total",
    "Total cache invalidations",
    ["trigger_type", "result"],
)

# ===== Recovery metrics =====
recovery_attempts_total = Counter(
    "recovery_attempts_total",
    "Recovery attempts by service, category and strategy",
    ["service", "category", "strategy", "result"],
)

recovery_duration_ms = Histogram(
    "recovery_duration_ms",
    "Recovery duration in milliseconds",
    ["service", "strategy"],
    buckets=(1, 10, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["service"],
)

# ===== Provider metrics =====
provider_requests_total = Counter(
    "provider_requests_total",
    "Total external provider calls",
    ["provider", "operation", "status"],
)

provider_latency_ms = Histogram(
    "provider_latency_ms",
    "External provider latency in milliseconds",
    ["provider", "operation"],
    buckets=(10, 25, 50, 100, 250, 500, 1000, 2500, 5000),
)

# ===== Worker pool metrics =====
worker_queue_depth = Gauge(
    "worker_queue_depth",
    "Jobs waiting in the worker pool queue",
)

worker_jobs_total = Counter(
    "worker_jobs_total",
    "Worker pool jobs by outcome",
    ["status"],  # completed, failed, retried, cancelled
)

worker_job_duration_seconds = Histogram(
    "worker_job_duration_seconds",
    "Worker pool job duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0),
)

# ===== Service info =====
service_info = Info(
    "contextrag",
    "contextrag retrieval service information",
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware to collect HTTP request metrics for Prometheus.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Skip metrics endpoint itself
        if request.url.path == "/metrics":
            return await call_next(request)

        method = request.method
        endpoint = request.url.path

        with http_request_duration_seconds.labels(
            method=method, endpoint=endpoint
        ).time():
            response = await call_next(request)

        http_requests_total.labels(
            method=method,
            endpoint=endpoint,
            status=response.status_code,
        ).inc()

        return response


def setup_metrics(settings: Settings, version: str = "0.1.0") -> None:
    """
    Setup Prometheus metrics collection.

    Args:
        settings: Application settings
        version: Service version reported in the info metric
    """
    logger.info("Setting up Prometheus metrics")
    service_info.info({"version": version, "environment": settings.env})
    logger.info("Prometheus metrics enabled")


def get_metrics() -> bytes:
    """
    Get current metrics in Prometheus exposition format.

    Returns:
        Metrics as bytes
    """
    return generate_latest()
