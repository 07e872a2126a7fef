# FastAPI surface for the retrieval service
# POST /v1/context, recovery/cache observability, worker pool jobs, health, metrics

import contextlib
import time
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from contextrag import __version__
from contextrag.services.cache_layer import InvalidationTrigger
from contextrag.services.retrieval_service import RetrievalService, build_retrieval_service
from contextrag.shared.config import init_config
from contextrag.shared.connections import close_connections
from contextrag.shared.errors import QueueFullError, RetrievalUnavailableError
from contextrag.shared.observability import (
    get_correlation_id,
    get_logger,
    set_correlation_id,
    setup_logging,
    setup_metrics,
)
from contextrag.shared.observability.metrics import PrometheusMiddleware, get_metrics

from .models import (
    CacheVersionResponse,
    ClearCacheRequest,
    ContextRequest,
    ContextResponse,
    ErrorResponse,
    HealthResponse,
    JobAccepted,
    JobRequest,
)

logger = get_logger(__name__)


def _service(request: Request) -> RetrievalService:
    return request.app.state.service


def create_app(service: Optional[RetrievalService] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Without ``service`` the configuration is loaded from ``config/{ENV}.yaml``
    at startup and the providers are built from it.
    """

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_service = app.state.service is None
        if owns_service:
            config, settings = init_config()
            setup_logging(settings.log_level or config.app.log_level)
            setup_metrics(settings, version=__version__)
            app.state.service = build_retrieval_service(config, settings)
        logger.info("Starting contextrag API", version=__version__)
        await app.state.service.worker_pool.start()
        try:
            yield
        finally:
            logger.info("Shutting down contextrag API")
            await app.state.service.close()
            if owns_service:
                close_connections()
                app.state.service = None

    app = FastAPI(
        title="contextrag",
        version=__version__,
        description="Retrieval and context assembly for RAG answer synthesis",
        lifespan=lifespan,
    )
    app.state.service = service
    app.add_middleware(PrometheusMiddleware)

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        """Add correlation ID to request context"""
        corr_id = request.headers.get("X-Correlation-ID")
        if corr_id:
            set_correlation_id(corr_id)
        else:
            corr_id = get_correlation_id()

        start_time = time.time()
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = corr_id
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=round((time.time() - start_time) * 1000, 2),
        )
        return response

    @app.exception_handler(RetrievalUnavailableError)
    async def retrieval_unavailable_handler(request: Request, exc: RetrievalUnavailableError):
        body = ErrorResponse(
            error=str(exc), code=exc.code, details={"failed_sources": exc.failed_sources}
        )
        return JSONResponse(status_code=503, content=body.model_dump())

    @app.exception_handler(QueueFullError)
    async def queue_full_handler(request: Request, exc: QueueFullError):
        body = ErrorResponse(error=str(exc), code=exc.code)
        return JSONResponse(status_code=429, content=body.model_dump())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        body = ErrorResponse(error=str(exc), code="INVALID_REQUEST")
        return JSONResponse(status_code=422, content=body.model_dump())

    # Retrieval

    @app.post("/v1/context", response_model=ContextResponse)
    async def retrieve_context(body: ContextRequest, request: Request):
        service = _service(request)
        window = await service.retrieve_context(body.query, body.options)
        return ContextResponse(
            window=window.to_dict(),
            prompt_context=(
                service.format_context_for_prompt(window) if body.include_prompt else None
            ),
        )

    # Worker pool jobs

    @app.post("/v1/jobs", response_model=JobAccepted, status_code=202)
    async def submit_job(body: JobRequest, request: Request):
        pool = _service(request).worker_pool
        job_id = await pool.submit(
            {"query": body.query, "options": body.options.model_dump()},
            priority=body.priority,
        )
        return JobAccepted(job_id=job_id, state=pool.get_job(job_id).state.value)

    @app.get("/v1/jobs/stats")
    async def job_stats(request: Request):
        return _service(request).worker_pool.stats()

    @app.get("/v1/jobs/{job_id}")
    async def job_status(job_id: str, request: Request):
        status = _service(request).worker_pool.get_job_status(job_id)
        if status is None:
            raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
        return status

    @app.delete("/v1/jobs/{job_id}")
    async def cancel_job(job_id: str, request: Request):
        pool = _service(request).worker_pool
        if pool.get_job(job_id) is None:
            raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
        if not pool.cancel_job(job_id):
            raise HTTPException(
                status_code=409, detail=f"Job {job_id} is not waiting or delayed"
            )
        return pool.get_job_status(job_id)

    # Error recovery

    @app.get("/v1/recovery/stats")
    async def recovery_stats(request: Request):
        service = _service(request)
        return {
            **service.get_recovery_stats(),
            "degradation": service.get_degradation_status(),
        }

    @app.get("/v1/recovery/history")
    async def recovery_history(
        request: Request,
        service: Optional[str] = None,
        category: Optional[str] = None,
        strategy: Optional[str] = None,
        limit: int = Query(default=100, ge=0, le=10000),
    ):
        return _service(request).get_recovery_history(service, category, strategy, limit)

    @app.post("/v1/recovery/reset")
    async def recovery_reset(request: Request):
        _service(request).reset_recovery_stats()
        return {"status": "reset"}

    # Cache

    @app.get("/v1/cache/stats")
    async def cache_stats(request: Request):
        return _service(request).get_cache_stats()

    @app.get("/v1/cache/version", response_model=CacheVersionResponse)
    async def cache_version(request: Request):
        return CacheVersionResponse(version=_service(request).get_cache_version())

    @app.get("/v1/cache/invalidations")
    async def cache_invalidations(
        request: Request, limit: int = Query(default=100, ge=0, le=10000)
    ):
        return _service(request).get_invalidation_history(limit)

    @app.post("/v1/cache/invalidate")
    async def cache_invalidate(trigger: InvalidationTrigger, request: Request):
        return _service(request).invalidate_cache(trigger).to_dict()

    @app.post("/v1/cache/clear")
    async def cache_clear(request: Request, body: Optional[ClearCacheRequest] = None):
        reason = body.reason if body else ""
        return _service(request).clear_cache(reason).to_dict()

    # Health and metrics

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request):
        return HealthResponse(
            timestamp=datetime.now(timezone.utc).isoformat(),
            **_service(request).health(),
        )

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint"""
        return Response(content=get_metrics(), media_type="text/plain; version=0.0.4")

    return app


def main() -> None:
    """Console entry point: serve the API with uvicorn."""
    config, settings = init_config()
    setup_logging(settings.log_level or config.app.log_level)
    uvicorn.run(
        "contextrag.api.app:create_app",
        factory=True,
        host=config.app.host,
        port=config.app.port,
        log_level=config.app.log_level.lower(),
    )


if __name__ == "__main__":
    main()
