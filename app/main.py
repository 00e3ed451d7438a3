"""Download Jobs Service - FastAPI application."""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from http import HTTPStatus
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.rate_limit import SimpleRateLimiter
from app.api.v1 import downloads as downloads_api
from app.api.v1 import health as health_api
from app.api.v1.health import router as health_router
from app.api.v1.router import v1_router
from app.config import Settings, settings
from app.core.errors import (
    NotFoundError,
    ServiceUnavailable,
    TransientInfraError,
    ValidationError,
)
from app.jobs.celery_queue import CeleryQueue
from app.jobs.dispatcher import JobDispatcher
from app.jobs.in_process_queue import InProcessQueue
from app.jobs.processor import DownloadJobProcessor
from app.jobs.status import StatusReader
from app.jobs.store import InMemoryJobStore, JobStore, RedisJobStore
from app.jobs.submitter import JobSubmitter
from app.observability.errors import ErrorReporter, LoggingErrorReporter
from app.observability.logging import configure_logging
from app.observability.middleware import (
    RequestContextMiddleware,
    RequestTimeoutMiddleware,
    get_request_id,
)
from app.storage.availability import AvailabilityProber, UrlIssuer
from app.storage.s3_client import S3ObjectStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: JobStore
    dispatcher: JobDispatcher
    submitter: JobSubmitter
    status_reader: StatusReader
    prober: AvailabilityProber
    issuer: UrlIssuer
    reporter: ErrorReporter
    object_store: Optional[S3ObjectStore] = None


def build_services(config: Settings, reporter: Optional[ErrorReporter] = None) -> Services:
    """Composition root: pick the store and queue backends once, from config.

    Redis configured -> Redis job store + Celery queue (workers run separately).
    Otherwise        -> in-memory job store + in-process worker pool.
    """
    reporter = reporter or LoggingErrorReporter()
    object_store = S3ObjectStore.from_settings(config) if config.s3_bucket_name else None
    prober = AvailabilityProber(object_store)
    issuer = UrlIssuer(object_store, expiry_seconds=config.presigned_url_expiry_seconds)

    if config.redis_url:
        from app.workers.celery_app import TASK_NAME, create_celery_app

        store = RedisJobStore.from_url(config.redis_url, ttl_seconds=config.job_ttl_seconds)
        dispatcher = CeleryQueue(create_celery_app(config), TASK_NAME)
    else:
        store = InMemoryJobStore(ttl_seconds=config.job_ttl_seconds)
        processor = DownloadJobProcessor.from_settings(config, store, prober, issuer, reporter)
        dispatcher = InProcessQueue(
            processor.run,
            processor.fail_exhausted,
            concurrency=config.worker_concurrency,
            max_retries=config.queue_max_retries,
            retry_backoff_seconds=config.queue_retry_backoff_seconds,
            retry_backoff_max_seconds=config.queue_retry_backoff_max_seconds,
            shutdown_grace_seconds=config.shutdown_grace_seconds,
        )

    return Services(
        store=store,
        dispatcher=dispatcher,
        submitter=JobSubmitter.from_settings(config, store, dispatcher),
        status_reader=StatusReader(store),
        prober=prober,
        issuer=issuer,
        reporter=reporter,
        object_store=object_store,
    )


async def shutdown_services(services: Services) -> None:
    """Stop accepting work, stop the workers, then release connections in order."""
    services.submitter.close()
    await services.dispatcher.stop()
    logger.info("Job dispatcher stopped")
    await services.store.close()
    logger.info("Job store closed")
    if services.object_store is not None:
        services.object_store.close()
        logger.info("S3 client closed")


def _error_response(request: Request, status_code: int, message: str, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": HTTPStatus(status_code).phrase,
            "message": message,
            "requestId": get_request_id(request),
        },
        headers=headers,
    )


def create_app(config: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        configure_logging(config.log_level)
        svc = services or build_services(config)
        logger.info("Starting Download Jobs Service on port %d", config.port)
        logger.info("Environment: %s", config.environment)
        logger.info(
            "Job store: %s | Queue: %s | Storage: %s",
            type(svc.store).__name__,
            type(svc.dispatcher).__name__,
            "mock" if svc.prober.mock_mode else config.s3_bucket_name,
        )

        await svc.dispatcher.start()
        downloads_api.set_services(svc.submitter, svc.status_reader, svc.prober)
        health_api.set_dependencies(svc.prober, svc.store)
        app.state.services = svc

        yield

        logger.info("Shutting down Download Jobs Service")
        await shutdown_services(svc)
        logger.info("Graceful shutdown completed")

    production = config.environment == "production"
    app = FastAPI(
        title="Download Jobs Service",
        description="Asynchronous download jobs with polling and presigned URLs",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None if production else "/docs",
        openapi_url=None if production else "/openapi.json",
    )

    limiter = SimpleRateLimiter(
        max_requests=config.rate_limit_max_requests,
        window_seconds=config.rate_limit_window_ms / 1000,
    )

    # Middleware added later wraps the earlier ones:
    # CORS -> request context -> rate limit -> timeout -> routes
    app.add_middleware(RequestTimeoutMiddleware, timeout_ms=config.request_timeout_ms)

    @app.middleware("http")
    async def rate_limit(request: Request, call_next):
        try:
            remaining = limiter.check(request)
        except StarletteHTTPException as exc:
            return _error_response(request, exc.status_code, exc.detail, headers=exc.headers)
        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limiter.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origin_list,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining"],
        max_age=86400,
    )

    @app.exception_handler(ValidationError)
    async def on_validation_error(request: Request, exc: ValidationError):
        return _error_response(request, 400, exc.message)

    @app.exception_handler(RequestValidationError)
    async def on_request_validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request"
        return _error_response(request, 400, message)

    @app.exception_handler(NotFoundError)
    async def on_not_found(request: Request, exc: NotFoundError):
        return _error_response(request, 404, exc.message)

    @app.exception_handler(TransientInfraError)
    async def on_transient(request: Request, exc: TransientInfraError):
        logger.warning("Transient failure on %s: %s", request.url.path, exc)
        return _error_response(request, 503, "Service temporarily unavailable, retry later")

    @app.exception_handler(ServiceUnavailable)
    async def on_unavailable(request: Request, exc: ServiceUnavailable):
        return _error_response(request, 503, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def on_http_exception(request: Request, exc: StarletteHTTPException):
        return _error_response(request, exc.status_code, str(exc.detail), headers=exc.headers)

    @app.exception_handler(Exception)
    async def on_unhandled(request: Request, exc: Exception):
        svc = getattr(request.app.state, "services", None)
        reporter = svc.reporter if svc else LoggingErrorReporter()
        reporter.capture(exc, path=request.url.path, request_id=get_request_id(request))
        message = str(exc) if config.is_development else "An unexpected error occurred"
        return _error_response(request, 500, message)

    @app.get("/")
    async def root():
        return {"message": "Download Jobs Service"}

    app.include_router(health_router, tags=["health"])  # GET /health at root
    app.include_router(v1_router)  # All /v1/* endpoints
    return app


app = create_app()
