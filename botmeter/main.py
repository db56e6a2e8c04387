"""
Main Application - FastAPI application setup.

Composition root: builds the key-value client, the scheduler registry and
the scheduler once per process and exposes them on app.state.
"""

import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from starlette.routing import Match

from botmeter.api.routes import router
from botmeter.config import settings
from botmeter.db.session import close_engines
from botmeter.observability import get_logger, log_context, metrics, setup_logging, setup_tracing
from botmeter.observability.tracing import instrument_fastapi
from botmeter.scheduler.kv import create_redis_client
from botmeter.scheduler.registry import build_default_registry
from botmeter.tasks import reengage  # noqa: F401  registers actors on the broker

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        scheduler_provider=settings.scheduler_provider,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
    )

    if settings.run_migrations_on_startup:
        from botmeter.db.migration_runner import run_migrations

        run_migrations()

    app.state.redis = create_redis_client()
    app.state.scheduler_registry = build_default_registry(app.state.redis)
    app.state.scheduler = app.state.scheduler_registry.get(settings.scheduler_provider)

    yield

    # Shutdown
    logger.info("application_shutting_down")
    await app.state.redis.aclose()
    await close_engines()
    logger.info("connections_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Log detailed validation errors for debugging."""
    sanitized_errors = []
    for error in exc.errors():
        sanitized = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        # ctx may contain non-serializable objects
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(
        status_code=422,
        content={"detail": sanitized_errors},
    )


# Setup tracing
setup_tracing()
instrument_fastapi(app)


UNMATCHED_ROUTE = "unmatched"


def _route_label(request: Request) -> str:
    """
    Route template such as /v1/organizations/{organization_id}/credits.

    Paths that match no route share one label so ids never become label values.
    """
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match is Match.FULL:
            return getattr(route, "path", UNMATCHED_ROUTE)
    return UNMATCHED_ROUTE


@app.middleware("http")
async def request_metrics_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Time every request and tag its log entries with the caller's request id."""
    if request.url.path == "/metrics":
        return await call_next(request)

    started = time.perf_counter()
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    method = request.method
    endpoint = _route_label(request)
    in_progress = metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method)
    in_progress.inc()

    with log_context(request_id=request_id):
        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - started
            metrics.record_http_request(endpoint, method, 500, duration)
            metrics.record_error(type(e).__name__, "http_request")
            logger.error(
                "request_failed",
                method=method,
                path=request.url.path,
                duration_seconds=duration,
                exc_info=True,
            )
            raise
        finally:
            in_progress.dec()

        duration = time.perf_counter() - started
        metrics.record_http_request(endpoint, method, response.status_code, duration)
        logger.info(
            "request_completed",
            method=method,
            path=request.url.path,
            status_code=response.status_code,
            duration_seconds=round(duration, 4),
        )

    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(router)


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    if not settings.metrics_enabled:
        return PlainTextResponse("", status_code=404)
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "botmeter.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
