"""
Main Application - FastAPI application setup.

The lifespan applies migrations and runs the dispatcher loop next to the API.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from fulfillment.api.admin_routes import router as admin_router
from fulfillment.api.agent_routes import router as agent_router
from fulfillment.api.routes import router
from fulfillment.config import settings
from fulfillment.db.migration_runner import run_migrations
from fulfillment.db.session import close_engines, get_write_session_factory
from fulfillment.observability import get_logger, metrics, setup_logging, setup_tracing
from fulfillment.observability.tracing import instrument_fastapi
from fulfillment.services.dispatcher import Dispatcher

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


async def _stop_dispatcher(task: asyncio.Task[None] | None, stop: asyncio.Event) -> None:
    if task is None:
        return
    stop.set()
    await task
    logger.info("dispatcher_loop_joined")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Startup: migrations, then the dispatcher loop when enabled.
    Shutdown: stop the loop, then close database engines.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        dispatcher_enabled=settings.dispatcher_enabled,
    )

    if settings.migrate_on_startup:
        await asyncio.to_thread(run_migrations)

    stop = asyncio.Event()
    dispatcher_task: asyncio.Task[None] | None = None
    if settings.dispatcher_enabled:
        dispatcher = Dispatcher(get_write_session_factory())
        dispatcher_task = asyncio.create_task(dispatcher.run_forever(stop))

    yield

    logger.info("application_shutting_down")
    await _stop_dispatcher(dispatcher_task, stop)
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Log detailed validation errors for debugging."""
    sanitized_errors: list[dict[str, Any]] = []
    for error in exc.errors():
        sanitized: dict[str, Any] = {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
        }
        # ctx may hold non-serializable objects
        if "ctx" in error:
            sanitized["ctx"] = {k: str(v) for k, v in error["ctx"].items()}
        sanitized_errors.append(sanitized)

    logger.warning(
        "validation_error",
        path=request.url.path,
        method=request.method,
        errors=sanitized_errors,
    )
    return JSONResponse(status_code=422, content={"detail": sanitized_errors})


# Setup tracing
setup_tracing()
instrument_fastapi(app)


@app.middleware("http")
async def logging_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Log all HTTP requests with timing."""
    start_time = time.time()
    correlation_id = request.headers.get("X-Request-ID", "unknown")
    endpoint = request.url.path
    method = request.method

    metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).inc()
    try:
        response = await call_next(request)
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, response.status_code, duration)
        logger.info(
            "http_request_completed",
            method=method,
            path=endpoint,
            status_code=response.status_code,
            duration_seconds=duration,
            correlation_id=correlation_id,
        )
        return response
    except Exception as e:
        duration = time.time() - start_time
        metrics.record_http_request(endpoint, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")
        logger.error(
            "http_request_failed",
            method=method,
            path=endpoint,
            error=str(e),
            duration_seconds=duration,
            correlation_id=correlation_id,
            exc_info=True,
        )
        raise
    finally:
        metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method).dec()


# Register routes
app.include_router(router)  # Customer requests and wallets
app.include_router(agent_router)  # Agent work surface
app.include_router(admin_router)  # Operator surface


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

    Returns metrics in Prometheus text format, 404 when metrics are disabled.
    """
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled", status_code=404)
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "fulfillment.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
