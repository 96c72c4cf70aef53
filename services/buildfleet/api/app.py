"""
FastAPI application factory for the buildfleet API server.

Startup initializes the Kubernetes client and pool store. With
``controller.enabled`` the reconciliation loop also runs here, as a
background task stopped before the process exits.
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from buildfleet.config import settings
from buildfleet.k8s.kubernetes import init_k8s
from buildfleet.k8s.protocol import StoreError
from buildfleet.logging_config import configure_logging, get_logger

from .dependencies import init_ca_manager, init_pool_store
from .health import router as health_router

logger = get_logger(__name__)

VERSION = "0.1.0"
CONTROLLER_STOP_TIMEOUT = 30.0


def _start_controller(app: FastAPI, stop: asyncio.Event) -> None:
    from buildfleet.controller.manager import build_manager

    manager = build_manager()
    app.state.controller_task = asyncio.create_task(manager.run(stop), name="controller")
    logger.info("Controller loop started")


async def _stop_controller(app: FastAPI, stop: asyncio.Event) -> None:
    task: asyncio.Task | None = app.state.controller_task
    if task is None:
        return
    stop.set()
    try:
        await asyncio.wait_for(task, timeout=CONTROLLER_STOP_TIMEOUT)
    except TimeoutError:
        logger.warning("Controller loop did not stop in time", timeout=CONTROLLER_STOP_TIMEOUT)
        task.cancel()
    logger.info("Controller loop stopped")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    configure_logging(
        json_logs=settings.json_logs, log_level=settings.log_level, app_name=settings.app_name
    )
    logger.info("Starting buildfleet API server", version=VERSION)

    init_k8s()
    init_pool_store()
    init_ca_manager()

    stop = asyncio.Event()
    app.state.controller_task = None
    if settings.controller.enabled:
        _start_controller(app, stop)

    yield

    await _stop_controller(app, stop)
    logger.info("Shutting down buildfleet API server")


async def request_id_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Bind a request ID to every log line of the request and echo it back."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(request_id=request_id)
    try:
        response = await call_next(request)
    finally:
        structlog.contextvars.unbind_contextvars("request_id")
    response.headers["X-Request-ID"] = request_id
    return response


async def store_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Kubernetes API request failed", error=str(exc), path=request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Kubernetes API unavailable"})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception", exc_info=exc, path=request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="buildfleet API",
        description="BuildKit worker pool controller",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    app.middleware("http")(request_id_middleware)
    app.add_exception_handler(StoreError, store_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    # Probes stay unprefixed
    app.include_router(health_router)

    from buildfleet.api.routers.certs import router as certs_router
    from buildfleet.api.routers.pools import router as pools_router

    app.include_router(pools_router, prefix=settings.api_prefix)
    app.include_router(certs_router, prefix=settings.api_prefix)

    return app


app = create_application()
