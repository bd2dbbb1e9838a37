"""
Main FastAPI application.

Payment orchestration API with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics

Run with ``uvicorn memberpay.api.main:create_app --factory``.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import httpx
import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from memberpay import __version__
from memberpay.config import Settings, get_settings
from memberpay.core.orchestrator import build_orchestrator
from memberpay.database.connection import (
    close_db,
    get_engine,
    get_session_factory,
    init_db,
)
from memberpay.integrations.gateways import build_gateways
from memberpay.monitoring.health import HealthCheck
from memberpay.monitoring.logging import setup_logging

from .routes import monitoring_router, payment_router, webhook_router

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the orchestrator on startup, releases connections on shutdown.
    """
    settings: Settings = app.state.settings
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        payment_environment=settings.payment_environment,
        gateways=settings.get_enabled_gateways(),
    )

    try:
        await init_db(get_engine(settings))
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    session_factory = get_session_factory(settings)
    http_client = httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)
    gateways = build_gateways(settings, http_client)
    app.state.orchestrator = build_orchestrator(settings, session_factory, gateways)
    app.state.health_check = HealthCheck(session_factory, gateways)

    yield

    logger.info("application_shutdown")
    await http_client.aclose()
    await close_db()
    logger.info("database_connections_closed")


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )
    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled exceptions."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use; loaded from the environment if omitted
    """
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title="memberpay",
        description=(
            "Multi-gateway payment orchestration for memberships, assistance tokens "
            "and marketplace listing fees."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        openapi_url=None if settings.is_production else "/openapi.json",
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_request_id_middleware)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(payment_router)
    app.include_router(webhook_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "payment_environment": settings.payment_environment,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def main() -> None:
    """Run the API server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "memberpay.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
