"""
Main FastAPI application.

Marketplace checkout API with:
- CORS configuration
- Domain error mapping
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from marketplace_core import __version__
from marketplace_core.config import get_settings
from marketplace_core.core.exceptions import MarketplaceError
from marketplace_core.database.connection import close_db, get_session_factory, init_db
from marketplace_core.monitoring.logging import setup_logging

from .dependencies import Services, build_services
from .routes import (
    checkout_router,
    jobs_router,
    monitoring_router,
    partner_router,
    webhook_router,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Builds the services unless they were injected, and tears them down on shutdown.
    """
    settings = get_settings()
    logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

    owns_services = getattr(app.state, "services", None) is None
    if owns_services:
        try:
            await init_db()
            logger.info("database_initialized")
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            raise
        app.state.services = build_services(settings, get_session_factory())

    yield

    logger.info("application_shutdown")
    if owns_services:
        try:
            await app.state.services.aclose()
            await close_db()
            logger.info("database_connections_closed")
        except Exception as e:
            logger.error("application_shutdown_error", error=str(e))


async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = str(uuid.uuid4())
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


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    """Map domain errors to their HTTP status and a client-safe body."""
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        "request_rejected",
        error_code=exc.error_code,
        error=exc.message,
        path=request.url.path,
        **{key: value for key, value in exc.context.items() if value is not None},
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "internal_error",
                "message": "An unexpected error occurred. Please try again later.",
                "type": "InternalServerError",
            }
        },
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        services: Pre-built services; when given, startup skips database
            initialisation and shutdown leaves them open
    """
    settings = get_settings()

    app = FastAPI(
        title="Marketplace Checkout Core",
        description=(
            "Split-payment checkout for a multi-partner marketplace: commission and tax "
            "pricing, hosted payment sessions, order expiration and push notifications."
        ),
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    if services is not None:
        app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(add_request_id_middleware)
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(checkout_router)
    app.include_router(partner_router)
    app.include_router(webhook_router)
    app.include_router(jobs_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": "marketplace-core",
            "version": __version__,
            "status": "operational",
            "environment": settings.app_env,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def main() -> None:
    import uvicorn

    setup_logging()
    settings = get_settings()
    uvicorn.run(
        "marketplace_core.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
