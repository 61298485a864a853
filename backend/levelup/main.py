"""Levelup payments backend: FastAPI application entry point."""

import asyncio
import signal
import uuid
from contextlib import asynccontextmanager

# CRITICAL ORDER: configure_structlog MUST be called before all other app imports
# to avoid the structlog cache pitfall (structlog caches the processor chain on first use).
from levelup.core.logging import configure_structlog
from levelup.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from levelup.api.routes import api_router
from levelup.core.config import get_settings
from levelup.db import init_db, close_db
from levelup.db.seed import seed_licenses
from levelup.middleware.correlation import (
    setup_correlation_middleware,
    get_correlation_id,
)
from levelup.services.exclusive_lock import ExclusiveLockManager, ExclusiveLockSweeper

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Graceful shutdown flag: SIGTERM handler flips this so ALB health check returns 503
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    # Startup
    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db()
    logger.info("db_initialized")

    await seed_licenses()
    logger.info("licenses_seeded")

    sweeper = ExclusiveLockSweeper(ExclusiveLockManager())
    sweeper_task = asyncio.create_task(sweeper.run())

    yield

    # Shutdown
    logger.info("shutdown_begin")
    sweeper.stop()
    await sweeper_task
    await close_db()
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking.

    Logs errors server-side with full context, returns sanitized response to client.
    """
    debug_id = str(uuid.uuid4())
    corr_id = get_correlation_id()

    user_id = getattr(request.state, "user_id", None)

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=corr_id,
        path=request.url.path,
        method=request.method,
        user_id=user_id,
        detail=exc.detail,
    )

    # Return sanitized response (no stack traces, no secrets)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())
    corr_id = get_correlation_id()

    user_id = getattr(request.state, "user_id", None)

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=corr_id,
        path=request.url.path,
        method=request.method,
        user_id=user_id,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    # Return generic 500 (no internal details leaked)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Levelup Music payments: checkout, Stripe webhooks and contract delivery",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url, *settings.cors_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    # Exception handlers
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    # Include API routes
    app.include_router(api_router, prefix="/api")

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "levelup.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
