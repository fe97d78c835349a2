"""
GramVault - FastAPI Application
===============================

Control API over the upload engine: application factory, structured
logging, service lifecycle and error mapping.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gramvault.api import activity, batches, session
from gramvault.api.deps import Services, build_services
from gramvault.core.client.errors import (
    AbuseDetected,
    BatchNotFound,
    ChallengeRequired,
    GramVaultError,
    HttpError,
    InvalidTransition,
    LockedOut,
    NetworkFailure,
    NotLoggedIn,
    RateLimited,
    SessionExpired,
)
from gramvault.core.config import settings
from gramvault.core.database import close_db, init_db
from gramvault.core.schemas import ErrorResponse, HealthResponse

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


ERROR_STATUS = {
    LockedOut: status.HTTP_423_LOCKED,
    AbuseDetected: status.HTTP_423_LOCKED,
    ChallengeRequired: status.HTTP_423_LOCKED,
    RateLimited: status.HTTP_429_TOO_MANY_REQUESTS,
    SessionExpired: status.HTTP_401_UNAUTHORIZED,
    NotLoggedIn: status.HTTP_401_UNAUTHORIZED,
    InvalidTransition: status.HTTP_409_CONFLICT,
    BatchNotFound: status.HTTP_404_NOT_FOUND,
    NetworkFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
    HttpError: status.HTTP_502_BAD_GATEWAY,
}


# ==========================================================================
# Service Lifecycle
# ==========================================================================

async def start_services(services: Services) -> None:
    """Load identity/session, restore guard state and reconcile batches."""
    await services.client.start()
    phases = await services.orchestrator.initialize()
    logger.info("Batches reconciled", count=len(phases))
    if not settings.is_test:
        services.monitor.start()


async def stop_services(services: Services) -> None:
    await services.orchestrator.shutdown()
    await services.monitor.stop()
    await services.client.close()


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Initialize database
    - Build services, restore persisted state, reconcile batches

    Shutdown:
    - Stop batch tasks and the network probe
    - Close HTTP clients and database connections
    """
    logger.info("Starting GramVault", version=settings.APP_VERSION)

    await init_db()
    logger.info("Database initialized")

    services = build_services()
    await start_services(services)
    app.state.services = services

    yield

    logger.info("Shutting down GramVault")
    await stop_services(services)
    await close_db()
    logger.info("Database connections closed")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Paced, abuse-aware photo upload and archive service",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(GramVaultError)
    async def gramvault_exception_handler(request: Request, exc: GramVaultError) -> JSONResponse:
        """Map domain errors to HTTP responses."""
        status_code = next(
            (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)),
            status.HTTP_400_BAD_REQUEST,
        )
        logger.warning(
            "Request failed",
            path=request.url.path,
            code=exc.code,
            detail=exc.message,
        )
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=exc.__class__.__name__,
                detail=exc.message,
                code=exc.code,
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code="INTERNAL_ERROR",
            ).model_dump(),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check(request: Request) -> HealthResponse:
        """Application, database and connectivity status."""
        services = getattr(request.app.state, "services", None)
        connected = services.monitor.is_connected() if services else False
        return HealthResponse(
            status="healthy" if services else "starting",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database="connected" if services else "unknown",
            network="connected" if connected else "disconnected",
        )

    app.include_router(session.router, prefix=settings.API_V1_PREFIX)
    app.include_router(batches.router, prefix=settings.API_V1_PREFIX)
    app.include_router(activity.router, prefix=settings.API_V1_PREFIX)

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": settings.API_V1_PREFIX,
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "gramvault.api.main:app",
        host="127.0.0.1",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )
