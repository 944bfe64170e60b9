"""
Runner Control Plane - FastAPI Application
==========================================

Main application factory with all routers and middleware.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from control_plane.api import (
    capabilities,
    deployments,
    infrastructures,
    orders,
    platform,
    playbooks,
    routes,
    runner_api,
    runners,
)
from control_plane.api.deps import DbSession
from control_plane.core.config import settings
from control_plane.core.database import close_db, init_db
from control_plane.core.exceptions import (
    ControlPlaneError,
    InvalidTransition,
    NoActiveRunner,
    NotFoundError,
    ParseFailure,
    PlaybookCatalogError,
    RouteInUse,
    RunnerAuthError,
    ValidationError,
)
from control_plane.core.schemas import ErrorResponse, HealthResponse

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
    InvalidTransition: status.HTTP_409_CONFLICT,
    RouteInUse: status.HTTP_409_CONFLICT,
    NoActiveRunner: status.HTTP_503_SERVICE_UNAVAILABLE,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ParseFailure: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    RunnerAuthError: status.HTTP_401_UNAUTHORIZED,
    PlaybookCatalogError: status.HTTP_502_BAD_GATEWAY,
}

ERROR_TITLES = {
    status.HTTP_409_CONFLICT: "Conflict",
    status.HTTP_503_SERVICE_UNAVAILABLE: "Service Unavailable",
    status.HTTP_422_UNPROCESSABLE_ENTITY: "Unprocessable Entity",
    status.HTTP_404_NOT_FOUND: "Not Found",
    status.HTTP_401_UNAUTHORIZED: "Unauthorized",
    status.HTTP_502_BAD_GATEWAY: "Bad Gateway",
}


def status_for(exc: ControlPlaneError) -> int:
    for exc_type in type(exc).__mro__:
        if exc_type in ERROR_STATUS:
            return ERROR_STATUS[exc_type]
    return status.HTTP_400_BAD_REQUEST


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Initialize database connection

    Shutdown:
    - Close database connections
    """
    # Startup
    logger.info("Starting Runner Control Plane", version=settings.APP_VERSION)

    await init_db()
    logger.info("Database initialized")

    yield

    # Shutdown
    logger.info("Shutting down Runner Control Plane")
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
        description="Control plane for a fleet of runner agents",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware
    # ==========================================================================

    # CORS
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

    @app.exception_handler(ControlPlaneError)
    async def control_plane_exception_handler(request: Request, exc: ControlPlaneError) -> JSONResponse:
        """Map domain errors to HTTP responses."""
        status_code = status_for(exc)
        logger.info(
            "Request rejected",
            code=exc.code,
            detail=exc.message,
            path=request.url.path,
            method=request.method,
        )
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=ERROR_TITLES.get(status_code, "Bad Request"),
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

    # Health check (no prefix)
    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check(db: DbSession) -> HealthResponse:
        """
        Check application health.

        Returns status of:
        - Application
        - Database connection
        """
        database = "connected"
        try:
            await db.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.warning("Database health check failed", error=str(e))
            database = "unavailable"

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
        )

    # API v1 routes
    app.include_router(infrastructures.router, prefix=settings.API_V1_PREFIX)
    app.include_router(runners.router, prefix=settings.API_V1_PREFIX)
    app.include_router(runner_api.router, prefix=settings.API_V1_PREFIX)
    app.include_router(orders.router, prefix=settings.API_V1_PREFIX)
    app.include_router(capabilities.router, prefix=settings.API_V1_PREFIX)
    app.include_router(routes.caddy_router, prefix=settings.API_V1_PREFIX)
    app.include_router(routes.nginx_router, prefix=settings.API_V1_PREFIX)
    app.include_router(platform.router, prefix=settings.API_V1_PREFIX)
    app.include_router(deployments.router, prefix=settings.API_V1_PREFIX)
    app.include_router(playbooks.router, prefix=settings.API_V1_PREFIX)

    # ==========================================================================
    # Root Endpoint
    # ==========================================================================

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
        "control_plane.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )
