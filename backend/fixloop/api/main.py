"""
Fixloop - FastAPI Application
=============================

Main application factory with routers, middleware and the orchestrator
lifespan.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fixloop.api import events, sessions
from fixloop.core.adapters.providers import HttpFixProvider, RetryingFixProvider
from fixloop.core.config import settings
from fixloop.core.database import close_db, init_db
from fixloop.core.engine.orchestrator import Orchestrator
from fixloop.core.engine.repository import InMemoryRepository
from fixloop.core.errors import (
    CheckpointNotFoundError,
    ConfigurationError,
    FixloopError,
    InvalidStateError,
    IssueNotFoundError,
    RepositoryNotFoundError,
    SessionNotFoundError,
    UncommittedChangesError,
)
from fixloop.core.persistence import SqlAlchemyRepository
from fixloop.core.schemas import ErrorResponse, HealthResponse

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


ERROR_STATUS: dict[type[FixloopError], int] = {
    SessionNotFoundError: status.HTTP_404_NOT_FOUND,
    IssueNotFoundError: status.HTTP_404_NOT_FOUND,
    CheckpointNotFoundError: status.HTTP_404_NOT_FOUND,
    InvalidStateError: status.HTTP_409_CONFLICT,
    UncommittedChangesError: status.HTTP_409_CONFLICT,
    RepositoryNotFoundError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ConfigurationError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def build_orchestrator() -> Orchestrator:
    """Orchestrator wired from settings."""
    provider = None
    if settings.FIX_PROVIDER_URL:
        provider = RetryingFixProvider(
            HttpFixProvider(settings.FIX_PROVIDER_URL, api_key=settings.FIX_PROVIDER_API_KEY)
        )
    repository = SqlAlchemyRepository() if settings.PERSIST_SESSIONS else InMemoryRepository()
    return Orchestrator(repository=repository, provider=provider)


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Initialize database connection
    - Build the orchestrator

    Shutdown:
    - Cancel dispatch loops (running sessions recover as paused)
    - Close database connections
    """
    logger.info("Starting Fixloop", version=settings.APP_VERSION)

    if settings.PERSIST_SESSIONS:
        await init_db()
        app.state.database = "connected"
        logger.info("Database initialized")
    else:
        app.state.database = "disabled"

    app.state.orchestrator = build_orchestrator()
    if app.state.orchestrator.provider is None:
        logger.warning("No fix provider configured; sessions cannot be started")

    yield

    logger.info("Shutting down Fixloop")
    await app.state.orchestrator.shutdown()
    if settings.PERSIST_SESSIONS:
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
        description="Fixloop - find, fix, verify and commit code issues",
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

    @app.exception_handler(FixloopError)
    async def fixloop_exception_handler(request: Request, exc: FixloopError) -> JSONResponse:
        """Map engine errors to HTTP status codes."""
        status_code = next(
            (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        if status_code >= 500:
            logger.error("Engine error", kind=exc.kind, error=exc.message, path=request.url.path)
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                error=exc.__class__.__name__,
                detail=exc.message,
                code=exc.kind.upper(),
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
        """Application health and number of loaded sessions."""
        orchestrator = getattr(request.app.state, "orchestrator", None)
        return HealthResponse(
            status="healthy",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=getattr(request.app.state, "database", "unknown"),
            active_sessions=len(orchestrator.runtimes) if orchestrator else 0,
        )

    app.include_router(sessions.router, prefix=settings.API_V1_PREFIX)
    app.include_router(events.router, prefix=settings.API_V1_PREFIX)

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
        "fixloop.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )
