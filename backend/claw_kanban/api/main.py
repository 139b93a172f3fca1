"""
Claw-Kanban - FastAPI Application
=================================

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

from claw_kanban.api import cards, inbox, provider_settings
from claw_kanban.api.deps import DbSession
from claw_kanban.core.assignment import ensure_provider_settings
from claw_kanban.core.config import settings
from claw_kanban.core.database import AsyncSessionLocal, close_db, get_db_session, init_db
from claw_kanban.core.runner import (
    AgentLauncher,
    CardOrchestrator,
    ProcessRegistry,
    RunError,
    WakeNotifier,
)
from claw_kanban.core.runner.credentials import SettingsTokenProvider
from claw_kanban.core.schemas import ErrorResponse, HealthResponse
from claw_kanban.core.store import CardStore

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


# ==========================================================================
# Component Wiring
# ==========================================================================

def build_orchestrator() -> CardOrchestrator:
    """Assemble the run supervisor from configuration."""
    registry = ProcessRegistry()
    launcher = AgentLauncher(settings, registry, SettingsTokenProvider(settings))
    return CardOrchestrator(
        store=CardStore(AsyncSessionLocal),
        registry=registry,
        launcher=launcher,
        notifier=WakeNotifier(settings),
        settings=settings,
    )


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Create tables and seed provider settings
    - Build the orchestrator and reconcile runs orphaned by a restart

    Shutdown:
    - Cancel review timers and exit watchers (agents keep running)
    - Close database connections
    """
    # Startup
    logger.info("Starting Claw-Kanban", version=settings.APP_VERSION, port=settings.PORT)

    settings.LOGS_DIR.mkdir(parents=True, exist_ok=True)
    await init_db()
    async with get_db_session() as session:
        await ensure_provider_settings(session)
    logger.info("Database initialized")

    orchestrator = build_orchestrator()
    healed = await orchestrator.reconcile()
    app.state.orchestrator = orchestrator
    logger.info(
        "Orchestrator ready",
        orphaned_runs=healed,
        gateway="configured" if settings.gateway_configured else "not configured",
    )

    yield

    # Shutdown
    logger.info("Shutting down Claw-Kanban")
    await orchestrator.shutdown()
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
        description="Task board that runs coding agents and reviews their work",
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

    @app.exception_handler(RunError)
    async def run_error_handler(request: Request, exc: RunError) -> JSONResponse:
        """Rejected operator commands carry a stable error code."""
        logger.info(
            "Command rejected",
            code=exc.code,
            detail=str(exc),
            card_id=exc.card_id,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=exc.code, detail=str(exc), code=exc.code).model_dump(),
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

        if settings.is_development or settings.DEBUG:
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
    # Health
    # ==========================================================================

    async def health_check(db: DbSession) -> HealthResponse:
        """Application, database and gateway status."""
        try:
            await db.execute(text("SELECT 1"))
            database = "connected"
        except SQLAlchemyError as e:
            logger.warning("Health check database failure", error=str(e))
            database = "unavailable"

        return HealthResponse(
            ok=database == "connected",
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
            gateway="configured" if settings.gateway_configured else "not configured",
        )

    for path in ("/health", "/healthz", f"{settings.API_PREFIX}/health"):
        app.add_api_route(
            path,
            health_check,
            methods=["GET"],
            response_model=HealthResponse,
            tags=["Health"],
            summary="Health check",
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    app.include_router(cards.router, prefix=settings.API_PREFIX)
    app.include_router(inbox.router, prefix=settings.API_PREFIX)
    app.include_router(provider_settings.router, prefix=settings.API_PREFIX)

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
            "api": settings.API_PREFIX,
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

def run() -> None:
    import uvicorn

    uvicorn.run(
        "claw_kanban.api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.is_development,
        log_level="info",
    )


if __name__ == "__main__":
    run()
