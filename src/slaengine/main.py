"""
SLA Engine - Main Application
==============================

Service-level agreement engine for hotel operations tickets.

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities, value objects, clock and lifecycle rules
- Infrastructure: Database, config watcher, event webhook, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from slaengine.config import settings
from slaengine.core import ApplicationException
from slaengine.infrastructure.database import (
    close_database, create_tables, get_engine, get_session_maker, init_database
)
from slaengine.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from slaengine.shared.infrastructure.logging import get_logger, setup_logging
from slaengine.sla.infrastructure.external import SLAConfigManager, SLAScheduler
from slaengine.sla.interfaces import sla_router
from slaengine.sla.services import SLAEngine

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load SLA configuration and watch it for changes
    4. Build the SLA engine
    5. Start the sweep scheduler

    SHUTDOWN: in reverse order.
    """
    setup_logging(settings.log_level, settings.environment, settings.app_name)
    logger.info("Starting SLA engine", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    init_database()

    # Tables are created for development; production uses migrations
    try:
        await create_tables()
    except Exception as e:
        logger.warning("Database not available - running in degraded mode", extra={"error": str(e)})

    config_manager = SLAConfigManager()
    config_manager.load(settings.sla_config_path)
    config_manager.start_watching()

    engine = SLAEngine(get_session_maker(), config_manager, settings=settings)
    app.state.sla_engine = engine
    app.state.settings = settings

    scheduler = None
    if settings.sla_evaluation_interval > 0:
        async def sla_sweep_job():
            try:
                await engine.run_sweep()
            except Exception as e:
                logger.error("SLA sweep failed", extra={"error": str(e), "error_type": type(e).__name__})

        scheduler = SLAScheduler(interval_seconds=settings.sla_evaluation_interval)
        await scheduler.start(sla_sweep_job)
    app.state.sla_scheduler = scheduler

    logger.info("SLA engine started")

    yield

    logger.info("Shutting down SLA engine")

    if scheduler:
        await scheduler.stop()
    config_manager.stop_watching()
    await engine.close()
    await close_database()

    logger.info("SLA engine shutdown complete")


def create_app() -> FastAPI:
    """Build the FastAPI application."""
    app = FastAPI(
        title="Hotel Operations SLA Engine",
        description="""
        Tracks every operational ticket against its department's SLA policy.

        - Versioned per-department policies; tickets keep the version captured at clock start
        - Blocked time pauses the clock
        - Classification changes and escalations are delivered as events
        - Daily compliance snapshots, trend and impact breakdown per hotel
        """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)

    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(sla_router)

    @app.get("/health", tags=["Health"], responses={
        200: {
            "description": "Service health",
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "version": "1.0.0",
                        "environment": "development",
                        "checks": {
                            "database": "connected",
                            "sla_config": "loaded",
                            "sla_scheduler": "running"
                        }
                    }
                }
            }
        }
    })
    async def health_check(request: Request):
        """Health check endpoint for load balancers and orchestrators."""
        checks = {}

        try:
            async with get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
            checks["database"] = "connected"
        except Exception as e:
            checks["database"] = f"error: {e}"

        engine = getattr(request.app.state, "sla_engine", None)
        checks["sla_config"] = "loaded" if engine else "not_loaded"

        scheduler = getattr(request.app.state, "sla_scheduler", None)
        checks["sla_scheduler"] = "running" if scheduler and scheduler.is_running else "stopped"

        healthy = checks["database"] == "connected" and engine is not None
        return {
            "status": "healthy" if healthy else "degraded",
            "version": settings.app_version,
            "environment": settings.environment,
            "checks": checks
        }

    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
            "health": "/health"
        }

    return app


app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    uvicorn.run(
        "slaengine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    run()
