"""
SLA Engine - Main Application
=============================

SLA tracking and escalation service for ITSM tickets.

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: tracker, escalation engine, monitoring job, catalog sync
- Domain: entities, value objects, business-hours arithmetic
- Infrastructure: database, rule catalog watcher, notification webhook, scheduler
"""

from contextlib import asynccontextmanager
from functools import partial
from typing import AsyncGenerator

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

# Configuration and Core
from src.config import settings
from src.core import ApplicationException

# Infrastructure
from src.infrastructure.database import init_database, close_database, create_tables

# SLA Module
from src.sla.application import EscalationEngine, SlaMonitoringJob
from src.sla.infrastructure import (
    RuleCatalogManager,
    SlaMonitoringScheduler,
    build_dispatcher,
    sqlalchemy_repositories,
)
from src.sla.interfaces import sla_router

# Shared
from src.shared.api.middleware import (
    CorrelationIDMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler,
)
from src.shared.infrastructure.logging import setup_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load the SLA rule catalog, sync it, watch the file
    4. Build dispatcher, escalation engine and monitoring job
    5. Start the monitoring scheduler (if enabled)

    SHUTDOWN (reverse order):
    1. Stop the scheduler, letting an in-flight sweep finish
    2. Stop the catalog watcher
    3. Close the notification client
    4. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting SLA engine", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    app.state.settings = settings
    app.state.database_available = False

    logger.info("Initializing database")
    init_database()

    # Create tables (use Alembic in production)
    try:
        await create_tables()
        app.state.database_available = True
    except Exception as e:
        logger.warning("Database not available - running in degraded mode", extra={"error": str(e)})

    # Rule catalog
    logger.info("Loading SLA rule catalog", extra={"path": str(settings.sla_catalog_path)})
    catalog_manager = RuleCatalogManager(settings.sla_catalog_path)
    catalog_manager.load()
    if app.state.database_available:
        try:
            counts = await catalog_manager.sync_pending(sqlalchemy_repositories)
            if counts:
                logger.info("SLA rule catalog synced", extra=counts)
        except ApplicationException as e:
            logger.error("SLA rule catalog sync failed, will retry on next sweep", extra={"error": e.message})
    catalog_manager.start_watching()

    # Escalations and monitoring
    dispatcher = build_dispatcher()
    escalation_engine = EscalationEngine(sqlalchemy_repositories, dispatcher)
    monitoring_job = SlaMonitoringJob(
        sqlalchemy_repositories,
        escalation_engine,
        before_sweep=partial(catalog_manager.sync_pending, sqlalchemy_repositories),
    )

    monitoring_scheduler = None
    if settings.sla_monitoring_enabled:
        monitoring_scheduler = SlaMonitoringScheduler(
            monitoring_job,
            interval_seconds=settings.sla_monitoring_interval_seconds,
            run_on_start=settings.sla_monitoring_run_on_start,
            misfire_grace_seconds=settings.sla_misfire_grace_seconds,
        )
        await monitoring_scheduler.start()
    else:
        logger.info("SLA monitoring scheduler disabled")

    # Store services in app state for dependency injection
    app.state.catalog_manager = catalog_manager
    app.state.dispatcher = dispatcher
    app.state.escalation_engine = escalation_engine
    app.state.monitoring_job = monitoring_job
    app.state.monitoring_scheduler = monitoring_scheduler

    logger.info("SLA engine started")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down SLA engine")

    if monitoring_scheduler is not None:
        await monitoring_scheduler.stop(wait=True)

    catalog_manager.stop_watching()
    await dispatcher.close()
    await close_database()

    logger.info("SLA engine shutdown complete")


# === Health Check Endpoints ===

system_router = APIRouter()


@system_router.get("/health", tags=["Health"], responses={
    200: {
        "description": "Service is healthy",
        "content": {
            "application/json": {
                "example": {
                    "status": "healthy",
                    "version": "1.0.0",
                    "environment": "development",
                    "checks": {
                        "database": "connected",
                        "sla_catalog": "loaded (4 rules)",
                        "sla_scheduler": "running"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Reports degraded when the database was unreachable at startup.
    """
    state = request.app.state
    catalog_manager = getattr(state, "catalog_manager", None)
    scheduler = getattr(state, "monitoring_scheduler", None)
    database_ok = getattr(state, "database_available", False)

    catalog = catalog_manager.catalog if catalog_manager else None
    checks = {
        "database": "connected" if database_ok else "unavailable",
        "sla_catalog": f"loaded ({len(catalog.sla_rules)} rules)" if catalog else "not_loaded",
        "sla_scheduler": "running" if scheduler and scheduler.is_running else "stopped",
    }

    return {
        "status": "healthy" if database_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "checks": checks
    }


@system_router.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "SLA Engine",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
    }


def create_app() -> FastAPI:
    """Build the FastAPI application with middleware, handlers and routers."""
    app = FastAPI(
        title="SLA Engine API",
        description="""
    ## SLA Tracking & Escalation Engine

    Tracks ITSM tickets against min/avg/max turnaround targets measured in
    business minutes, and escalates as deadlines approach or pass.

    ---

    ### Ticket hooks

    - `POST /sla/tickets/{id}/tracking` - Start tracking (rule matching)
    - `POST /sla/tickets/{id}/status-change` - Pause / resume / stop by ticket status
    - `POST /sla/tickets/{id}/pause`, `/resume`, `/stop` - Manual timer control

    ### Reads

    - `GET /sla/tickets/{id}` - Tracking record with display snapshot
    - `GET /sla/breached`, `GET /sla/approaching-breach` - Work queues
    - `GET /sla/metrics` - Compliance metrics

    ### Monitoring

    A background sweep refreshes elapsed time for running trackings, fires
    due escalations and delivers pending notifications.

    - `POST /sla/monitoring/run` - Run a sweep now
    - `GET /sla/monitoring/status` - Scheduler state and last report

    ---

    ### Configuration

    SLA rules, business-hours schedules, holiday calendars and escalation
    ladders are declared in a YAML catalog (`SLA_CATALOG_PATH`) that is
    hot-reloaded on change.
    """,
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    # === CORS Middleware ===
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Added last runs first: correlation ID is set before the access log
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(CorrelationIDMiddleware)

    app.add_exception_handler(ApplicationException, application_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    app.include_router(sla_router)
    app.include_router(system_router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
