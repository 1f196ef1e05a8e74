"""
Escalation Service - Main Application
======================================

Rule-driven notification escalation engine.

Rules describe when an incident opens (a trigger condition over event
data) and how it escalates through ordered levels of recipients until
someone acknowledges it.

Clean Architecture Layers:
- Interfaces: FastAPI controllers
- Application: Services and DTOs
- Domain: Entities, value objects, trigger evaluation
- Infrastructure: Database, notification channels, scheduler
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

# Configuration and Core
from src.config import settings
from src.core import ApplicationException

# Infrastructure
from src.infrastructure.database import (
    init_database, close_database, create_tables, get_session_context
)

# Escalation Module
from src.escalation.application import EscalationSweepService
from src.escalation.infrastructure import (
    NotificationConfigManager, Notifier, EscalationScheduler,
    SQLAlchemyRuleRepository, SQLAlchemyIncidentRepository
)
from src.escalation.interfaces import escalation_router

# Shared
from src.shared.api.middleware import (
    CorrelationIDMiddleware,
    MetricsMiddleware,
    LoggingMiddleware,
    application_exception_handler,
    global_exception_handler
)
from src.shared.infrastructure.logging import setup_logging, get_logger, log_latency

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan manager.

    STARTUP:
    1. Setup structured logging
    2. Initialize database and create tables
    3. Load notification configuration and watch it
    4. Create the notifier
    5. Start the escalation sweep scheduler

    SHUTDOWN:
    1. Stop the scheduler
    2. Stop the config watcher
    3. Close the notifier's HTTP client
    4. Close database connections
    """
    # === STARTUP ===
    setup_logging(settings.log_level, settings.environment)
    logger.info("Starting Escalation Service", extra={
        "version": settings.app_version,
        "environment": settings.environment
    })

    init_database()

    # Create tables (for development - use Alembic in production)
    logger.info("Creating database tables")
    await create_tables()

    logger.info("Loading notification configuration")
    config_manager = NotificationConfigManager()
    config_manager.load(settings.escalation_config_path)
    config_manager.start_watching()

    notifier = Notifier(config_manager)

    async def escalation_sweep_job():
        """Background escalation sweep."""
        async with get_session_context() as session:
            sweep_service = EscalationSweepService(
                SQLAlchemyRuleRepository(session),
                SQLAlchemyIncidentRepository(session),
                notifier,
                retry_attempts=settings.transition_retry_attempts
            )
            with log_latency(logger, "escalation_sweep") as context:
                context.update(await sweep_service.sweep())

    scheduler = None
    if settings.escalation_sweep_interval > 0:
        scheduler = EscalationScheduler(interval_seconds=settings.escalation_sweep_interval)
        await scheduler.start(escalation_sweep_job)
    else:
        logger.info("Escalation scheduler disabled")

    # Store services in app state for dependency injection
    app.state.settings = settings
    app.state.config_manager = config_manager
    app.state.notifier = notifier
    app.state.scheduler = scheduler

    logger.info("Escalation Service started successfully")

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Shutting down Escalation Service")

    if scheduler:
        await scheduler.stop()

    config_manager.stop_watching()
    await notifier.close()
    await close_database()

    logger.info("Escalation Service shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Escalation Service API",
    description="""
    ## Notification Escalation Engine

    Rules decide when an incident opens; unacknowledged incidents climb
    through ordered escalation levels, notifying each level's recipients.

    ---

    ### Rules
    - `POST /escalation/rules` - Create a rule
    - `GET /escalation/rules` - List rules (filters, pagination, sorting)
    - `GET|PUT|DELETE /escalation/rules/{id}` - Read, update, delete
    - `PATCH /escalation/rules/{id}/pause|resume` - Gate new triggers
    - `PATCH /escalation/rules/bulk-status` - Set status on many rules
    - `POST /escalation/rules/{id}/evaluate` - Dry-run the trigger condition
    - `POST /escalation/rules/{id}/trigger` - Present event data to one rule

    ### Events
    - `POST /escalation/events` - Present event data to every active rule

    ### Incidents
    - `GET /escalation/incidents` - List incidents
    - `GET /escalation/incidents/active` - Unresolved incidents
    - `GET /escalation/incidents/escalated` - Incidents at or above a level
    - `GET /escalation/incidents/{id}` and `/timeline`
    - `PATCH /escalation/incidents/{id}/acknowledge|resolve|pause|resume`

    ### Statistics
    - `GET /escalation/statistics`

    ---

    ### Incident lifecycle

    ```
    open --acknowledge--> acknowledged --resolve--> resolved
      |  \\__escalate (level + 1, timer re-armed)
      \\------------------resolve----------------------^
    ```

    The escalation timer is persisted (`next_escalation_at`) and swept in the
    background, so pending escalations survive restarts.

    ---
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

# === Custom Middleware (from shared) ===
app.add_middleware(CorrelationIDMiddleware)
app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)
app.add_exception_handler(ApplicationException, application_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

# === Include Module Routers ===
app.include_router(escalation_router)


# === Health Check Endpoint ===

@app.get("/health", tags=["Health"], responses={
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
                        "notification_config": "loaded",
                        "escalation_scheduler": "running"
                    }
                }
            }
        }
    }
})
async def health_check(request: Request):
    """
    Health check endpoint for load balancers and orchestrators.

    Returns service health status including:
    - Database connectivity
    - Notification configuration status
    - Scheduler state
    """
    checks = {}

    try:
        async with get_session_context() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = "connected"
    except Exception as e:
        checks["database"] = f"error: {type(e).__name__}"

    config_manager = getattr(request.app.state, "config_manager", None)
    checks["notification_config"] = "loaded" if config_manager else "not_loaded"

    scheduler = getattr(request.app.state, "scheduler", None)
    checks["escalation_scheduler"] = "running" if scheduler and scheduler.is_running else "stopped"

    healthy = checks["database"] == "connected"
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
        "service": "Escalation Service",
        "version": settings.app_version,
        "architecture": "Clean Architecture / Modular Monolith",
        "docs": "/docs",
        "health": "/health",
        "modules": {
            "escalation": {
                "prefix": "/escalation",
                "endpoints": [
                    "POST /escalation/rules - Create rule",
                    "GET /escalation/rules - List rules",
                    "POST /escalation/rules/{id}/trigger - Trigger rule",
                    "POST /escalation/events - Evaluate event against active rules",
                    "GET /escalation/incidents - List incidents",
                    "PATCH /escalation/incidents/{id}/acknowledge - Acknowledge incident",
                    "PATCH /escalation/incidents/{id}/resolve - Resolve incident",
                    "GET /escalation/statistics - Statistics"
                ]
            }
        }
    }


# === Development Entry Point ===

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development",
        log_level="info"
    )
