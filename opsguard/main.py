"""OpsGuard FastAPI application."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from opsguard import __version__
from opsguard.config import settings
from opsguard.database import close_database
from opsguard.logging_config import get_logger, setup_logging
from opsguard.middleware import CorrelationIdMiddleware
from opsguard.routers import cron, health, incidents, policies
from opsguard.services.scheduler import create_supervisor, start_scheduler, stop_scheduler

setup_logging(
    log_format=settings.log_format,
    log_level=settings.log_level,
    service_name=settings.service_name,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Migrations are applied with "alembic upgrade head" before startup
    logger.info("OpsGuard engine started", version=__version__)

    start_scheduler(app.state.supervisor)

    yield

    logger.info("Shutting down OpsGuard engine...")
    stop_scheduler()
    await close_database()
    logger.info("OpsGuard engine shutdown complete")


app = FastAPI(
    title="OpsGuard Engine",
    description="Incident escalation and SLA monitoring engine",
    version=__version__,
    lifespan=lifespan,
)

# One supervisor per process; the timer and /api/cron/tick share its guard
app.state.supervisor = create_supervisor()

app.add_middleware(CorrelationIdMiddleware)

app.include_router(health.router)
app.include_router(cron.router)
app.include_router(policies.router)
app.include_router(incidents.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint."""
    return {
        "name": "OpsGuard Engine",
        "version": __version__,
        "docs": "/docs",
    }
