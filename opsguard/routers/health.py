"""Health check endpoints for container orchestration."""

from typing import Any

from fastapi import APIRouter, Request, Response, status
from fastapi.responses import JSONResponse

from opsguard.database import check_database_connection

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=None)
async def health_check(request: Request) -> Response:
    """Database status plus whether a scheduler pass is in flight.

    Returns 503 with ``"status": "degraded"`` when the database is
    unreachable; the engine cannot persist escalation progress then.
    """
    db_connected = await check_database_connection()
    supervisor = getattr(request.app.state, "supervisor", None)
    scheduler_state = "running" if supervisor is not None and supervisor.is_running else "idle"

    if not db_connected:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "degraded",
                "database": "disconnected",
                "scheduler": scheduler_state,
            },
        )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "status": "healthy",
            "database": "connected",
            "scheduler": scheduler_state,
        },
    )


@router.get("/health/live")
async def liveness_probe() -> dict[str, Any]:
    """Liveness probe; never checks external dependencies."""
    return {"status": "alive"}


@router.get("/health/ready", response_model=None)
async def readiness_probe() -> Response:
    """Readiness probe; ready once the database answers."""
    if await check_database_connection():
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "ready", "database": "connected"},
        )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "not_ready", "database": "disconnected"},
    )
