"""Health check endpoints for container orchestration."""

from typing import Any

from fastapi import APIRouter, Response, status
from fastapi.responses import JSONResponse

from linkloop.core.migrations import check_migrations_current
from linkloop.database import check_database_connection
from linkloop.services.notification_dispatcher import dispatcher

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=None)
async def health_check() -> Response:
    """Health check with database status.

    Returns 200 {"status": "healthy"} when the database answers and 503
    {"status": "degraded"} otherwise.
    """
    if await check_database_connection():
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "healthy", "database": "connected"},
        )
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"status": "degraded", "database": "disconnected"},
    )


@router.get("/health/live")
async def liveness_probe() -> dict[str, Any]:
    """Liveness probe. Does not touch external dependencies."""
    return {"status": "alive"}


@router.get("/health/ready", response_model=None)
async def readiness_probe() -> Response:
    """Readiness probe.

    Ready when the database answers. Also reports whether a migration
    revision is recorded and how many notifications are still in flight.
    """
    db_connected = await check_database_connection()
    migrations = await check_migrations_current() if db_connected else False

    content = {
        "status": "ready" if db_connected else "not_ready",
        "database": "connected" if db_connected else "disconnected",
        "migrations": "current" if migrations else "unknown",
        "pending_notifications": dispatcher.pending,
    }
    return JSONResponse(
        status_code=(
            status.HTTP_200_OK if db_connected else status.HTTP_503_SERVICE_UNAVAILABLE
        ),
        content=content,
    )
