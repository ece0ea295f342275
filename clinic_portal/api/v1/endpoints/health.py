"""Health check endpoints."""

from typing import Literal

from fastapi import APIRouter, Request, status
from pydantic import BaseModel

from clinic_portal.config import settings
from clinic_portal.core.redis_client import check_redis_connection
from clinic_portal.database import check_database_connection
from clinic_portal.dependencies import Channel

router = APIRouter()


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded"]
    version: str
    environment: str


class ComponentHealth(BaseModel):
    """State of one dependency; ``detail`` names the instance or backlog when known."""

    state: Literal["healthy", "unhealthy", "not_configured", "connected", "disconnected"]
    detail: str | None = None


class DetailedHealthResponse(HealthResponse):
    components: dict[str, ComponentHealth]


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Basic health check",
)
async def health_check() -> HealthResponse:
    """Liveness only; no dependency is contacted."""
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Detailed health check",
)
async def detailed_health_check(request: Request, channel: Channel) -> DetailedHealthResponse:
    """
    Report the ledger database, Redis, WhatsApp and notification workers.

    Redis is optional and does not degrade the status when it is not
    configured. A disconnected WhatsApp instance or stopped workers do,
    because bookings would then succeed without notifying anyone.
    """
    db_healthy = await check_database_connection()
    redis_healthy = await check_redis_connection()
    instance = await channel.ensure_connected()
    queue = request.app.state.notification_queue

    components = {
        "database": ComponentHealth(state="healthy" if db_healthy else "unhealthy"),
        "redis": ComponentHealth(
            state="not_configured"
            if redis_healthy is None
            else ("healthy" if redis_healthy else "unhealthy")
        ),
        "whatsapp": ComponentHealth(
            state="connected" if instance else "disconnected",
            detail=instance.name if instance else None,
        ),
        "notification_queue": ComponentHealth(
            state="healthy" if queue.running else "unhealthy",
            detail=f"{queue.pending} pending",
        ),
    }
    degraded = any(c.state in ("unhealthy", "disconnected") for c in components.values())

    return DetailedHealthResponse(
        status="degraded" if degraded else "healthy",
        version=settings.app_version,
        environment=settings.environment,
        components=components,
    )


@router.get(
    "/ping",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Simple ping",
)
async def ping() -> dict[str, str]:
    return {"message": "pong"}
