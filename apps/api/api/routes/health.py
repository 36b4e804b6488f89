"""Health check endpoints."""

import logging
from typing import Literal

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_session_registry
from core.config import Settings, get_settings
from db.session import get_session
from services.session_registry import SessionRegistry

router = APIRouter()
logger = logging.getLogger(__name__)


class HealthStatus(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    active_sessions: int
    version: str
    environment: str


class LivenessResponse(BaseModel):
    """Kubernetes liveness probe response."""

    status: Literal["ok"]


class ReadinessResponse(BaseModel):
    """Kubernetes readiness probe response."""

    status: Literal["ready", "not_ready"]
    details: dict[str, bool]


async def _database_reachable(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database health check failed: %s", e)
        return False


@router.get("/health", response_model=HealthStatus)
async def health_check(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
    registry: SessionRegistry = Depends(get_session_registry),
) -> HealthStatus:
    """Full health check endpoint."""
    connected = await _database_reachable(session)

    return HealthStatus(
        status="healthy" if connected else "unhealthy",
        database="connected" if connected else "disconnected",
        active_sessions=len(registry),
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get("/health/live", response_model=LivenessResponse)
async def liveness_probe() -> LivenessResponse:
    """Kubernetes liveness probe - checks if app is running."""
    return LivenessResponse(status="ok")


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_probe(
    session: AsyncSession = Depends(get_session),
) -> ReadinessResponse:
    """Kubernetes readiness probe - checks if app can serve requests."""
    checks = {"database": await _database_reachable(session)}

    return ReadinessResponse(
        status="ready" if all(checks.values()) else "not_ready",
        details=checks,
    )
