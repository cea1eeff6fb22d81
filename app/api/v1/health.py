"""Health check endpoints."""

import logging

from fastapi import APIRouter, status
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.api.deps import Bus, DbSession

logger = logging.getLogger(__name__)

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str


class ReadinessResponse(HealthResponse):
    database: str
    connections: dict[str, int]


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Health check",
    description="Returns service health status",
)
async def health_check() -> HealthResponse:
    """Check if the service is healthy.

    Returns:
        Health status response
    """
    return HealthResponse(status="ok")


@router.get(
    "/ready",
    response_model=ReadinessResponse,
    status_code=status.HTTP_200_OK,
    summary="Readiness check",
    description="Returns database reachability and real-time connection counts",
)
async def readiness_check(session: DbSession, bus: Bus) -> ReadinessResponse:
    """Check if the service is ready to accept requests.

    Returns:
        Readiness status response
    """
    try:
        await session.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error(f"Readiness database check failed: {e}")
        database = "unavailable"

    return ReadinessResponse(
        status="ok" if database == "ok" else "degraded",
        database=database,
        connections=bus.stats(),
    )
