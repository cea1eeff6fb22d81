"""API v1 router aggregating all endpoints."""

from fastapi import APIRouter

from app.api.v1 import events, health, hospitals, realtime, reports

api_router = APIRouter()

# Health check
api_router.include_router(
    health.router,
    prefix="/health",
    tags=["health"],
)

# Incident reports
api_router.include_router(
    reports.router,
    prefix="/reports",
    tags=["reports"],
)

# Hospitals and queues
api_router.include_router(
    hospitals.router,
    prefix="/hospitals",
    tags=["hospitals"],
)

# Event log (read-only)
api_router.include_router(
    events.router,
    prefix="/events",
    tags=["events"],
)

# Real-time transport
api_router.include_router(
    realtime.router,
    prefix="/realtime",
    tags=["realtime"],
)
