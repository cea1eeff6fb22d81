"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.deps import get_notifier
from app.api.v1.router import api_router
from app.core.config import settings
from app.core.errors import HospitalNotFound, ReportNotFound, RetryableError, TriageEngineError
from app.core.logging import setup_logging
from app.db.init_db import init_db
from app.db.session import AsyncSessionLocal
from app.models.report import InvalidStatusTransition
from app.services.assignment import NoEligibleHospital, StaleAssignment
from app.services.geo import InvalidCoordinates
from app.services.queue import QueueConsistencyViolation, QueueEntryNotFound
from app.services.triage import InvalidCriticality

# Setup logging
setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup and shutdown events."""
    # Startup
    logger.info(f"Starting Triage Queue Engine (env={settings.env})")

    if settings.init_db_on_startup and settings.is_dev:
        logger.info("Initializing database...")
        async with AsyncSessionLocal() as session:
            await init_db(session)

    yield

    # Shutdown
    await get_notifier().drain()
    logger.info("Shutting down Triage Queue Engine")


# Create FastAPI application
app = FastAPI(
    title="Triage Queue Engine",
    description="Emergency report triage, hospital assignment and live treatment queues",
    version="0.1.0",
    docs_url="/docs" if settings.is_dev else None,
    redoc_url="/redoc" if settings.is_dev else None,
    openapi_url="/openapi.json" if settings.is_dev else None,
    lifespan=lifespan,
)

# CORS middleware (configure appropriately for production)
if settings.is_dev:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://localhost:3001"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# Domain error mapping, most specific first
ERROR_STATUS: list[tuple[type[Exception], int]] = [
    (InvalidCoordinates, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NoEligibleHospital, status.HTTP_202_ACCEPTED),
    (QueueConsistencyViolation, status.HTTP_409_CONFLICT),
    (StaleAssignment, status.HTTP_409_CONFLICT),
    (InvalidStatusTransition, status.HTTP_409_CONFLICT),
    (ReportNotFound, status.HTTP_404_NOT_FOUND),
    (HospitalNotFound, status.HTTP_404_NOT_FOUND),
    (QueueEntryNotFound, status.HTTP_404_NOT_FOUND),
    (RetryableError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


def status_for(exc: Exception) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


@app.exception_handler(TriageEngineError)
async def engine_exception_handler(request: Request, exc: TriageEngineError) -> JSONResponse:
    """Translate engine errors to HTTP responses."""
    code = status_for(exc)
    if code >= 500:
        logger.error(f"Retryable failure on {request.url.path}: {exc}")
    else:
        logger.info(f"{type(exc).__name__} on {request.url.path}: {exc}")

    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(
        status_code=code,
        content={
            "detail": str(exc),
            "error": type(exc).__name__,
            "retryable": exc.retryable,
        },
        headers=headers,
    )


@app.exception_handler(InvalidCriticality)
async def criticality_exception_handler(request: Request, exc: InvalidCriticality) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "error": type(exc).__name__, "retryable": False},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions."""
    logger.exception(f"Unhandled exception: {exc}")

    # Don't expose internal errors in production
    if settings.is_prod:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc)},
    )


# Include API router
app.include_router(api_router, prefix="/api/v1")


# Root endpoint
@app.get("/", include_in_schema=False)
async def root() -> dict:
    """Root endpoint redirect to docs."""
    return {
        "service": "Triage Queue Engine",
        "version": "0.1.0",
        "docs": "/docs" if settings.is_dev else "Disabled in production",
    }
