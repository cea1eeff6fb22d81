"""FastAPI dependency injection utilities."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.db.session import AsyncSessionLocal, get_db
from app.services.engine import TriageEngine
from app.services.events import EventBus
from app.services.notifications import NotificationSink

# Process-wide singletons: queue guards and connections live in memory
_event_bus: EventBus | None = None
_notifier: NotificationSink | None = None
_triage_engine: TriageEngine | None = None


def get_event_bus() -> EventBus:
    """Get the process event bus."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus(outbox_size=settings.event_outbox_size)
    return _event_bus


def get_notifier() -> NotificationSink:
    global _notifier
    if _notifier is None:
        _notifier = NotificationSink(enabled=settings.notifications_enabled)
    return _notifier


def get_triage_engine() -> TriageEngine:
    """Get the process triage engine, sharing the bus and notifier."""
    global _triage_engine
    if _triage_engine is None:
        _triage_engine = TriageEngine(
            AsyncSessionLocal,
            get_event_bus(),
            notifier=get_notifier(),
            config=settings,
        )
    return _triage_engine


# Type aliases for common dependencies
DbSession = Annotated[AsyncSession, Depends(get_db)]
Bus = Annotated[EventBus, Depends(get_event_bus)]
Engine = Annotated[TriageEngine, Depends(get_triage_engine)]
