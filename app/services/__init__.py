"""Business logic services."""

from app.services.audit import EventLogService, record_event
from app.services.engine import AssignmentOutcome, TriageEngine
from app.services.events import EventBus
from app.services.queue import QueueManager

__all__ = [
    "EventLogService",
    "record_event",
    "TriageEngine",
    "AssignmentOutcome",
    "EventBus",
    "QueueManager",
]
