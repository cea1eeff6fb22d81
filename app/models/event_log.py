"""Append-only event log model for state transition traceability."""

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, String, event
from sqlalchemy.dialects.postgresql import JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, utc_now


class ActorType(str, Enum):
    """Type of actor that caused the transition."""

    SYSTEM = "system"
    OPERATOR = "operator"
    CLINICIAN = "clinician"
    SUBMITTER = "submitter"


class EventLogEntry(Base):
    """Append-only record of a state transition.

    IMPORTANT: rows are never updated or deleted. The mapper guards below
    reject both at flush time.
    """

    __tablename__ = "event_log"

    entity_type: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
        index=True,
    )
    payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    actor_type: Mapped[ActorType] = mapped_column(
        String(50),
        default=ActorType.SYSTEM,
        nullable=False,
    )
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<EventLogEntry {self.event_type} on {self.entity_type}:{self.entity_id}>"


class EventLogImmutableError(Exception):
    """Raised when code attempts to modify or delete an event log row."""

    pass


@event.listens_for(EventLogEntry, "before_update")
def _prevent_update(mapper, connection, target: EventLogEntry) -> None:
    raise EventLogImmutableError(f"Event log entries are immutable: {target.id}")


@event.listens_for(EventLogEntry, "before_delete")
def _prevent_delete(mapper, connection, target: EventLogEntry) -> None:
    raise EventLogImmutableError(f"Event log entries cannot be deleted: {target.id}")
