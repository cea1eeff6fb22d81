"""Event log service for append-only transition records."""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import audit_logger
from app.models.event_log import ActorType, EventLogEntry
from app.schemas.event_log import EventLogFilter


def record_event(
    session: AsyncSession,
    entity_type: str,
    entity_id: str,
    event_type: str,
    payload: dict[str, Any] | None = None,
    actor_type: ActorType = ActorType.SYSTEM,
    actor_id: str | None = None,
    correlation_id: str | None = None,
) -> EventLogEntry:
    """Append an event log entry to the caller's transaction.

    The entry becomes durable together with the mutation it describes when
    the caller commits; nothing is written if the transaction rolls back.

    Args:
        session: Database session holding the mutation
        entity_type: Type of entity affected (e.g., "patient_report", "patient_queue")
        entity_id: ID of the affected entity
        event_type: Transition name (e.g., "queue_added", "status_changed")
        payload: Additional context as JSON
        actor_type: Who caused the transition
        actor_id: ID of the actor, if known
        correlation_id: Groups entries written by one operation

    Returns:
        The pending EventLogEntry
    """
    entry = EventLogEntry(
        entity_type=entity_type,
        entity_id=entity_id,
        event_type=event_type,
        payload=payload,
        actor_type=actor_type,
        actor_id=actor_id,
        correlation_id=correlation_id,
    )
    session.add(entry)

    audit_logger.log(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor=f"{ActorType(actor_type).value}:{actor_id or 'system'}",
        payload=payload,
    )

    return entry


class EventLogService:
    """Service for querying the event log.

    Note: This service only provides read operations.
    Entries are created via record_event().
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_events(self, filters: EventLogFilter) -> list[EventLogEntry]:
        """Query event log entries with optional filters, newest first."""
        query = select(EventLogEntry).order_by(EventLogEntry.timestamp.desc())

        if filters.entity_id:
            query = query.where(EventLogEntry.entity_id == filters.entity_id)
        if filters.entity_type:
            query = query.where(EventLogEntry.entity_type == filters.entity_type)
        if filters.event_type:
            query = query.where(EventLogEntry.event_type == filters.event_type)
        if filters.correlation_id:
            query = query.where(EventLogEntry.correlation_id == filters.correlation_id)

        query = query.offset(filters.offset).limit(filters.limit)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_entity_history(
        self,
        entity_type: str,
        entity_id: str,
        limit: int = 100,
    ) -> list[EventLogEntry]:
        """Get the transition history of one entity in chronological order."""
        result = await self.session.execute(
            select(EventLogEntry)
            .where(EventLogEntry.entity_type == entity_type)
            .where(EventLogEntry.entity_id == entity_id)
            .order_by(EventLogEntry.timestamp.asc())
            .limit(limit)
        )
        return list(result.scalars().all())
