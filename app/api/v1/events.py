"""Event log endpoints.

IMPORTANT: This module intentionally provides READ-ONLY access to the event log.
No endpoints exist for creating, updating, or deleting entries through the API.
Entries are written internally by record_event() in the transaction of the
mutation they describe.
"""

from fastapi import APIRouter, status

from app.api.deps import DbSession
from app.schemas.event_log import EventLogFilter, EventLogRead
from app.services.audit import EventLogService

router = APIRouter()


@router.get(
    "",
    response_model=list[EventLogRead],
    status_code=status.HTTP_200_OK,
    summary="List events",
    description="Query the event log with optional filters (append-only, no modification endpoints)",
)
async def list_events(
    session: DbSession,
    entity_id: str | None = None,
    entity_type: str | None = None,
    event_type: str | None = None,
    correlation_id: str | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[EventLogRead]:
    """Query event log entries, newest first.

    Args:
        session: Database session
        entity_id: Filter by entity ID
        entity_type: Filter by entity type
        event_type: Filter by event type
        correlation_id: Filter by correlation ID
        limit: Maximum results (default 100, max 500)
        offset: Results to skip

    Returns:
        List of entries matching filters
    """
    filters = EventLogFilter(
        entity_id=entity_id,
        entity_type=entity_type,
        event_type=event_type,
        correlation_id=correlation_id,
        limit=min(limit, 500),  # Cap at 500
        offset=max(offset, 0),
    )
    events = await EventLogService(session).get_events(filters)
    return [EventLogRead.model_validate(e) for e in events]


@router.get(
    "/{entity_type}/{entity_id}",
    response_model=list[EventLogRead],
    status_code=status.HTTP_200_OK,
    summary="Get entity history",
    description="Complete event history for one entity, oldest first",
)
async def get_entity_history(
    entity_type: str,
    entity_id: str,
    session: DbSession,
    limit: int = 100,
) -> list[EventLogRead]:
    events = await EventLogService(session).get_entity_history(
        entity_type, entity_id, limit=min(limit, 500)
    )
    return [EventLogRead.model_validate(e) for e in events]
