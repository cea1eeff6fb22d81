"""Event log schemas."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.models.event_log import ActorType


class EventLogRead(BaseModel):
    """Schema for reading event log entries."""

    id: str
    entity_type: str
    entity_id: str
    event_type: str
    timestamp: datetime
    payload: dict[str, Any] | None
    actor_type: ActorType
    actor_id: str | None
    correlation_id: str | None

    model_config = {"from_attributes": True}


class EventLogFilter(BaseModel):
    """Filter parameters for querying the event log."""

    entity_id: str | None = None
    entity_type: str | None = None
    event_type: str | None = None
    correlation_id: str | None = None
    limit: int = Field(default=100, le=500)
    offset: int = Field(default=0, ge=0)
