"""WebSocket bridge between clients and the event bus.

Clients send JSON actions:

    {"action": "identify", "user_id": "...", "role": "hospital_dashboard",
     "hospital_id": "HOSP001"}
    {"action": "identify", "user_id": "...", "role": "patient_device",
     "report_id": "..."}
    {"action": "subscribe", "topic": "hospital:HOSP001"}
    {"action": "unsubscribe", "topic": "hospital:HOSP001"}
    {"action": "snapshot", "hospital_id": "HOSP001"}

Every outbound message, replies included, goes through the connection's
outbox so a single task writes to the socket.
"""

import asyncio
import json
import logging
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.api.deps import Bus, Engine
from app.core.config import settings
from app.core.errors import TriageEngineError
from app.db.base import utc_now
from app.services.events import (
    ClientRole,
    Connection,
    EventBus,
    EventType,
    InvalidTopic,
    hospital_topic,
    patient_topic,
)
from app.services.engine import TriageEngine

logger = logging.getLogger(__name__)

router = APIRouter()


def _message(event: str, data: dict[str, Any] | None = None, topic: str | None = None) -> dict:
    return {
        "event": event,
        "topic": topic,
        "data": data or {},
        "timestamp": utc_now().isoformat(),
    }


async def _handle(
    action: dict[str, Any],
    connection: Connection,
    bus: EventBus,
    engine: TriageEngine,
) -> None:
    """Apply one client action and queue the reply."""
    kind = action.get("action")

    if kind == "identify":
        role = ClientRole(action.get("role"))
        report_id = action.get("report_id")
        bus.identify(connection.id, action.get("user_id"), role, report_id)
        if report_id and role in (ClientRole.PATIENT_DEVICE, ClientRole.SUBMITTER):
            bus.subscribe(connection.id, patient_topic(report_id))
        if action.get("hospital_id") and role == ClientRole.HOSPITAL_DASHBOARD:
            bus.subscribe(connection.id, hospital_topic(action["hospital_id"]))
        connection.offer(
            _message("identified", {"role": role.value, "topics": sorted(connection.topics)})
        )

    elif kind == "subscribe":
        bus.subscribe(connection.id, str(action.get("topic", "")))
        connection.offer(_message("subscribed", topic=action.get("topic")))

    elif kind == "unsubscribe":
        bus.unsubscribe(connection.id, str(action.get("topic", "")))
        connection.offer(_message("unsubscribed", topic=action.get("topic")))

    elif kind == "snapshot":
        hospital_id = action.get("hospital_id")
        if not hospital_id:
            raise ValueError("snapshot requires hospital_id")
        snapshot = await engine.snapshot(hospital_id)
        connection.offer(
            _message(
                EventType.HOSPITAL_QUEUE_UPDATE.value,
                snapshot.to_payload(),
                topic=hospital_topic(hospital_id),
            )
        )

    else:
        raise ValueError(f"Unknown action: {kind!r}")


async def _pump(websocket: WebSocket, connection: Connection) -> None:
    """Drain the connection outbox to the socket."""
    while True:
        message = await connection.receive()
        await websocket.send_json(message)


async def _read(
    websocket: WebSocket, connection: Connection, bus: EventBus, engine: TriageEngine
) -> None:
    """Apply client actions until the socket closes."""
    while True:
        raw = await websocket.receive_text()
        try:
            action = json.loads(raw)
            if not isinstance(action, dict):
                raise ValueError("Actions must be JSON objects")
            await _handle(action, connection, bus, engine)
        except (InvalidTopic, ValueError, TriageEngineError) as e:
            connection.offer(_message("error", {"message": str(e)}))


@router.websocket("/ws")
async def realtime_ws(websocket: WebSocket, bus: Bus, engine: Engine) -> None:
    """Serve one client until either direction of the socket ends.

    A failed send ends the session just like a disconnect, so a dead
    client never stays registered on the bus.
    """
    await websocket.accept()
    connection = bus.connect()
    connection.offer(
        _message(
            "connected",
            {
                "connection_id": connection.id,
                "reconnect": {
                    "min_delay_seconds": settings.transport_reconnect_min_seconds,
                    "max_delay_seconds": settings.transport_reconnect_max_seconds,
                    "max_attempts": settings.transport_reconnect_attempts,
                },
            },
        )
    )

    writer = asyncio.create_task(_pump(websocket, connection))
    reader = asyncio.create_task(_read(websocket, connection, bus, engine))
    try:
        done, _pending = await asyncio.wait(
            {reader, writer}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in done:
            error = None if task.cancelled() else task.exception()
            if error is None or isinstance(error, WebSocketDisconnect):
                logger.debug(f"WebSocket closed for connection {connection.id}")
            else:
                logger.warning(f"WebSocket connection {connection.id} failed: {error!r}")
    finally:
        reader.cancel()
        writer.cancel()
        await asyncio.gather(reader, writer, return_exceptions=True)
        bus.disconnect(connection.id)
