"""Real-time event distribution.

In-process pub/sub over per-connection asyncio queues. Each connected
client owns a bounded outbox drained by its transport (see
app/api/v1/realtime.py). Delivery is best-effort and at most once: a full
outbox drops the event for that connection, and nothing is replayed after a
reconnect. Clients request a fresh snapshot instead.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from app.core.errors import TransportError
from app.db.base import utc_now

logger = logging.getLogger(__name__)

HOSPITAL_TOPIC_PREFIX = "hospital:"
PATIENT_TOPIC_PREFIX = "patient:"


class EventType(str, Enum):
    """Named events pushed to subscribers."""

    QUEUE_UPDATE = "queue:update"  # One report's queue state changed
    HOSPITAL_QUEUE_UPDATE = "hospital:queue:update"  # Full ordered snapshot
    STATUS_UPDATE = "status:update"  # Lifecycle transition
    DOCTOR_ASSIGNED = "doctor:assigned"
    PATIENT_NEW = "patient:new"  # New entry in a hospital queue
    TREATMENT_READY = "treatment:ready"
    SYSTEM_ALERT = "system:alert"


class ClientRole(str, Enum):
    """Declared identity of a connected client."""

    HOSPITAL_DASHBOARD = "hospital_dashboard"
    PATIENT_DEVICE = "patient_device"
    SUBMITTER = "submitter"


class InvalidTopic(ValueError):
    """Raised for topics outside the hospital:/patient: namespaces."""

    pass


class UnknownConnection(TransportError):
    """Raised when an operation names a connection the bus doesn't hold."""

    pass


def hospital_topic(hospital_id: str) -> str:
    return f"{HOSPITAL_TOPIC_PREFIX}{hospital_id}"


def patient_topic(report_id: str) -> str:
    return f"{PATIENT_TOPIC_PREFIX}{report_id}"


def validate_topic(topic: str) -> str:
    """Check a topic is ``hospital:<id>`` or ``patient:<id>``."""
    for prefix in (HOSPITAL_TOPIC_PREFIX, PATIENT_TOPIC_PREFIX):
        if topic.startswith(prefix) and len(topic) > len(prefix):
            return topic
    raise InvalidTopic(f"Unsupported topic: {topic!r}")


@dataclass(frozen=True)
class Event:
    """A typed event addressed to a topic, or to everyone when topic is None."""

    type: EventType
    topic: str | None
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=utc_now)

    def to_message(self) -> dict[str, Any]:
        """JSON-serializable wire form."""
        return {
            "event": self.type.value,
            "topic": self.topic,
            "data": self.payload,
            "timestamp": self.timestamp.isoformat(),
        }


class Connection:
    """One client's subscription state and outbox."""

    def __init__(self, connection_id: str, outbox_size: int) -> None:
        self.id = connection_id
        self.outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=outbox_size)
        self.topics: set[str] = set()
        self.user_id: str | None = None
        self.role: ClientRole | None = None
        self.report_id: str | None = None
        self.connected_at = utc_now()
        self.dropped = 0

    def offer(self, message: dict[str, Any]) -> bool:
        """Queue a message without waiting; drop it if the outbox is full."""
        try:
            self.outbox.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Outbox full for connection {self.id}, dropped {message.get('event')}"
            )
            return False

    async def receive(self) -> dict[str, Any]:
        """Wait for the next message addressed to this connection."""
        return await self.outbox.get()


class EventBus:
    """Topic-based fan-out to connected clients."""

    def __init__(self, outbox_size: int = 256) -> None:
        self.outbox_size = outbox_size
        self._connections: dict[str, Connection] = {}
        self._subscribers: dict[str, set[str]] = defaultdict(set)

    def connect(self, connection_id: str | None = None) -> Connection:
        """Register a new client connection."""
        connection = Connection(connection_id or uuid4().hex, self.outbox_size)
        self._connections[connection.id] = connection
        logger.info(f"Client connected: {connection.id}")
        return connection

    def _get(self, connection_id: str) -> Connection:
        connection = self._connections.get(connection_id)
        if connection is None:
            raise UnknownConnection(f"Connection not registered: {connection_id}")
        return connection

    def identify(
        self,
        connection_id: str,
        user_id: str | None,
        role: ClientRole | str,
        report_id: str | None = None,
    ) -> Connection:
        """Record who is on the other end of a connection."""
        connection = self._get(connection_id)
        connection.user_id = user_id
        connection.role = ClientRole(role)
        connection.report_id = report_id
        logger.info(f"Client identified: {user_id} ({connection.role.value})")
        return connection

    def subscribe(self, connection_id: str, topic: str) -> None:
        connection = self._get(connection_id)
        topic = validate_topic(topic)
        connection.topics.add(topic)
        self._subscribers[topic].add(connection_id)
        logger.debug(f"Client {connection_id} subscribed to {topic}")

    def unsubscribe(self, connection_id: str, topic: str) -> None:
        """Drop interest in a topic; the connection stays open."""
        connection = self._get(connection_id)
        connection.topics.discard(topic)
        self._drop_subscriber(topic, connection_id)

    def disconnect(self, connection_id: str) -> None:
        """Tear down a connection and every topic interest it held."""
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return
        for topic in connection.topics:
            self._drop_subscriber(topic, connection_id)
        connection.topics.clear()
        logger.info(f"Client disconnected: {connection.user_id or connection_id}")

    def _drop_subscriber(self, topic: str, connection_id: str) -> None:
        members = self._subscribers.get(topic)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self._subscribers[topic]

    def subscribers(self, topic: str) -> list[Connection]:
        return [
            self._connections[cid]
            for cid in self._subscribers.get(topic, ())
            if cid in self._connections
        ]

    async def publish(self, event: Event) -> int:
        """Deliver an event to every subscriber of its topic.

        Returns:
            Number of connections the event was queued for
        """
        if event.topic is None:
            targets = list(self._connections.values())
        else:
            targets = self.subscribers(event.topic)

        message = event.to_message()
        delivered = sum(1 for connection in targets if connection.offer(message))
        logger.debug(
            f"Published {event.type.value} to {event.topic or '*'} ({delivered} delivered)"
        )
        return delivered

    async def publish_many(self, events: list[Event]) -> int:
        delivered = 0
        for event in events:
            delivered += await self.publish(event)
        return delivered

    async def broadcast_alert(
        self, message: str, severity: str = "critical", alert_type: str = "system"
    ) -> int:
        """Send a system:alert to every connected client."""
        return await self.publish(
            Event(
                type=EventType.SYSTEM_ALERT,
                topic=None,
                payload={"type": alert_type, "message": message, "severity": severity},
            )
        )

    def stats(self) -> dict[str, int]:
        """Connection counts by declared role."""
        stats = {"total_connections": len(self._connections)}
        for role in ClientRole:
            stats[role.value] = 0
        stats["unidentified"] = 0
        for connection in self._connections.values():
            key = connection.role.value if connection.role else "unidentified"
            stats[key] += 1
        return stats


class EventOutbox:
    """Events collected during a transaction, published after commit.

    The owner calls flush() only once the store has confirmed the commit,
    and discard() when the transaction rolls back.
    """

    def __init__(self) -> None:
        self._events: list[Event] = []

    def __len__(self) -> int:
        return len(self._events)

    def add(self, event_type: EventType, topic: str | None, payload: dict[str, Any]) -> None:
        self._events.append(Event(type=event_type, topic=topic, payload=payload))

    @property
    def events(self) -> list[Event]:
        return list(self._events)

    def discard(self) -> None:
        self._events.clear()

    async def flush(self, bus: "EventBus") -> int:
        events, self._events = self._events, []
        return await bus.publish_many(events)
