"""Per-hospital priority queues.

Each hospital's queue is guarded by its own asyncio.Lock plus a row lock on
its queue_management row, so mutations on one hospital never wait on
another. Inside the guard, every mutation loads the hospital's waiting
entries, verifies the position invariant, applies the change, renumbers,
and commits. Events collected during the mutation are published only after
the commit succeeds.

Ordering rule for waiting entries: ESI level ascending (most critical
first), then entered_queue_at ascending, then arrival sequence.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import Settings, settings as default_settings
from app.core.errors import (
    ConcurrentModification,
    ReportNotFound,
    StoreUnavailableError,
    TriageEngineError,
)
from app.db.base import as_utc, new_id, utc_now
from app.models.event_log import ActorType
from app.models.queue import QueueEntry, QueueState, QueueStatus
from app.models.report import IncidentReport, ReportStatus
from app.services.audit import record_event
from app.services.events import EventBus, EventOutbox, EventType, hospital_topic, patient_topic
from app.services.notifications import NotificationSink
from app.services.triage import apply_criticality

logger = logging.getLogger(__name__)


class QueueConsistencyViolation(TriageEngineError):
    """A hospital queue broke its position invariant.

    Fatal for that hospital's queue: further mutation is halted until an
    operator resumes it. State is never repaired automatically.
    """

    def __init__(self, hospital_id: str, detail: str) -> None:
        super().__init__(f"Queue for hospital {hospital_id} is inconsistent: {detail}")
        self.hospital_id = hospital_id
        self.detail = detail


class QueueHaltedError(QueueConsistencyViolation):
    """Raised when mutating a queue that has been halted."""

    pass


class QueueEntryNotFound(TriageEngineError):
    """Raised when a report has no active queue entry."""

    pass


class _EntryMoved(Exception):
    """The entry changed hospital between lookup and lock."""

    pass


class HospitalLockRegistry:
    """One lazily created lock per hospital id."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, hospital_id: str) -> asyncio.Lock:
        lock = self._locks.get(hospital_id)
        if lock is None:
            lock = self._locks[hospital_id] = asyncio.Lock()
        return lock

    def is_locked(self, hospital_id: str) -> bool:
        lock = self._locks.get(hospital_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, *hospital_ids: str) -> AsyncIterator[None]:
        """Acquire several hospital locks in sorted order."""
        acquired: list[asyncio.Lock] = []
        try:
            for hospital_id in sorted(set(hospital_ids)):
                lock = self.get(hospital_id)
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


def verify_waiting_order(hospital_id: str, waiting: Sequence[QueueEntry]) -> None:
    """Check positions are exactly 1..k and agree with the ordering rule.

    Raises:
        QueueConsistencyViolation: On gaps, duplicates or misordering.
    """
    positions = [entry.queue_position for entry in waiting]
    expected = list(range(1, len(waiting) + 1))
    if sorted(p for p in positions if p is not None) != expected or None in positions:
        raise QueueConsistencyViolation(
            hospital_id, f"waiting positions {positions} are not 1..{len(waiting)}"
        )

    by_position = sorted(waiting, key=lambda e: e.queue_position)
    by_rank = sorted(waiting, key=lambda e: e.rank_key())
    if [e.id for e in by_position] != [e.id for e in by_rank]:
        raise QueueConsistencyViolation(
            hospital_id, "waiting positions disagree with criticality/arrival order"
        )


def estimate_waits(ordered: Sequence[QueueEntry], config: Settings) -> list[int]:
    """Estimated wait per entry: treatment time of every waiting entry ahead."""
    waits: list[int] = []
    ahead = 0
    for entry in ordered:
        waits.append(ahead)
        ahead += config.treatment_seconds(entry.criticality)
    return waits


@dataclass
class EntryView:
    """Read model of one queue entry."""

    report_id: str
    hospital_id: str
    queue_status: str
    queue_position: int | None
    criticality: int
    entered_queue_at: datetime
    estimated_wait_seconds: int | None
    assigned_doctor: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "hospital_id": self.hospital_id,
            "queue_status": self.queue_status,
            "queue_position": self.queue_position,
            "criticality": self.criticality,
            "entered_queue_at": as_utc(self.entered_queue_at).isoformat(),
            "estimated_wait_seconds": self.estimated_wait_seconds,
            "assigned_doctor": self.assigned_doctor,
        }


@dataclass
class QueueSnapshot:
    """Point-in-time ordered view of one hospital's queue."""

    hospital_id: str
    version: int
    taken_at: datetime
    waiting: list[EntryView] = field(default_factory=list)
    in_treatment: list[EntryView] = field(default_factory=list)
    is_halted: bool = False

    def entry(self, report_id: str) -> EntryView | None:
        for view in self.waiting + self.in_treatment:
            if view.report_id == report_id:
                return view
        return None

    def to_payload(self) -> dict[str, Any]:
        return {
            "hospital_id": self.hospital_id,
            "version": self.version,
            "taken_at": self.taken_at.isoformat(),
            "is_halted": self.is_halted,
            "waiting_count": len(self.waiting),
            "waiting": [view.to_payload() for view in self.waiting],
            "in_treatment": [view.to_payload() for view in self.in_treatment],
        }


def build_snapshot(
    hospital_id: str,
    version: int,
    waiting: Sequence[QueueEntry],
    in_treatment: Sequence[QueueEntry],
    config: Settings,
    is_halted: bool = False,
) -> QueueSnapshot:
    ordered = sorted(waiting, key=lambda e: e.queue_position or 0)
    waits = estimate_waits(ordered, config)
    return QueueSnapshot(
        hospital_id=hospital_id,
        version=version,
        taken_at=utc_now(),
        is_halted=is_halted,
        waiting=[
            _view(entry, wait) for entry, wait in zip(ordered, waits)
        ],
        in_treatment=[
            _view(entry, None)
            for entry in sorted(in_treatment, key=lambda e: as_utc(e.updated_at or e.created_at))
        ],
    )


def _view(entry: QueueEntry, wait: int | None) -> EntryView:
    return EntryView(
        report_id=entry.report_id,
        hospital_id=entry.hospital_id,
        queue_status=QueueStatus(entry.queue_status).value,
        queue_position=entry.queue_position,
        criticality=entry.criticality,
        entered_queue_at=entry.entered_queue_at,
        estimated_wait_seconds=wait,
        assigned_doctor=entry.assigned_doctor,
    )


class QueueMutation:
    """Changes applied to one or more hospital queues in a single transaction.

    Only created by QueueManager.mutation(), which holds the hospitals'
    guards for the lifetime of this object.
    """

    def __init__(
        self,
        session: AsyncSession,
        outbox: EventOutbox,
        hospital_ids: Sequence[str],
        config: Settings,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: str | None = None,
    ) -> None:
        self.session = session
        self.outbox = outbox
        self.hospital_ids = tuple(hospital_ids)
        self.config = config
        self.actor_type = actor_type
        self.actor_id = actor_id
        self.correlation_id = uuid4().hex
        self.notifications: list[tuple[str | None, str | None, dict[str, Any]]] = []
        self._states: dict[str, QueueState] = {}
        self._waiting: dict[str, list[QueueEntry]] = {}
        self._before: dict[str, dict[str, int | None]] = {}
        self._departed: dict[str, list[QueueEntry]] = {}

    def _require_guarded(self, hospital_id: str) -> None:
        if hospital_id not in self.hospital_ids:
            raise RuntimeError(f"Hospital {hospital_id} is not held by this mutation")

    async def state(self, hospital_id: str) -> QueueState:
        """Row-lock (or create) the hospital's queue_management row."""
        self._require_guarded(hospital_id)
        if hospital_id in self._states:
            return self._states[hospital_id]

        result = await self.session.execute(
            select(QueueState)
            .where(QueueState.hospital_id == hospital_id)
            .with_for_update()
        )
        state = result.scalar_one_or_none()
        if state is None:
            state = QueueState(hospital_id=hospital_id, version=0, next_arrival_seq=1)
            self.session.add(state)
        elif state.is_halted:
            raise QueueHaltedError(hospital_id, state.halted_reason or "queue halted")

        self._states[hospital_id] = state
        return state

    async def waiting(self, hospital_id: str) -> list[QueueEntry]:
        """Waiting entries in position order, verified on first load."""
        if hospital_id in self._waiting:
            return self._waiting[hospital_id]

        await self.state(hospital_id)
        result = await self.session.execute(
            select(QueueEntry)
            .where(QueueEntry.hospital_id == hospital_id)
            .where(QueueEntry.queue_status == QueueStatus.WAITING.value)
            .order_by(QueueEntry.queue_position)
        )
        entries = list(result.scalars().all())
        verify_waiting_order(hospital_id, entries)

        self._waiting[hospital_id] = entries
        self._before[hospital_id] = {e.id: e.queue_position for e in entries}
        self._departed.setdefault(hospital_id, [])
        return entries

    async def report(self, report_id: str) -> IncidentReport:
        """Row-lock and re-read a report.

        A concurrent mutation holding another hospital's guard waits here
        until the first one commits, then sees its status.
        """
        result = await self.session.execute(
            select(IncidentReport)
            .where(IncidentReport.id == report_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        report = result.scalar_one_or_none()
        if report is None:
            raise ReportNotFound(f"Report not found: {report_id}")
        return report

    async def active_entry(self, report_id: str) -> QueueEntry | None:
        """The report's waiting or in-treatment entry, if any."""
        result = await self.session.execute(
            select(QueueEntry)
            .where(QueueEntry.report_id == report_id)
            .where(
                QueueEntry.queue_status.in_(
                    [QueueStatus.WAITING.value, QueueStatus.IN_TREATMENT.value]
                )
            )
        )
        # Unflushed changes in this mutation win over the stored status
        active = (QueueStatus.WAITING.value, QueueStatus.IN_TREATMENT.value)
        entries = [e for e in result.scalars().all() if e.queue_status in active]
        if len(entries) > 1:
            raise QueueConsistencyViolation(
                entries[0].hospital_id,
                f"report {report_id} is active in {len(entries)} queues",
            )
        return entries[0] if entries else None

    def _renumber(self, hospital_id: str) -> None:
        waiting = self._waiting[hospital_id]
        waiting.sort(key=lambda e: e.rank_key())
        now = utc_now()
        for position, entry in enumerate(waiting, start=1):
            if entry.queue_position != position:
                entry.queue_position = position
                entry.touch(now)

    def set_status(
        self,
        report: IncidentReport,
        target: ReportStatus,
        extra: dict[str, Any] | None = None,
    ) -> None:
        """Transition a report and queue the matching status:update."""
        previous = report.transition_to(target)
        payload = {
            "report_id": report.id,
            "status": target.value,
            "previous_status": previous.value,
            "hospital_id": report.hospital_id,
            **(extra or {}),
        }
        record_event(
            self.session,
            entity_type="patient_report",
            entity_id=report.id,
            event_type="status_changed",
            payload=payload,
            actor_type=self.actor_type,
            actor_id=self.actor_id,
            correlation_id=self.correlation_id,
        )
        self.outbox.add(EventType.STATUS_UPDATE, patient_topic(report.id), payload)

    async def insert(self, report: IncidentReport, hospital_id: str) -> QueueEntry:
        """Add an ASSIGNED report to a hospital queue and mark it QUEUED."""
        if report.criticality is None:
            raise ValueError(f"Report {report.id} has no criticality to rank by")

        existing = await self.active_entry(report.id)
        if existing is not None:
            raise QueueConsistencyViolation(
                existing.hospital_id,
                f"report {report.id} already has an active entry",
            )

        state = await self.state(hospital_id)
        waiting = await self.waiting(hospital_id)
        now = utc_now()

        entry = QueueEntry(
            id=new_id(),
            hospital_id=hospital_id,
            report_id=report.id,
            criticality=report.criticality,
            queue_status=QueueStatus.WAITING.value,
            entered_queue_at=now,
            arrival_seq=state.next_arrival_seq,
            created_at=now,
        )
        state.next_arrival_seq += 1
        self.session.add(entry)
        waiting.append(entry)
        self._renumber(hospital_id)

        report.hospital_id = hospital_id
        self.set_status(report, ReportStatus.QUEUED, {"queue_position": entry.queue_position})

        payload = {
            "report_id": report.id,
            "hospital_id": hospital_id,
            "queue_position": entry.queue_position,
            "criticality": entry.criticality,
            "incident_type": report.incident_type,
            "patient_status": report.patient_status,
        }
        record_event(
            self.session,
            entity_type="patient_queue",
            entity_id=report.id,
            event_type="queue_added",
            payload=payload,
            actor_type=self.actor_type,
            actor_id=self.actor_id,
            correlation_id=self.correlation_id,
        )
        self.outbox.add(EventType.PATIENT_NEW, hospital_topic(hospital_id), payload)
        return entry

    async def leave(
        self,
        entry: QueueEntry,
        status: QueueStatus,
        reason: str,
    ) -> int | None:
        """Take an entry out of the waiting sequence (or close it) and compact.

        Returns:
            The position the entry held, if it was waiting
        """
        hospital_id = entry.hospital_id
        waiting = await self.waiting(hospital_id)
        old_position = entry.queue_position if entry.is_waiting else None

        if entry.is_waiting:
            waiting.remove(entry)
        self._departed[hospital_id].append(entry)

        entry.queue_status = status.value
        entry.queue_position = None
        if status == QueueStatus.REMOVED:
            entry.removal_reason = reason
        entry.touch()
        self._renumber(hospital_id)

        record_event(
            self.session,
            entity_type="patient_queue",
            entity_id=entry.report_id,
            event_type="queue_removed" if status == QueueStatus.REMOVED else "queue_dequeued",
            payload={
                "hospital_id": hospital_id,
                "previous_position": old_position,
                "queue_status": status.value,
                "reason": reason,
            },
            actor_type=self.actor_type,
            actor_id=self.actor_id,
            correlation_id=self.correlation_id,
        )
        return old_position

    async def rerank(self, entry: QueueEntry, criticality: int) -> tuple[int | None, int | None]:
        """Remove and reinsert a waiting entry under a new criticality.

        The entry keeps its original entered_queue_at.
        """
        hospital_id = entry.hospital_id
        waiting = await self.waiting(hospital_id)
        old_position = entry.queue_position

        waiting.remove(entry)
        entry.criticality = criticality
        entry.touch()
        waiting.append(entry)
        self._renumber(hospital_id)

        record_event(
            self.session,
            entity_type="patient_queue",
            entity_id=entry.report_id,
            event_type="queue_reranked",
            payload={
                "hospital_id": hospital_id,
                "criticality": criticality,
                "previous_position": old_position,
                "queue_position": entry.queue_position,
            },
            actor_type=self.actor_type,
            actor_id=self.actor_id,
            correlation_id=self.correlation_id,
        )
        return old_position, entry.queue_position

    def notify(self, report: IncidentReport, payload: dict[str, Any]) -> None:
        """Queue patient and submitter notifications for after commit."""
        self.notifications.append((report.contact_email, report.contact_phone, payload))
        self.notifications.append((report.submitter_email, report.submitter_phone, payload))

    async def finalize(self) -> dict[str, QueueSnapshot]:
        """Verify touched queues, bump versions and queue change events."""
        snapshots: dict[str, QueueSnapshot] = {}
        for hospital_id, waiting in self._waiting.items():
            verify_waiting_order(hospital_id, waiting)

            before = self._before[hospital_id]
            departed = self._departed[hospital_id]
            changed = [e for e in waiting if before.get(e.id) != e.queue_position]
            if not changed and not departed:
                continue

            state = self._states[hospital_id]
            state.version += 1

            result = await self.session.execute(
                select(QueueEntry)
                .where(QueueEntry.hospital_id == hospital_id)
                .where(QueueEntry.queue_status == QueueStatus.IN_TREATMENT.value)
            )
            in_treatment = {
                e.id: e
                for e in result.scalars().all()
                if e.queue_status == QueueStatus.IN_TREATMENT.value
            }
            for entry in departed:
                if entry.queue_status == QueueStatus.IN_TREATMENT.value:
                    in_treatment[entry.id] = entry

            snapshot = build_snapshot(
                hospital_id, state.version, waiting, list(in_treatment.values()), self.config
            )
            snapshots[hospital_id] = snapshot

            for entry in changed:
                view = snapshot.entry(entry.report_id)
                self.outbox.add(
                    EventType.QUEUE_UPDATE, patient_topic(entry.report_id), view.to_payload()
                )
            for entry in departed:
                self.outbox.add(
                    EventType.QUEUE_UPDATE,
                    patient_topic(entry.report_id),
                    _view(entry, None).to_payload(),
                )
            self.outbox.add(
                EventType.HOSPITAL_QUEUE_UPDATE,
                hospital_topic(hospital_id),
                snapshot.to_payload(),
            )

        await self.session.flush()
        return snapshots


class QueueManager:
    """Owns every hospital queue and serializes mutations per hospital."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bus: EventBus,
        notifier: NotificationSink | None = None,
        config: Settings | None = None,
        locks: HospitalLockRegistry | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.bus = bus
        self.notifier = notifier
        self.config = config or default_settings
        self.locks = locks or HospitalLockRegistry()
        self._halted: dict[str, str] = {}

    def is_halted(self, hospital_id: str) -> bool:
        return hospital_id in self._halted

    @asynccontextmanager
    async def mutation(
        self,
        *hospital_ids: str,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: str | None = None,
    ) -> AsyncIterator[QueueMutation]:
        """Run a unit of queue work under the hospitals' guards.

        Commit first, then publish: events reach the bus only after the
        store confirms the transaction.
        """
        ids = sorted(set(hospital_ids))
        for hospital_id in ids:
            if hospital_id in self._halted:
                raise QueueHaltedError(hospital_id, self._halted[hospital_id])

        async with self.locks.hold(*ids):
            outbox = EventOutbox()
            try:
                async with self.session_factory() as session:
                    mutation = QueueMutation(
                        session, outbox, ids, self.config, actor_type, actor_id
                    )
                    for hospital_id in ids:
                        await mutation.state(hospital_id)
                    yield mutation
                    await mutation.finalize()
                    await session.commit()
            except QueueHaltedError as e:
                outbox.discard()
                self._halted.setdefault(e.hospital_id, e.detail)
                raise
            except QueueConsistencyViolation as e:
                outbox.discard()
                await self._halt(e.hospital_id, e.detail)
                raise
            except StaleDataError as e:
                outbox.discard()
                logger.warning(f"Concurrent update rolled back mutation on {ids}: {e}")
                raise ConcurrentModification(f"Report changed during queue update: {e}") from e
            except SQLAlchemyError as e:
                outbox.discard()
                logger.error(f"Queue store failure for {ids}: {e}")
                raise StoreUnavailableError(f"Queue store unavailable: {e}") from e
            except BaseException:
                outbox.discard()
                raise

            await outbox.flush(self.bus)
            if self.notifier is not None:
                for email, phone, payload in mutation.notifications:
                    self.notifier.notify_contacts(email, phone, payload)

    async def _halt(self, hospital_id: str, reason: str) -> None:
        """Stop all mutation on a hospital queue and raise the alarm."""
        self._halted[hospital_id] = reason
        logger.critical(
            f"Halting queue for hospital {hospital_id}: {reason}",
            extra={"hospital_id": hospital_id},
        )
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(QueueState).where(QueueState.hospital_id == hospital_id)
                )
                state = result.scalar_one_or_none()
                if state is None:
                    state = QueueState(hospital_id=hospital_id)
                    session.add(state)
                state.is_halted = True
                state.halted_reason = reason
                state.halted_at = utc_now()
                record_event(
                    session,
                    entity_type="queue_management",
                    entity_id=hospital_id,
                    event_type="queue_halted",
                    payload={"reason": reason},
                )
                await session.commit()
        except SQLAlchemyError:
            # The in-memory halt still applies to this process
            logger.exception(f"Could not persist halt for hospital {hospital_id}")

        message = f"Queue for hospital {hospital_id} halted: {reason}"
        await self.bus.broadcast_alert(message, severity="critical", alert_type="queue_halted")

    async def resume_queue(self, hospital_id: str, actor_id: str | None = None) -> None:
        """Clear a halt after an operator has repaired the queue."""
        async with self.locks.hold(hospital_id):
            async with self.session_factory() as session:
                result = await session.execute(
                    select(QueueState).where(QueueState.hospital_id == hospital_id)
                )
                state = result.scalar_one_or_none()
                if state is not None:
                    state.is_halted = False
                    state.halted_reason = None
                    state.halted_at = None
                record_event(
                    session,
                    entity_type="queue_management",
                    entity_id=hospital_id,
                    event_type="queue_resumed",
                    actor_type=ActorType.OPERATOR,
                    actor_id=actor_id,
                )
                await session.commit()
            self._halted.pop(hospital_id, None)
        logger.warning(f"Queue for hospital {hospital_id} resumed by {actor_id or 'operator'}")

    async def locate(self, report_id: str) -> QueueEntry | None:
        """Find a report's active entry without taking any guard."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(QueueEntry)
                .where(QueueEntry.report_id == report_id)
                .where(
                    QueueEntry.queue_status.in_(
                        [QueueStatus.WAITING.value, QueueStatus.IN_TREATMENT.value]
                    )
                )
            )
            return result.scalars().first()

    async def _mutate_entry(self, report_id: str, operation, actor_type, actor_id):
        """Lock the hospital holding a report's entry and run ``operation``.

        The entry may move between lookup and lock (reassignment); the
        lookup is retried once in that case.
        """
        for _attempt in range(2):
            located = await self.locate(report_id)
            if located is None:
                raise QueueEntryNotFound(f"No active queue entry for report {report_id}")
            try:
                async with self.mutation(
                    located.hospital_id, actor_type=actor_type, actor_id=actor_id
                ) as m:
                    entry = await m.active_entry(report_id)
                    if entry is None or entry.hospital_id != located.hospital_id:
                        raise _EntryMoved(report_id)
                    report = await m.report(report_id)
                    return await operation(m, entry, report)
            except _EntryMoved:
                logger.info(f"Entry for report {report_id} moved during lookup, retrying")
                continue
        raise QueueEntryNotFound(f"Queue entry for report {report_id} kept moving")

    async def start_treatment(
        self,
        report_id: str,
        doctor_name: str | None = None,
        actor_type: ActorType = ActorType.CLINICIAN,
        actor_id: str | None = None,
    ) -> QueueEntry:
        """Dequeue a waiting report for treatment and compact the queue."""

        async def operation(m: QueueMutation, entry: QueueEntry, report: IncidentReport):
            if not entry.is_waiting:
                raise QueueEntryNotFound(f"Report {report_id} is not waiting")
            entry.assigned_doctor = doctor_name
            await m.leave(entry, QueueStatus.IN_TREATMENT, "treatment_started")
            m.set_status(report, ReportStatus.IN_TREATMENT, {"assigned_doctor": doctor_name})

            ready = {
                "report_id": report.id,
                "hospital_id": entry.hospital_id,
                "assigned_doctor": doctor_name,
            }
            m.outbox.add(EventType.TREATMENT_READY, patient_topic(report.id), ready)
            if doctor_name:
                m.outbox.add(EventType.DOCTOR_ASSIGNED, patient_topic(report.id), ready)
            m.notify(report, {"event": "treatment_ready", **ready})
            return entry

        return await self._mutate_entry(report_id, operation, actor_type, actor_id)

    async def discharge(
        self,
        report_id: str,
        actor_type: ActorType = ActorType.CLINICIAN,
        actor_id: str | None = None,
    ) -> QueueEntry:
        """Close an in-treatment entry."""

        async def operation(m: QueueMutation, entry: QueueEntry, report: IncidentReport):
            m.set_status(report, ReportStatus.DISCHARGED)
            await m.leave(entry, QueueStatus.REMOVED, "discharged")
            return entry

        return await self._mutate_entry(report_id, operation, actor_type, actor_id)

    async def remove(
        self,
        report_id: str,
        reason: str = "removed",
        actor_type: ActorType = ActorType.OPERATOR,
        actor_id: str | None = None,
    ) -> QueueEntry:
        """Remove a report from its queue for good."""

        async def operation(m: QueueMutation, entry: QueueEntry, report: IncidentReport):
            m.set_status(report, ReportStatus.REMOVED, {"reason": reason})
            await m.leave(entry, QueueStatus.REMOVED, reason)
            return entry

        return await self._mutate_entry(report_id, operation, actor_type, actor_id)

    async def update_criticality(
        self,
        report_id: str,
        esi_level: int,
        reason: str | None = None,
        confidence: float | None = None,
        source: str = "clinical_reassessment",
        actor_type: ActorType = ActorType.CLINICIAN,
        actor_id: str | None = None,
    ) -> QueueEntry:
        """Record a new score for an enqueued report and re-rank it.

        Only waiting entries move; an in-treatment entry keeps its state
        and just records the new score.
        """

        async def operation(m: QueueMutation, entry: QueueEntry, report: IncidentReport):
            apply_criticality(
                m.session,
                report,
                esi_level,
                reason=reason,
                confidence=confidence,
                source=source,
                actor_type=m.actor_type,
                actor_id=m.actor_id,
                correlation_id=m.correlation_id,
            )
            if entry.is_waiting:
                await m.rerank(entry, esi_level)
            return entry

        return await self._mutate_entry(report_id, operation, actor_type, actor_id)

    async def snapshot(self, hospital_id: str) -> QueueSnapshot:
        """Consistent ordered view of a hospital queue.

        Read without the hospital guard: a single statement reads entries
        and queue version together, so the view is one committed state.
        """
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(QueueEntry, QueueState.version, QueueState.is_halted)
                    .outerjoin(QueueState, QueueState.hospital_id == QueueEntry.hospital_id)
                    .where(QueueEntry.hospital_id == hospital_id)
                    .where(
                        QueueEntry.queue_status.in_(
                            [QueueStatus.WAITING.value, QueueStatus.IN_TREATMENT.value]
                        )
                    )
                )
                rows = result.all()
                if rows:
                    version = rows[0][1] or 0
                    is_halted = bool(rows[0][2])
                else:
                    state_result = await session.execute(
                        select(QueueState).where(QueueState.hospital_id == hospital_id)
                    )
                    state = state_result.scalar_one_or_none()
                    version = state.version if state else 0
                    is_halted = state.is_halted if state else False
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Queue store unavailable: {e}") from e

        entries = [row[0] for row in rows]
        waiting = [e for e in entries if e.queue_status == QueueStatus.WAITING.value]
        in_treatment = [e for e in entries if e.queue_status == QueueStatus.IN_TREATMENT.value]
        return build_snapshot(
            hospital_id,
            version,
            waiting,
            in_treatment,
            self.config,
            is_halted=is_halted or self.is_halted(hospital_id),
        )

    async def estimated_wait_seconds(self, report_id: str) -> int | None:
        """Wait estimate for a waiting report, computed on read."""
        located = await self.locate(report_id)
        if located is None:
            raise QueueEntryNotFound(f"No active queue entry for report {report_id}")
        snapshot = await self.snapshot(located.hospital_id)
        view = snapshot.entry(report_id)
        return view.estimated_wait_seconds if view else None

    async def queue_statistics(self, hospital_id: str) -> dict[str, Any]:
        """Summary counts and wait figures for dashboards."""
        snapshot = await self.snapshot(hospital_id)
        waits = [v.estimated_wait_seconds or 0 for v in snapshot.waiting]
        by_esi: dict[int, int] = {}
        for view in snapshot.waiting:
            by_esi[view.criticality] = by_esi.get(view.criticality, 0) + 1

        return {
            "hospital_id": hospital_id,
            "version": snapshot.version,
            "waiting": len(snapshot.waiting),
            "in_treatment": len(snapshot.in_treatment),
            "average_wait_seconds": round(sum(waits) / len(waits)) if waits else 0,
            "max_wait_seconds": max(waits) if waits else 0,
            "waiting_by_esi": by_esi,
            "is_halted": snapshot.is_halted,
        }
