"""Triage-to-queue orchestration.

Flow for a report: submit -> record triage -> estimate travel to every
active hospital -> select a hospital -> enqueue in the same transaction as
the assignment -> commit -> publish. Reports that cannot be placed stay
triaged and pending until capacity changes.
"""

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

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
from app.db.base import utc_now
from app.models.event_log import ActorType
from app.models.hospital import Hospital
from app.models.queue import QueueEntry, QueueStatus
from app.models.report import IncidentReport, InvalidStatusTransition, ReportStatus
from app.models.travel import AssignmentRationale, HospitalAssignment, TravelEstimate
from app.services.assignment import (
    AssignmentDecision,
    NoEligibleHospital,
    StaleAssignment,
    build_candidates,
    select as select_hospital,
)
from app.services.audit import record_event
from app.services.events import EventBus, EventOutbox, EventType, patient_topic
from app.services.geo import Coordinates, TravelEstimateResult, estimate, estimate_many
from app.services.hospitals import HospitalDirectory
from app.services.notifications import NotificationSink
from app.services.queue import (
    QueueConsistencyViolation,
    QueueManager,
    QueueMutation,
    QueueSnapshot,
)
from app.services.travel_policy import TravelPolicy, get_travel_policy
from app.services.triage import apply_criticality, validate_esi_level

logger = logging.getLogger(__name__)


class _EntryGone(Exception):
    """The waiting entry disappeared between lookup and lock."""

    pass


@dataclass
class AssignmentOutcome:
    """What happened to an assignment attempt."""

    report_id: str
    status: str  # queued, pending, discarded, unchanged or failed
    hospital_id: str | None = None
    queue_position: int | None = None
    rationale: AssignmentRationale | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "status": self.status,
            "hospital_id": self.hospital_id,
            "queue_position": self.queue_position,
            "rationale": self.rationale.value if self.rationale else None,
            "reason": self.reason,
        }


class TriageEngine:
    """Entry point for every report-level operation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bus: EventBus,
        notifier: NotificationSink | None = None,
        config: Settings | None = None,
        policy: TravelPolicy | None = None,
        queue: QueueManager | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.bus = bus
        self.notifier = notifier
        self.config = config or default_settings
        self.policy = policy or get_travel_policy(
            self.config.travel_policy_file, self.config.travel_policy_timezone
        )
        self.queue = queue or QueueManager(session_factory, bus, notifier, self.config)

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[tuple[AsyncSession, EventOutbox]]:
        """Plain transaction for work outside any hospital queue."""
        outbox = EventOutbox()
        try:
            async with self.session_factory() as session:
                yield session, outbox
                await session.commit()
        except StaleDataError as e:
            outbox.discard()
            raise ConcurrentModification(f"Report changed concurrently: {e}") from e
        except SQLAlchemyError as e:
            outbox.discard()
            raise StoreUnavailableError(f"Store unavailable: {e}") from e
        except BaseException:
            outbox.discard()
            raise
        await outbox.flush(self.bus)

    async def _load_report(self, session: AsyncSession, report_id: str) -> IncidentReport:
        report = await session.get(IncidentReport, report_id)
        if report is None:
            raise ReportNotFound(f"Report not found: {report_id}")
        return report

    # Intake

    async def submit_report(
        self,
        incident_type: str,
        patient_status: str,
        latitude: float | None = None,
        longitude: float | None = None,
        esi_level: int | None = None,
        triage_reason: str | None = None,
        actor_type: ActorType = ActorType.SUBMITTER,
        actor_id: str | None = None,
        **details: Any,
    ) -> IncidentReport:
        """Persist a new report, then triage and assign it if a score is given.

        Structurally invalid coordinates are rejected after the report is
        stored as submitted, so the intake record is never lost.

        Raises:
            InvalidCoordinates: If the supplied coordinates are unusable.
        """
        if esi_level is not None:
            validate_esi_level(esi_level)

        async with self._transaction() as (session, _outbox):
            report = IncidentReport(
                incident_type=incident_type,
                patient_status=patient_status,
                latitude=latitude,
                longitude=longitude,
                status=ReportStatus.SUBMITTED,
                **details,
            )
            session.add(report)
            await session.flush()
            record_event(
                session,
                entity_type="patient_report",
                entity_id=report.id,
                event_type="report_submitted",
                payload={
                    "incident_type": incident_type,
                    "patient_status": patient_status,
                    "has_location": latitude is not None and longitude is not None,
                },
                actor_type=actor_type,
                actor_id=actor_id,
            )

        logger.info(f"Report submitted: {report.id}", extra={"report_id": report.id})

        if latitude is not None or longitude is not None:
            Coordinates.parse(latitude, longitude)

        if esi_level is not None:
            await self.record_triage(report.id, esi_level, reason=triage_reason)
            return await self.get_report(report.id)
        return report

    async def record_triage(
        self,
        report_id: str,
        esi_level: int,
        reason: str | None = None,
        confidence: float | None = None,
        source: str = "intake",
        actor_type: ActorType = ActorType.CLINICIAN,
        actor_id: str | None = None,
        assign: bool = True,
    ) -> AssignmentOutcome | None:
        """Record a criticality score and move the report forward.

        Enqueued reports are re-ranked in their queue. Reports not yet
        placed are (re)assigned unless ``assign`` is False.
        """
        validate_esi_level(esi_level)

        async with self.session_factory() as session:
            current = await self._load_report(session, report_id)
            status = ReportStatus(current.status)

        if status in (ReportStatus.QUEUED, ReportStatus.IN_TREATMENT):
            entry = await self.queue.update_criticality(
                report_id,
                esi_level,
                reason=reason,
                confidence=confidence,
                source=source if source != "intake" else "clinical_reassessment",
                actor_type=actor_type,
                actor_id=actor_id,
            )
            return AssignmentOutcome(
                report_id=report_id,
                status="unchanged",
                hospital_id=entry.hospital_id,
                queue_position=entry.queue_position,
            )

        if status not in (ReportStatus.SUBMITTED, ReportStatus.TRIAGED):
            raise InvalidStatusTransition(status, ReportStatus.TRIAGED)

        # Unusable stored coordinates leave the report untouched
        if current.latitude is not None or current.longitude is not None:
            Coordinates.parse(current.latitude, current.longitude)

        async with self._transaction() as (session, outbox):
            report = await self._load_report(session, report_id)
            apply_criticality(
                session,
                report,
                esi_level,
                reason=reason,
                confidence=confidence,
                source=source,
                actor_type=actor_type,
                actor_id=actor_id,
            )
            if report.status == ReportStatus.SUBMITTED:
                previous = report.transition_to(ReportStatus.TRIAGED)
                payload = {
                    "report_id": report.id,
                    "status": ReportStatus.TRIAGED.value,
                    "previous_status": previous.value,
                    "criticality": esi_level,
                }
                record_event(
                    session,
                    entity_type="patient_report",
                    entity_id=report.id,
                    event_type="status_changed",
                    payload=payload,
                    actor_type=actor_type,
                    actor_id=actor_id,
                )
                outbox.add(EventType.STATUS_UPDATE, patient_topic(report.id), payload)

        if not assign:
            return None
        return await self.assign_report(report_id)

    # Assignment

    async def _rank(
        self,
        report: IncidentReport,
        exclude: Sequence[str] = (),
    ) -> tuple[AssignmentDecision, list[TravelEstimateResult]]:
        """Estimate and select without holding any guard.

        Hospitals whose queue is halted are never candidates.
        """
        if report.latitude is None or report.longitude is None:
            raise NoEligibleHospital(f"Report {report.id} has no incident location")
        origin = Coordinates.parse(report.latitude, report.longitude)

        async with self.session_factory() as session:
            directory = HospitalDirectory(session)
            skipped = set(exclude) | await directory.halted_ids()
            hospitals = [
                h
                for h in await directory.list_active()
                if h.id not in skipped and not self.queue.is_halted(h.id)
            ]
            loads = await directory.current_loads([h.id for h in hospitals])

        estimates = await estimate_many(origin, hospitals, policy=self.policy)
        candidates = build_candidates(estimates, hospitals, loads)
        decision = select_hospital(
            report.criticality,
            report.triage_version,
            candidates,
            self.config.capacity_override_esi_level,
        )
        return decision, estimates

    async def _pinned(
        self, report: IncidentReport, hospital_id: str
    ) -> tuple[AssignmentDecision, list[TravelEstimateResult]]:
        """Decision for an operator-chosen hospital, estimated if possible."""
        async with self.session_factory() as session:
            hospital = await HospitalDirectory(session).get(hospital_id)

        estimates: list[TravelEstimateResult] = []
        if hospital.has_coordinates and report.latitude is not None and report.longitude is not None:
            origin = Coordinates.parse(report.latitude, report.longitude)
            estimates.append(estimate(origin, hospital, policy=self.policy))

        result = estimates[0] if estimates else None
        decision = AssignmentDecision(
            hospital_id=hospital.id,
            rationale=AssignmentRationale.OPERATOR_OVERRIDE,
            reason=f"Pinned to {hospital.name} by operator",
            distance_meters=result.distance_meters if result else None,
            adjusted_travel_time_seconds=result.adjusted_travel_time_seconds if result else None,
            triage_version=report.triage_version,
        )
        return decision, estimates

    def _record_assignment(
        self,
        m: QueueMutation,
        report: IncidentReport,
        decision: AssignmentDecision,
        estimates: Sequence[TravelEstimateResult],
    ) -> HospitalAssignment:
        for result in estimates:
            m.session.add(
                TravelEstimate(
                    report_id=report.id,
                    hospital_id=result.hospital_id,
                    distance_meters=result.distance_meters,
                    travel_time_seconds=result.travel_time_seconds,
                    congestion_factor=result.congestion_factor,
                    method=result.method.value,
                    calculated_at=result.calculated_at,
                )
            )

        assignment = HospitalAssignment(
            report_id=report.id,
            hospital_id=decision.hospital_id,
            rationale=decision.rationale.value,
            reason=decision.reason,
            distance_meters=decision.distance_meters,
            adjusted_travel_time_seconds=decision.adjusted_travel_time_seconds,
            assigned_at=utc_now(),
            is_active=True,
        )
        m.session.add(assignment)
        record_event(
            m.session,
            entity_type="hospital_assignment",
            entity_id=report.id,
            event_type="hospital_assigned",
            payload={
                "hospital_id": decision.hospital_id,
                "rationale": decision.rationale.value,
                "reason": decision.reason,
                "distance_meters": decision.distance_meters,
                "adjusted_travel_time_seconds": decision.adjusted_travel_time_seconds,
                "alternatives": list(decision.alternatives),
            },
            actor_type=m.actor_type,
            actor_id=m.actor_id,
            correlation_id=m.correlation_id,
        )
        return assignment

    async def assign_report(
        self,
        report_id: str,
        hospital_id: str | None = None,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: str | None = None,
    ) -> AssignmentOutcome:
        """Select a hospital for a triaged report and enqueue it.

        The computation captures the report's triage_version. If the report
        was re-triaged or already placed by the time the result is applied,
        the result is discarded.

        A selected queue found halted (or halting on this very insert) is
        skipped and selection runs once more over the remaining hospitals.
        When nothing is left the report is marked pending.

        Raises:
            QueueConsistencyViolation: If an operator-pinned hospital's
                queue is halted. The report is still marked pending.
        """
        async with self.session_factory() as session:
            report = await self._load_report(session, report_id)

        if report.status != ReportStatus.TRIAGED:
            logger.info(
                f"Not assigning report {report_id} in status {report.status}",
                extra={"report_id": report_id},
            )
            return AssignmentOutcome(report_id=report_id, status="discarded",
                                     hospital_id=report.hospital_id)

        captured_version = report.triage_version
        halted: list[str] = []
        for _attempt in range(2):
            try:
                if hospital_id is not None:
                    decision, estimates = await self._pinned(report, hospital_id)
                else:
                    decision, estimates = await self._rank(report, exclude=halted)
            except NoEligibleHospital as e:
                await self._mark_pending(report_id, captured_version, str(e))
                return AssignmentOutcome(report_id=report_id, status="pending", reason=str(e))

            try:
                return await self._place(
                    report_id, captured_version, decision, estimates, actor_type, actor_id
                )
            except QueueConsistencyViolation as e:
                logger.error(
                    f"Queue at {e.hospital_id} unusable for report {report_id}: {e.detail}",
                    extra={"report_id": report_id, "hospital_id": e.hospital_id},
                )
                if hospital_id is not None:
                    await self._mark_pending(report_id, captured_version, str(e))
                    raise
                halted.append(e.hospital_id)

        reason = f"Selected hospital queues are halted: {', '.join(halted)}"
        await self._mark_pending(report_id, captured_version, reason)
        return AssignmentOutcome(report_id=report_id, status="pending", reason=reason)

    async def _place(
        self,
        report_id: str,
        captured_version: int,
        decision: AssignmentDecision,
        estimates: Sequence[TravelEstimateResult],
        actor_type: ActorType,
        actor_id: str | None,
    ) -> AssignmentOutcome:
        """Apply a decision under the chosen hospital's guard."""
        try:
            async with self.queue.mutation(
                decision.hospital_id, actor_type=actor_type, actor_id=actor_id
            ) as m:
                report = await m.report(report_id)
                if report.status != ReportStatus.TRIAGED or report.triage_version != captured_version:
                    logger.info(
                        f"Discarding superseded assignment for report {report_id} "
                        f"(version {captured_version} -> {report.triage_version}, status {report.status})",
                        extra={"report_id": report_id},
                    )
                    return AssignmentOutcome(report_id=report_id, status="discarded",
                                             hospital_id=report.hospital_id)

                self._record_assignment(m, report, decision, estimates)
                report.assignment_pending = False
                report.hospital_id = decision.hospital_id
                m.set_status(report, ReportStatus.ASSIGNED, {"rationale": decision.rationale.value})
                entry = await m.insert(report, decision.hospital_id)
                m.notify(
                    report,
                    {
                        "event": "queue_placed",
                        "report_id": report.id,
                        "hospital_id": decision.hospital_id,
                        "queue_position": entry.queue_position,
                    },
                )
        except ConcurrentModification:
            logger.info(
                f"Discarding assignment for report {report_id}: placed or rescored concurrently",
                extra={"report_id": report_id},
            )
            return AssignmentOutcome(report_id=report_id, status="discarded",
                                     reason="Report changed concurrently")

        logger.info(
            f"Report {report_id} queued at {decision.hospital_id} position {entry.queue_position}",
            extra={"report_id": report_id, "hospital_id": decision.hospital_id},
        )
        return AssignmentOutcome(
            report_id=report_id,
            status="queued",
            hospital_id=decision.hospital_id,
            queue_position=entry.queue_position,
            rationale=decision.rationale,
            reason=decision.reason,
        )

    async def _mark_pending(self, report_id: str, captured_version: int, reason: str) -> None:
        try:
            async with self._transaction() as (session, outbox):
                report = await self._load_report(session, report_id)
                if report.status != ReportStatus.TRIAGED or report.triage_version != captured_version:
                    return
                if not report.assignment_pending:
                    report.assignment_pending = True
                    report.touch()
                payload = {
                    "report_id": report.id,
                    "status": report.display_status,
                    "reason": reason,
                }
                record_event(
                    session,
                    entity_type="patient_report",
                    entity_id=report.id,
                    event_type="assignment_pending",
                    payload=payload,
                )
                outbox.add(EventType.STATUS_UPDATE, patient_topic(report.id), payload)
        except ConcurrentModification:
            # Placed or rescored in the meantime; that change owns the report now
            logger.info(f"Report {report_id} changed before it could be marked pending",
                        extra={"report_id": report_id})
            return
        logger.warning(f"Report {report_id} pending assignment: {reason}",
                       extra={"report_id": report_id})

    async def reassign_report(
        self,
        report_id: str,
        hospital_id: str | None = None,
        reason: str = "reassigned",
        actor_type: ActorType = ActorType.OPERATOR,
        actor_id: str | None = None,
    ) -> AssignmentOutcome:
        """Move a waiting report to another hospital in one transaction.

        Without ``hospital_id`` selection re-runs over every other active
        hospital. The old entry is closed and compacted and the new one
        inserted while both hospitals' guards are held.

        Raises:
            StaleAssignment: If the report left its queue concurrently and
                a re-read did not find it waiting again.
        """
        for _attempt in range(2):
            located = await self.queue.locate(report_id)
            if located is None or not located.is_waiting:
                logger.info(f"Report {report_id} not waiting, re-reading before reassignment")
                continue
            old_hospital_id = located.hospital_id

            async with self.session_factory() as session:
                report = await self._load_report(session, report_id)

            try:
                if hospital_id is not None:
                    decision, estimates = await self._pinned(report, hospital_id)
                else:
                    decision, estimates = await self._rank(report, exclude=[old_hospital_id])
            except NoEligibleHospital as e:
                return AssignmentOutcome(
                    report_id=report_id,
                    status="unchanged",
                    hospital_id=old_hospital_id,
                    queue_position=located.queue_position,
                    reason=str(e),
                )

            if decision.hospital_id == old_hospital_id:
                return AssignmentOutcome(
                    report_id=report_id,
                    status="unchanged",
                    hospital_id=old_hospital_id,
                    queue_position=located.queue_position,
                    reason="Already queued at the selected hospital",
                )

            try:
                entry = await self._move(
                    report_id, old_hospital_id, decision, estimates, reason, actor_type, actor_id
                )
            except _EntryGone:
                logger.info(f"Report {report_id} moved during reassignment, retrying")
                continue

            return AssignmentOutcome(
                report_id=report_id,
                status="queued",
                hospital_id=decision.hospital_id,
                queue_position=entry.queue_position,
                rationale=decision.rationale,
                reason=decision.reason,
            )

        raise StaleAssignment(f"Report {report_id} is no longer waiting in a queue")

    async def _move(
        self,
        report_id: str,
        old_hospital_id: str,
        decision: AssignmentDecision,
        estimates: Sequence[TravelEstimateResult],
        reason: str,
        actor_type: ActorType,
        actor_id: str | None,
    ) -> QueueEntry:
        async with self.queue.mutation(
            old_hospital_id, decision.hospital_id, actor_type=actor_type, actor_id=actor_id
        ) as m:
            entry = await m.active_entry(report_id)
            if entry is None or entry.hospital_id != old_hospital_id or not entry.is_waiting:
                raise _EntryGone(report_id)
            report = await m.report(report_id)

            await m.leave(entry, QueueStatus.REMOVED, reason)
            m.set_status(report, ReportStatus.ASSIGNED, {"reason": reason})

            assignment = self._record_assignment(m, report, decision, estimates)
            result = await m.session.execute(
                select(HospitalAssignment)
                .where(HospitalAssignment.report_id == report_id)
                .where(HospitalAssignment.is_active == True)
                .where(HospitalAssignment.id != assignment.id)
            )
            now = utc_now()
            for previous in result.scalars().all():
                previous.is_active = False
                previous.superseded_at = now
                previous.superseded_by = assignment.id

            new_entry = await m.insert(report, decision.hospital_id)
            m.notify(
                report,
                {
                    "event": "reassigned",
                    "report_id": report.id,
                    "previous_hospital_id": old_hospital_id,
                    "hospital_id": decision.hospital_id,
                    "queue_position": new_entry.queue_position,
                },
            )
        return new_entry

    async def handle_capacity_change(self, hospital_id: str | None = None) -> list[AssignmentOutcome]:
        """Retry every pending report after a hospital's capacity changed.

        Most critical first, then oldest.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                select(IncidentReport.id)
                .where(IncidentReport.status == ReportStatus.TRIAGED.value)
                .where(IncidentReport.assignment_pending == True)
                .order_by(IncidentReport.criticality, IncidentReport.created_at)
            )
            pending = list(result.scalars().all())

        logger.info(
            f"Capacity changed at {hospital_id or 'unknown'}, retrying {len(pending)} pending reports",
            extra={"hospital_id": hospital_id},
        )
        outcomes = []
        for report_id in pending:
            try:
                outcomes.append(await self.assign_report(report_id))
            except TriageEngineError as e:
                logger.error(f"Retry of pending report {report_id} failed: {e}",
                             extra={"report_id": report_id})
                outcomes.append(AssignmentOutcome(report_id=report_id, status="failed", reason=str(e)))
        return outcomes

    # Delegating wrappers

    async def start_treatment(self, report_id: str, doctor_name: str | None = None,
                              actor_id: str | None = None) -> QueueEntry:
        return await self.queue.start_treatment(report_id, doctor_name, actor_id=actor_id)

    async def discharge(self, report_id: str, actor_id: str | None = None) -> QueueEntry:
        return await self.queue.discharge(report_id, actor_id=actor_id)

    async def remove_report(
        self, report_id: str, reason: str = "removed", actor_id: str | None = None
    ) -> IncidentReport:
        """Remove a report from any non-terminal state."""
        located = await self.queue.locate(report_id)
        if located is not None:
            await self.queue.remove(report_id, reason, actor_id=actor_id)
            return await self.get_report(report_id)

        async with self._transaction() as (session, outbox):
            report = await self._load_report(session, report_id)
            previous = report.transition_to(ReportStatus.REMOVED)
            report.assignment_pending = False
            payload = {
                "report_id": report.id,
                "status": ReportStatus.REMOVED.value,
                "previous_status": previous.value,
                "reason": reason,
            }
            record_event(
                session,
                entity_type="patient_report",
                entity_id=report.id,
                event_type="status_changed",
                payload=payload,
                actor_type=ActorType.OPERATOR,
                actor_id=actor_id,
            )
            outbox.add(EventType.STATUS_UPDATE, patient_topic(report.id), payload)
        return report

    async def get_report(self, report_id: str) -> IncidentReport:
        async with self.session_factory() as session:
            return await self._load_report(session, report_id)

    async def active_assignment(self, report_id: str) -> HospitalAssignment | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(HospitalAssignment)
                .where(HospitalAssignment.report_id == report_id)
                .where(HospitalAssignment.is_active == True)
            )
            return result.scalars().first()

    async def list_hospitals(self) -> Sequence[Hospital]:
        async with self.session_factory() as session:
            return await HospitalDirectory(session).list_active()

    async def snapshot(self, hospital_id: str) -> QueueSnapshot:
        async with self.session_factory() as session:
            await HospitalDirectory(session).get(hospital_id)
        return await self.queue.snapshot(hospital_id)

    async def estimated_wait_seconds(self, report_id: str) -> int | None:
        return await self.queue.estimated_wait_seconds(report_id)

    async def queue_statistics(self, hospital_id: str) -> dict[str, Any]:
        async with self.session_factory() as session:
            await HospitalDirectory(session).get(hospital_id)
        return await self.queue.queue_statistics(hospital_id)

    async def resume_queue(
        self, hospital_id: str, actor_id: str | None = None
    ) -> list[AssignmentOutcome]:
        """Clear a halt, then retry reports left pending while it was down."""
        await self.queue.resume_queue(hospital_id, actor_id)
        return await self.handle_capacity_change(hospital_id)
