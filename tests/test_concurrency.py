"""Tests for serialized queue mutation under concurrent requests."""

import asyncio

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine

from app.db.base import Base
from app.models.report import ReportStatus
from app.models.travel import HospitalAssignment
from app.services.engine import TriageEngine
from app.services.events import EventBus
from app.services.queue import HospitalLockRegistry, QueueMutation
from app.services.travel_policy import DEFAULT_POLICY
from tests.conftest import KINGSTON_INCIDENT, hospital, make_session_factory


@pytest.fixture
async def file_engine(tmp_path):
    """Engine over a file database so every session gets its own connection."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = make_session_factory(engine)
    async with factory() as session:
        session.add(hospital("HOSP001", capacity=100))
        await session.commit()

    yield TriageEngine(factory, EventBus(outbox_size=256), policy=DEFAULT_POLICY)

    await engine.dispose()


@pytest.mark.asyncio
async def test_concurrent_assignments_get_contiguous_positions(file_engine):
    lat, lon = KINGSTON_INCIDENT
    report_ids = []
    for _ in range(8):
        report = await file_engine.submit_report(
            incident_type="Fall", patient_status="conscious", latitude=lat, longitude=lon
        )
        await file_engine.record_triage(report.id, 3, assign=False)
        report_ids.append(report.id)

    outcomes = await asyncio.gather(*(file_engine.assign_report(rid) for rid in report_ids))

    assert {o.status for o in outcomes} == {"queued"}
    snapshot = await file_engine.snapshot("HOSP001")
    assert sorted(v.queue_position for v in snapshot.waiting) == list(range(1, 9))
    assert snapshot.version == 8


@pytest.mark.asyncio
async def test_concurrent_mixed_operations_keep_order(file_engine):
    lat, lon = KINGSTON_INCIDENT
    waiting = []
    for esi in (3, 4, 2):
        report = await file_engine.submit_report(
            incident_type="Fall", patient_status="conscious",
            latitude=lat, longitude=lon, esi_level=esi,
        )
        waiting.append(report.id)
    fresh = await file_engine.submit_report(
        incident_type="Fall", patient_status="conscious", latitude=lat, longitude=lon
    )
    await file_engine.record_triage(fresh.id, 1, assign=False)

    await asyncio.gather(
        file_engine.start_treatment(waiting[2]),
        file_engine.assign_report(fresh.id),
        file_engine.record_triage(waiting[1], 1),
    )

    snapshot = await file_engine.snapshot("HOSP001")
    positions = [v.queue_position for v in snapshot.waiting]
    assert positions == list(range(1, len(positions) + 1))
    ranks = [(v.criticality, v.entered_queue_at) for v in snapshot.waiting]
    assert ranks == sorted(ranks)
    assert {v.report_id for v in snapshot.in_treatment} == {waiting[2]}


@pytest.mark.asyncio
async def test_hospital_locks_are_independent():
    locks = HospitalLockRegistry()
    entered = asyncio.Event()

    async def hold_a():
        async with locks.hold("HOSP_A"):
            entered.set()
            await asyncio.sleep(0.05)

    task = asyncio.create_task(hold_a())
    await entered.wait()

    assert locks.is_locked("HOSP_A")
    async with locks.hold("HOSP_B"):
        assert locks.is_locked("HOSP_A")
        assert locks.is_locked("HOSP_B")

    await task
    assert not locks.is_locked("HOSP_A")


@pytest.mark.asyncio
async def test_same_hospital_lock_serializes():
    locks = HospitalLockRegistry()
    order = []

    async def worker(name: str):
        async with locks.hold("HOSP_A"):
            order.append(f"{name}:start")
            await asyncio.sleep(0.01)
            order.append(f"{name}:end")

    await asyncio.gather(worker("one"), worker("two"))

    assert order in (
        ["one:start", "one:end", "two:start", "two:end"],
        ["two:start", "two:end", "one:start", "one:end"],
    )


@pytest.mark.asyncio
async def test_multi_hospital_hold_takes_sorted_order():
    locks = HospitalLockRegistry()

    async def move(a: str, b: str):
        async with locks.hold(a, b):
            await asyncio.sleep(0.01)

    # Opposite argument orders would deadlock without a global ordering
    await asyncio.wait_for(
        asyncio.gather(move("HOSP_A", "HOSP_B"), move("HOSP_B", "HOSP_A")), timeout=2
    )


@pytest.mark.asyncio
async def test_overlapping_placements_of_one_report_leave_one_entry(file_engine, monkeypatch):
    """A placement that commits while another is mid-flight wins; the other is discarded."""
    async with file_engine.session_factory() as session:
        session.add(hospital("HOSP002", 17.9909, -76.9574, capacity=100))
        await session.commit()
    lat, lon = KINGSTON_INCIDENT
    report = await file_engine.submit_report(
        incident_type="Fall", patient_status="conscious", latitude=lat, longitude=lon
    )
    await file_engine.record_triage(report.id, 3, assign=False)

    original_waiting = QueueMutation.waiting
    raced = False

    async def place_elsewhere_first(self, hospital_id):
        nonlocal raced
        if not raced:
            raced = True
            # Runs after this mutation already read the report as triaged
            await file_engine.assign_report(report.id, hospital_id="HOSP002")
        return await original_waiting(self, hospital_id)

    monkeypatch.setattr(QueueMutation, "waiting", place_elsewhere_first)

    outcome = await file_engine.assign_report(report.id, hospital_id="HOSP001")

    assert outcome.status == "discarded"
    assert (await file_engine.snapshot("HOSP001")).waiting == []
    assert [v.report_id for v in (await file_engine.snapshot("HOSP002")).waiting] == [report.id]
    assert not file_engine.queue.is_halted("HOSP001")

    placed = await file_engine.get_report(report.id)
    assert placed.status == ReportStatus.QUEUED
    assert placed.hospital_id == "HOSP002"
    async with file_engine.session_factory() as session:
        active = (
            await session.execute(
                select(HospitalAssignment)
                .where(HospitalAssignment.report_id == report.id)
                .where(HospitalAssignment.is_active == True)
            )
        ).scalars().all()
    assert [a.hospital_id for a in active] == ["HOSP002"]
