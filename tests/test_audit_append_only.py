"""Tests for the append-only event log."""

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.event_log import ActorType, EventLogEntry, EventLogImmutableError
from app.schemas.event_log import EventLogFilter
from app.services.audit import EventLogService, record_event


@pytest.mark.asyncio
async def test_record_event(async_session: AsyncSession) -> None:
    """Test writing an event log entry."""
    entry = record_event(
        async_session,
        entity_type="patient_report",
        entity_id="report-1",
        event_type="status_changed",
        payload={"from": "submitted", "to": "triaged"},
        actor_type=ActorType.CLINICIAN,
        actor_id="nurse-7",
        correlation_id="corr-1",
    )
    await async_session.commit()

    assert entry.id is not None
    assert entry.timestamp is not None
    assert entry.actor_type == ActorType.CLINICIAN
    assert entry.payload == {"from": "submitted", "to": "triaged"}


@pytest.mark.asyncio
async def test_event_not_written_on_rollback(async_session: AsyncSession) -> None:
    """Entries share the caller's transaction."""
    record_event(async_session, "patient_report", "report-1", "status_changed")
    await async_session.rollback()

    result = await async_session.execute(select(EventLogEntry))
    assert result.scalars().all() == []


@pytest.mark.asyncio
async def test_event_log_update_blocked(async_session: AsyncSession) -> None:
    """Test that updating an entry is rejected at flush time."""
    entry = record_event(async_session, "patient_queue", "report-1", "queue_added")
    await async_session.commit()

    entry.event_type = "tampered"
    with pytest.raises(EventLogImmutableError):
        await async_session.flush()


@pytest.mark.asyncio
async def test_event_log_delete_blocked(async_session: AsyncSession) -> None:
    """Test that deleting an entry is rejected at flush time."""
    entry = record_event(async_session, "patient_queue", "report-1", "queue_added")
    await async_session.commit()

    await async_session.delete(entry)
    with pytest.raises(EventLogImmutableError):
        await async_session.flush()


@pytest.mark.asyncio
async def test_event_log_service_filters(async_session: AsyncSession) -> None:
    """Test event log filtering capabilities."""
    record_event(async_session, "patient_report", "report-1", "status_changed",
                 correlation_id="corr-a")
    record_event(async_session, "patient_queue", "report-1", "queue_added",
                 correlation_id="corr-a")
    record_event(async_session, "patient_queue", "report-2", "queue_added",
                 correlation_id="corr-b")
    await async_session.commit()

    service = EventLogService(async_session)

    by_entity = await service.get_events(EventLogFilter(entity_id="report-1"))
    assert len(by_entity) == 2

    by_type = await service.get_events(EventLogFilter(event_type="queue_added"))
    assert {e.entity_id for e in by_type} == {"report-1", "report-2"}

    by_correlation = await service.get_events(EventLogFilter(correlation_id="corr-a"))
    assert {e.event_type for e in by_correlation} == {"status_changed", "queue_added"}

    limited = await service.get_events(EventLogFilter(limit=1))
    assert len(limited) == 1


@pytest.mark.asyncio
async def test_queue_operations_leave_a_trail(triage_engine, single_hospital, submit, session_factory):
    """Every queue and status transition writes an entry."""
    report = await submit(2)
    await triage_engine.start_treatment(report.id)

    async with session_factory() as session:
        history = await EventLogService(session).get_entity_history("patient_queue", report.id)
        report_history = await EventLogService(session).get_entity_history(
            "patient_report", report.id
        )

    assert [e.event_type for e in history] == ["queue_added", "queue_dequeued"]
    assert history[0].payload["queue_position"] == 1
    assert history[1].payload["previous_position"] == 1

    transitions = {
        (e.payload["previous_status"], e.payload["status"])
        for e in report_history
        if e.event_type == "status_changed"
    }
    assert transitions == {
        ("submitted", "triaged"),
        ("triaged", "assigned"),
        ("assigned", "queued"),
        ("queued", "in_treatment"),
    }
