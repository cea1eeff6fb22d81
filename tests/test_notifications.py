"""Tests for fire-and-forget notification dispatch."""

import logging
from typing import Any
from unittest.mock import AsyncMock

import pytest

from app.models.report import ReportStatus
from app.services.engine import TriageEngine
from app.services.notifications import (
    NotificationChannel,
    NotificationProvider,
    NotificationProviderError,
    NotificationSink,
    render_text,
)
from app.services.travel_policy import DEFAULT_POLICY
from tests.conftest import KINGSTON_INCIDENT


class RecordingProvider(NotificationProvider):
    """Provider that remembers what it was asked to send."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []

    async def send(self, recipient: str, payload: dict[str, Any]) -> str:
        self.sent.append((recipient, payload))
        return f"msg-{len(self.sent)}"


class FailingProvider(NotificationProvider):
    async def send(self, recipient: str, payload: dict[str, Any]) -> str:
        raise NotificationProviderError("gateway down")


@pytest.mark.asyncio
async def test_dispatch_delivers_in_background():
    sms = RecordingProvider()
    sink = NotificationSink(sms_provider=sms, email_provider=RecordingProvider())

    sink.dispatch(NotificationChannel.SMS, "+18765550100", {"message": "Queued"})
    await sink.drain()

    assert sms.sent == [("+18765550100", {"message": "Queued"})]


@pytest.mark.asyncio
async def test_provider_failure_is_logged_not_raised(caplog):
    sink = NotificationSink(sms_provider=FailingProvider(), email_provider=RecordingProvider())

    with caplog.at_level(logging.ERROR, logger="app.services.notifications"):
        sink.dispatch("sms", "+18765550100", {"message": "Queued"})
        await sink.drain()

    assert "sms notification to +18765550100 failed" in caplog.text


@pytest.mark.asyncio
async def test_disabled_sink_sends_nothing():
    sms = RecordingProvider()
    sink = NotificationSink(sms_provider=sms, email_provider=RecordingProvider(), enabled=False)

    sink.notify_contacts("patient@example.com", "+18765550100", {"message": "Queued"})
    await sink.drain()

    assert sms.sent == []


@pytest.mark.asyncio
async def test_notify_contacts_skips_missing_channels():
    sms = RecordingProvider()
    email = RecordingProvider()
    sink = NotificationSink(sms_provider=sms, email_provider=email)

    sink.notify_contacts("patient@example.com", None, {"message": "Queued"})
    await sink.drain()

    assert sms.sent == []
    assert [recipient for recipient, _ in email.sent] == ["patient@example.com"]


def test_render_text_prefers_message():
    assert render_text({"message": "Hello", "x": 1}) == "Hello"
    assert render_text({"b": 2, "a": 1}) == "a=1; b=2"


@pytest.mark.asyncio
async def test_queue_placement_notifies_contacts(session_factory, bus, single_hospital):
    """Patient and submitter contacts hear about the queue position after commit."""
    sms = RecordingProvider()
    email = RecordingProvider()
    sink = NotificationSink(sms_provider=sms, email_provider=email)
    engine = TriageEngine(session_factory, bus, notifier=sink, policy=DEFAULT_POLICY)
    lat, lon = KINGSTON_INCIDENT

    report = await engine.submit_report(
        incident_type="Fall",
        patient_status="conscious",
        latitude=lat,
        longitude=lon,
        esi_level=3,
        contact_phone="+18765550100",
        submitter_email="bystander@example.com",
    )
    await sink.drain()

    assert report.status == ReportStatus.QUEUED
    assert [recipient for recipient, _ in sms.sent] == ["+18765550100"]
    assert [recipient for recipient, _ in email.sent] == ["bystander@example.com"]


@pytest.mark.asyncio
async def test_failing_provider_does_not_block_queue(session_factory, bus, single_hospital):
    sink = NotificationSink(sms_provider=FailingProvider(), email_provider=FailingProvider())
    engine = TriageEngine(session_factory, bus, notifier=sink, policy=DEFAULT_POLICY)
    lat, lon = KINGSTON_INCIDENT

    report = await engine.submit_report(
        incident_type="Fall",
        patient_status="conscious",
        latitude=lat,
        longitude=lon,
        esi_level=2,
        contact_phone="+18765550100",
    )
    await sink.drain()

    snapshot = await engine.snapshot(single_hospital)
    assert snapshot.entry(report.id).queue_position == 1


@pytest.mark.asyncio
async def test_treatment_ready_notifies_patient(session_factory, bus, single_hospital):
    email = AsyncMock(spec=NotificationProvider)
    email.send.return_value = "email-1"
    sink = NotificationSink(sms_provider=RecordingProvider(), email_provider=email)
    engine = TriageEngine(session_factory, bus, notifier=sink, policy=DEFAULT_POLICY)
    lat, lon = KINGSTON_INCIDENT
    report = await engine.submit_report(
        incident_type="Fall",
        patient_status="conscious",
        latitude=lat,
        longitude=lon,
        esi_level=2,
        contact_email="patient@example.com",
    )
    await sink.drain()
    email.send.reset_mock()

    await engine.start_treatment(report.id, doctor_name="Dr. Brown")
    await sink.drain()

    email.send.assert_awaited_once()
    recipient, payload = email.send.await_args.args
    assert recipient == "patient@example.com"
    assert payload["event"] == "treatment_ready"
