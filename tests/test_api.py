"""HTTP and WebSocket API tests."""

import asyncio
import logging

import pytest
from fastapi.testclient import TestClient

from app.api.v1.realtime import realtime_ws
from app.services.events import EventBus
from tests.conftest import KINGSTON_INCIDENT

REPORTS = "/api/v1/reports"
HOSPITALS = "/api/v1/hospitals"
WS = "/api/v1/realtime/ws"


def report_body(esi_level: int | None = None, **overrides) -> dict:
    lat, lon = KINGSTON_INCIDENT
    body = {
        "incident_type": "Road traffic collision",
        "patient_status": "conscious",
        "latitude": lat,
        "longitude": lon,
        "esi_level": esi_level,
    }
    body.update(overrides)
    return body


class TestReports:
    """Tests for report endpoints."""

    def test_submit_and_queue(self, client: TestClient) -> None:
        response = client.post(REPORTS, json=report_body(2, patient_name="Jane Doe"))

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "queued"
        assert data["criticality"] == 2
        assert data["hospital_id"] == "HOSP001"
        assert data["assignment"]["rationale"] == "best_travel_time"

    def test_submit_without_score(self, client: TestClient) -> None:
        response = client.post(REPORTS, json=report_body())

        assert response.status_code == 201
        assert response.json()["status"] == "submitted"
        assert response.json()["assignment"] is None

    def test_invalid_coordinates_rejected(self, client: TestClient) -> None:
        response = client.post(REPORTS, json=report_body(2, latitude=95.0))

        assert response.status_code == 422
        assert response.json()["error"] == "InvalidCoordinates"

    def test_invalid_esi_rejected(self, client: TestClient) -> None:
        response = client.post(REPORTS, json=report_body(7))

        assert response.status_code == 422

    def test_missing_location_is_accepted_as_pending(self, client: TestClient) -> None:
        created = client.post(REPORTS, json=report_body(latitude=None, longitude=None)).json()

        response = client.post(f"{REPORTS}/{created['id']}/triage", json={"esi_level": 3})

        assert response.status_code == 202
        assert response.json()["status"] == "pending"
        report = client.get(f"{REPORTS}/{created['id']}").json()
        assert report["display_status"] == "assigned:pending"

    def test_unknown_report_is_404(self, client: TestClient) -> None:
        response = client.get(f"{REPORTS}/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "ReportNotFound"

    def test_treatment_lifecycle(self, client: TestClient) -> None:
        report_id = client.post(REPORTS, json=report_body(2)).json()["id"]

        started = client.post(
            f"{REPORTS}/{report_id}/start-treatment", json={"doctor_name": "Dr. Brown"}
        )
        assert started.status_code == 200
        assert started.json()["status"] == "in_treatment"

        discharged = client.post(f"{REPORTS}/{report_id}/discharge")
        assert discharged.status_code == 200
        assert discharged.json()["status"] == "discharged"

        again = client.post(f"{REPORTS}/{report_id}/remove")
        assert again.status_code == 409

    def test_wait_estimate(self, client: TestClient) -> None:
        first = client.post(REPORTS, json=report_body(1)).json()["id"]
        second = client.post(REPORTS, json=report_body(3)).json()["id"]

        assert client.get(f"{REPORTS}/{first}/wait").json()["estimated_wait_seconds"] == 0
        assert client.get(f"{REPORTS}/{second}/wait").json()["estimated_wait_seconds"] == 45 * 60

    def test_reassign(self, client: TestClient) -> None:
        report_id = client.post(REPORTS, json=report_body(3)).json()["id"]

        response = client.post(f"{REPORTS}/{report_id}/reassign", json={"hospital_id": "HOSP002"})

        assert response.status_code == 200
        assert response.json()["hospital_id"] == "HOSP002"
        assert response.json()["rationale"] == "operator_override"
        assert client.get(f"{HOSPITALS}/HOSP001/queue").json()["waiting"] == []


class TestHospitals:
    """Tests for hospital and queue endpoints."""

    def test_list_hospitals(self, client: TestClient) -> None:
        response = client.get(HOSPITALS)

        assert response.status_code == 200
        assert [h["id"] for h in response.json()] == ["HOSP001", "HOSP002"]

    def test_queue_snapshot_is_ordered(self, client: TestClient) -> None:
        routine = client.post(REPORTS, json=report_body(4)).json()["id"]
        critical = client.post(REPORTS, json=report_body(1)).json()["id"]

        snapshot = client.get(f"{HOSPITALS}/HOSP001/queue").json()

        assert [e["report_id"] for e in snapshot["waiting"]] == [critical, routine]
        assert [e["queue_position"] for e in snapshot["waiting"]] == [1, 2]
        assert snapshot["is_halted"] is False

    def test_statistics(self, client: TestClient) -> None:
        client.post(REPORTS, json=report_body(2))

        stats = client.get(f"{HOSPITALS}/HOSP001/statistics").json()

        assert stats["waiting"] == 1
        assert stats["waiting_by_esi"] == {"2": 1}

    def test_unknown_hospital_is_404(self, client: TestClient) -> None:
        assert client.get(f"{HOSPITALS}/NOPE/queue").status_code == 404

    def test_capacity_changed_without_pending(self, client: TestClient) -> None:
        response = client.post(f"{HOSPITALS}/HOSP001/capacity-changed")

        assert response.status_code == 200
        assert response.json()["retried"] == 0


class TestEventLog:
    """Tests for the read-only event log endpoints."""

    def test_entity_history(self, client: TestClient) -> None:
        report_id = client.post(REPORTS, json=report_body(2)).json()["id"]

        response = client.get(f"/api/v1/events/patient_queue/{report_id}")

        assert response.status_code == 200
        assert [e["event_type"] for e in response.json()] == ["queue_added"]

    def test_no_write_endpoints(self, client: TestClient) -> None:
        assert client.post("/api/v1/events", json={}).status_code == 405


class TestRealtime:
    """Tests for the WebSocket transport."""

    def test_connect_reports_reconnect_policy(self, client: TestClient) -> None:
        with client.websocket_connect(WS) as ws:
            hello = ws.receive_json()

        assert hello["event"] == "connected"
        assert hello["data"]["reconnect"]["max_attempts"] > 0

    def test_dashboard_receives_queue_events(self, client: TestClient) -> None:
        with client.websocket_connect(WS) as ws:
            ws.receive_json()
            ws.send_json(
                {
                    "action": "identify",
                    "user_id": "staff-1",
                    "role": "hospital_dashboard",
                    "hospital_id": "HOSP001",
                }
            )
            identified = ws.receive_json()
            assert identified["data"]["topics"] == ["hospital:HOSP001"]

            report_id = client.post(REPORTS, json=report_body(2)).json()["id"]

            new_patient = ws.receive_json()
            snapshot = ws.receive_json()

        assert new_patient["event"] == "patient:new"
        assert new_patient["data"]["report_id"] == report_id
        assert snapshot["event"] == "hospital:queue:update"
        assert snapshot["data"]["waiting"][0]["report_id"] == report_id

    def test_patient_device_receives_position_updates(self, client: TestClient) -> None:
        report_id = client.post(REPORTS, json=report_body(4)).json()["id"]

        with client.websocket_connect(WS) as ws:
            ws.receive_json()
            ws.send_json(
                {
                    "action": "identify",
                    "user_id": "patient-1",
                    "role": "patient_device",
                    "report_id": report_id,
                }
            )
            ws.receive_json()

            client.post(REPORTS, json=report_body(1))
            update = ws.receive_json()

        assert update["event"] == "queue:update"
        assert update["data"]["queue_position"] == 2

    def test_snapshot_on_request(self, client: TestClient) -> None:
        client.post(REPORTS, json=report_body(3))

        with client.websocket_connect(WS) as ws:
            ws.receive_json()
            ws.send_json({"action": "snapshot", "hospital_id": "HOSP001"})
            snapshot = ws.receive_json()

        assert snapshot["event"] == "hospital:queue:update"
        assert len(snapshot["data"]["waiting"]) == 1

    def test_bad_actions_return_errors(self, client: TestClient) -> None:
        with client.websocket_connect(WS) as ws:
            ws.receive_json()
            ws.send_text("not json")
            assert ws.receive_json()["event"] == "error"
            ws.send_json({"action": "subscribe", "topic": "queue:HOSP001"})
            assert ws.receive_json()["event"] == "error"
            ws.send_json({"action": "dance"})
            assert ws.receive_json()["event"] == "error"


class VanishedSocket:
    """Socket whose client is gone: every send fails, nothing is received."""

    def __init__(self) -> None:
        self.closed = asyncio.Event()

    async def accept(self) -> None:
        pass

    async def send_json(self, message: dict) -> None:
        raise RuntimeError("socket closed")

    async def receive_text(self) -> str:
        await self.closed.wait()
        return ""


@pytest.mark.asyncio
async def test_failed_send_ends_session_and_unregisters(caplog) -> None:
    bus = EventBus(outbox_size=8)

    with caplog.at_level(logging.WARNING, logger="app.api.v1.realtime"):
        await asyncio.wait_for(realtime_ws(VanishedSocket(), bus, None), timeout=5)

    assert bus.stats()["total_connections"] == 0
    assert "socket closed" in caplog.text
