"""Incident report endpoints.

Domain errors raised by the engine are translated to HTTP responses by the
exception handlers registered in app.main.
"""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from app.api.deps import Engine
from app.models.event_log import ActorType
from app.schemas.report import (
    AssignmentOutcomeRead,
    AssignmentRead,
    AssignRequest,
    ReassignRequest,
    RemoveRequest,
    ReportCreate,
    ReportRead,
    StartTreatmentRequest,
    TriageRecord,
    WaitEstimateRead,
)
from app.services.engine import AssignmentOutcome, TriageEngine

router = APIRouter()


async def _read(engine: TriageEngine, report_id: str) -> ReportRead:
    report = await engine.get_report(report_id)
    assignment = await engine.active_assignment(report_id)
    read = ReportRead.model_validate(report)
    read.assignment = AssignmentRead.model_validate(assignment) if assignment else None
    return read


def _outcome_response(outcome: AssignmentOutcome | None) -> JSONResponse:
    """Pending assignments are accepted, not failed."""
    if outcome is None:
        return JSONResponse(status_code=status.HTTP_200_OK, content=None)
    code = status.HTTP_202_ACCEPTED if outcome.status == "pending" else status.HTTP_200_OK
    return JSONResponse(
        status_code=code,
        content=AssignmentOutcomeRead(**outcome.to_dict()).model_dump(mode="json"),
    )


@router.post(
    "",
    response_model=ReportRead,
    status_code=status.HTTP_201_CREATED,
    summary="Submit report",
    description="Submit an incident report; triaged and assigned immediately when an ESI level is given",
)
async def submit_report(data: ReportCreate, engine: Engine) -> ReportRead:
    """Submit a new incident report.

    Args:
        data: Report details
        engine: Triage engine

    Returns:
        The stored report, with its assignment if one was made
    """
    details = data.model_dump(exclude={"latitude", "longitude", "incident_type",
                                       "patient_status", "esi_level", "triage_reason"})
    report = await engine.submit_report(
        incident_type=data.incident_type,
        patient_status=data.patient_status,
        latitude=data.latitude,
        longitude=data.longitude,
        esi_level=data.esi_level,
        triage_reason=data.triage_reason,
        **details,
    )
    return await _read(engine, report.id)


@router.get(
    "/{report_id}",
    response_model=ReportRead,
    status_code=status.HTTP_200_OK,
    summary="Get report",
)
async def get_report(report_id: str, engine: Engine) -> ReportRead:
    return await _read(engine, report_id)


@router.post(
    "/{report_id}/triage",
    response_model=AssignmentOutcomeRead | None,
    summary="Record triage",
    description="Record an ESI level; queued reports are re-ranked, others assigned",
)
async def record_triage(report_id: str, data: TriageRecord, engine: Engine) -> JSONResponse:
    outcome = await engine.record_triage(
        report_id,
        data.esi_level,
        reason=data.reason,
        confidence=data.confidence,
        source=data.source,
        assign=data.assign,
    )
    return _outcome_response(outcome)


@router.post(
    "/{report_id}/assign",
    response_model=AssignmentOutcomeRead,
    summary="Assign report",
    description="Select a hospital for a triaged report, optionally pinned by an operator",
)
async def assign_report(
    report_id: str, engine: Engine, data: AssignRequest | None = None
) -> JSONResponse:
    pinned = data.hospital_id if data else None
    outcome = await engine.assign_report(
        report_id,
        hospital_id=pinned,
        actor_type=ActorType.OPERATOR if pinned else ActorType.SYSTEM,
    )
    return _outcome_response(outcome)


@router.post(
    "/{report_id}/reassign",
    response_model=AssignmentOutcomeRead,
    summary="Reassign report",
    description="Move a waiting report to another hospital atomically",
)
async def reassign_report(report_id: str, data: ReassignRequest, engine: Engine) -> JSONResponse:
    outcome = await engine.reassign_report(
        report_id, hospital_id=data.hospital_id, reason=data.reason
    )
    return _outcome_response(outcome)


@router.post(
    "/{report_id}/start-treatment",
    response_model=ReportRead,
    summary="Start treatment",
)
async def start_treatment(
    report_id: str, engine: Engine, data: StartTreatmentRequest | None = None
) -> ReportRead:
    await engine.start_treatment(report_id, doctor_name=data.doctor_name if data else None)
    return await _read(engine, report_id)


@router.post(
    "/{report_id}/discharge",
    response_model=ReportRead,
    summary="Discharge patient",
)
async def discharge(report_id: str, engine: Engine) -> ReportRead:
    await engine.discharge(report_id)
    return await _read(engine, report_id)


@router.post(
    "/{report_id}/remove",
    response_model=ReportRead,
    summary="Remove report",
    description="Remove a report from any non-terminal state",
)
async def remove_report(report_id: str, engine: Engine, data: RemoveRequest | None = None) -> ReportRead:
    await engine.remove_report(report_id, reason=data.reason if data else "removed")
    return await _read(engine, report_id)


@router.get(
    "/{report_id}/wait",
    response_model=WaitEstimateRead,
    summary="Estimated wait",
)
async def estimated_wait(report_id: str, engine: Engine) -> WaitEstimateRead:
    seconds = await engine.estimated_wait_seconds(report_id)
    return WaitEstimateRead(report_id=report_id, estimated_wait_seconds=seconds)
