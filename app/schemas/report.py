"""Incident report schemas."""

from datetime import datetime

from pydantic import BaseModel, EmailStr, Field

from app.models.report import ReportStatus
from app.models.travel import AssignmentRationale


class ReportCreate(BaseModel):
    """Schema for submitting a new incident report.

    Coordinates are range-checked by the engine so that a malformed
    location is still recorded as a submitted report.
    """

    latitude: float | None = None
    longitude: float | None = None
    location_address: str | None = Field(None, max_length=255)
    incident_type: str = Field(..., min_length=1, max_length=100)
    incident_description: str | None = Field(None, max_length=10000)
    patient_status: str = Field(..., min_length=1, max_length=100)
    patient_name: str | None = Field(None, max_length=200)
    contact_email: EmailStr | None = None
    contact_phone: str | None = Field(None, max_length=50)
    submitter_name: str | None = Field(None, max_length=200)
    submitter_email: EmailStr | None = None
    submitter_phone: str | None = Field(None, max_length=50)
    esi_level: int | None = Field(None, ge=1, le=5)
    triage_reason: str | None = None


class TriageRecord(BaseModel):
    """Schema for recording a criticality score."""

    esi_level: int = Field(..., ge=1, le=5)
    reason: str | None = Field(None, max_length=2000)
    confidence: float | None = Field(None, ge=0, le=1)
    source: str = Field("intake", max_length=50)
    assign: bool = True


class AssignRequest(BaseModel):
    """Optional operator pin for assignment."""

    hospital_id: str | None = None


class ReassignRequest(BaseModel):
    """Schema for moving a queued report to another hospital."""

    hospital_id: str | None = None
    reason: str = Field("reassigned", max_length=100)


class StartTreatmentRequest(BaseModel):
    doctor_name: str | None = Field(None, max_length=200)


class RemoveRequest(BaseModel):
    reason: str = Field("removed", min_length=1, max_length=100)


class AssignmentRead(BaseModel):
    """Active hospital assignment."""

    hospital_id: str
    rationale: AssignmentRationale
    reason: str | None
    distance_meters: float | None
    adjusted_travel_time_seconds: int | None
    assigned_at: datetime

    model_config = {"from_attributes": True}


class ReportRead(BaseModel):
    """Schema for reading report data."""

    id: str
    status: ReportStatus
    display_status: str
    criticality: int | None
    triage_version: int
    assignment_pending: bool
    hospital_id: str | None
    latitude: float | None
    longitude: float | None
    location_address: str | None
    incident_type: str
    incident_description: str | None
    patient_status: str
    patient_name: str | None
    created_at: datetime
    updated_at: datetime | None
    assignment: AssignmentRead | None = None

    model_config = {"from_attributes": True}


class AssignmentOutcomeRead(BaseModel):
    """Result of an assignment or reassignment attempt."""

    report_id: str
    status: str
    hospital_id: str | None = None
    queue_position: int | None = None
    rationale: AssignmentRationale | None = None
    reason: str | None = None


class WaitEstimateRead(BaseModel):
    report_id: str
    estimated_wait_seconds: int | None
