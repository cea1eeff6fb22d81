"""Hospital and queue schemas."""

from datetime import datetime

from pydantic import BaseModel


class HospitalRead(BaseModel):
    """Schema for reading hospital directory entries."""

    id: str
    name: str
    region: str | None
    address: str | None
    latitude: float | None
    longitude: float | None
    max_concurrent_patients: int
    specialties: list[str] | None
    is_active: bool

    model_config = {"from_attributes": True}


class QueueEntryRead(BaseModel):
    """One entry in a queue snapshot."""

    report_id: str
    hospital_id: str
    queue_status: str
    queue_position: int | None
    criticality: int
    entered_queue_at: datetime
    estimated_wait_seconds: int | None
    assigned_doctor: str | None = None

    model_config = {"from_attributes": True}


class QueueSnapshotRead(BaseModel):
    """Ordered point-in-time view of a hospital queue."""

    hospital_id: str
    version: int
    taken_at: datetime
    is_halted: bool
    waiting: list[QueueEntryRead]
    in_treatment: list[QueueEntryRead]

    model_config = {"from_attributes": True}


class QueueStatisticsRead(BaseModel):
    hospital_id: str
    version: int
    waiting: int
    in_treatment: int
    average_wait_seconds: int
    max_wait_seconds: int
    waiting_by_esi: dict[int, int]
    is_halted: bool


class CapacityChangeRead(BaseModel):
    """Outcome of retrying pending reports after a capacity change."""

    hospital_id: str
    retried: int
    queued: int
    still_pending: int


class ResumeRequest(BaseModel):
    operator_id: str | None = None
