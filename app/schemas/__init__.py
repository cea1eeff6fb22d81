"""Pydantic schemas for request/response validation."""

from app.schemas.event_log import EventLogFilter, EventLogRead
from app.schemas.hospital import (
    CapacityChangeRead,
    HospitalRead,
    QueueEntryRead,
    QueueSnapshotRead,
    QueueStatisticsRead,
    ResumeRequest,
)
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

__all__ = [
    "EventLogFilter",
    "EventLogRead",
    "HospitalRead",
    "QueueEntryRead",
    "QueueSnapshotRead",
    "QueueStatisticsRead",
    "CapacityChangeRead",
    "ResumeRequest",
    "ReportCreate",
    "ReportRead",
    "AssignmentRead",
    "AssignRequest",
    "ReassignRequest",
    "RemoveRequest",
    "StartTreatmentRequest",
    "TriageRecord",
    "AssignmentOutcomeRead",
    "WaitEstimateRead",
]
