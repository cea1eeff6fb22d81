"""Database models for the triage queue engine."""

from app.models.event_log import ActorType, EventLogEntry
from app.models.hospital import Hospital
from app.models.queue import QueueEntry, QueueState, QueueStatus
from app.models.report import (
    ALLOWED_TRANSITIONS,
    IncidentReport,
    InvalidStatusTransition,
    ReportStatus,
    TriageResult,
)
from app.models.travel import (
    AssignmentRationale,
    EstimationMethod,
    HospitalAssignment,
    TravelEstimate,
)

__all__ = [
    # Reports
    "IncidentReport",
    "ReportStatus",
    "ALLOWED_TRANSITIONS",
    "InvalidStatusTransition",
    "TriageResult",
    # Hospitals
    "Hospital",
    # Travel & assignment
    "TravelEstimate",
    "EstimationMethod",
    "HospitalAssignment",
    "AssignmentRationale",
    # Queue
    "QueueEntry",
    "QueueState",
    "QueueStatus",
    # Event log
    "EventLogEntry",
    "ActorType",
]
