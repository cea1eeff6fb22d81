"""Incident report model and its lifecycle state machine."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.errors import TriageEngineError
from app.db.base import Base, TimestampMixin, utc_now


class InvalidStatusTransition(TriageEngineError):
    """Raised when a report is moved along an edge the lifecycle forbids."""

    def __init__(self, current: "ReportStatus", target: "ReportStatus") -> None:
        super().__init__(f"Cannot move report from {current.value} to {target.value}")
        self.current = current
        self.target = target


class ReportStatus(str, Enum):
    """Lifecycle status of an incident report."""

    SUBMITTED = "submitted"  # Received, no criticality yet
    TRIAGED = "triaged"  # Criticality score available
    ASSIGNED = "assigned"  # Hospital selected
    QUEUED = "queued"  # Waiting in the hospital queue
    IN_TREATMENT = "in_treatment"  # Dequeued for treatment
    DISCHARGED = "discharged"  # Terminal
    REMOVED = "removed"  # Terminal

    @property
    def is_terminal(self) -> bool:
        return self in (ReportStatus.DISCHARGED, ReportStatus.REMOVED)

    def can_transition_to(self, target: "ReportStatus") -> bool:
        return target in ALLOWED_TRANSITIONS[self]


ALLOWED_TRANSITIONS: dict[ReportStatus, frozenset[ReportStatus]] = {
    ReportStatus.SUBMITTED: frozenset({ReportStatus.TRIAGED, ReportStatus.REMOVED}),
    ReportStatus.TRIAGED: frozenset({ReportStatus.ASSIGNED, ReportStatus.REMOVED}),
    ReportStatus.ASSIGNED: frozenset({ReportStatus.QUEUED, ReportStatus.REMOVED}),
    # Reassignment moves a queued report back through ASSIGNED
    ReportStatus.QUEUED: frozenset(
        {ReportStatus.ASSIGNED, ReportStatus.IN_TREATMENT, ReportStatus.REMOVED}
    ),
    ReportStatus.IN_TREATMENT: frozenset(
        {ReportStatus.DISCHARGED, ReportStatus.REMOVED}
    ),
    ReportStatus.DISCHARGED: frozenset(),
    ReportStatus.REMOVED: frozenset(),
}


class IncidentReport(Base, TimestampMixin):
    """Emergency patient report.

    Identity, location and classification are fixed at creation. Status,
    criticality and assignment state are updated in place, each update
    advancing updated_at.
    """

    __tablename__ = "patient_reports"

    # Incident location (decimal degrees, may be absent)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    location_address: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Classification
    incident_type: Mapped[str] = mapped_column(String(100), nullable=False)
    incident_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    patient_status: Mapped[str] = mapped_column(String(100), nullable=False)

    # Patient contact
    patient_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Submitter contact (person who filed the report on the patient's behalf)
    submitter_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    submitter_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    submitter_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)

    status: Mapped[ReportStatus] = mapped_column(
        String(50),
        default=ReportStatus.SUBMITTED,
        nullable=False,
        index=True,
    )

    # ESI level, 1 = most critical. Null until triage completes.
    criticality: Mapped[int | None] = mapped_column(Integer, nullable=True)
    # Incremented on every criticality update
    triage_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Triaged but no hospital could take it yet
    assignment_pending: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        index=True,
    )
    hospital_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("hospitals.id"),
        nullable=True,
        index=True,
    )

    # Row version; an UPDATE against a stale read matches no row
    row_version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": row_version}

    def __repr__(self) -> str:
        return f"<IncidentReport {self.id} status={self.status} esi={self.criticality}>"

    @property
    def display_status(self) -> str:
        """Status as shown to clients; pending assignment surfaces explicitly."""
        if self.assignment_pending and self.status == ReportStatus.TRIAGED:
            return "assigned:pending"
        return ReportStatus(self.status).value

    def transition_to(
        self, target: ReportStatus, now: datetime | None = None
    ) -> ReportStatus:
        """Move to ``target`` if the lifecycle allows it."""
        current = ReportStatus(self.status)
        if not current.can_transition_to(target):
            raise InvalidStatusTransition(current, target)
        self.status = target
        self.touch(now)
        return current


class TriageResult(Base):
    """Append-only history of criticality scores for a report."""

    __tablename__ = "triage_results"

    report_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("patient_reports.id"),
        nullable=False,
        index=True,
    )
    esi_level: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    # e.g. "intake", "clinical_reassessment", "operator_override"
    source: Mapped[str] = mapped_column(String(50), default="intake", nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    triaged_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
