"""Travel estimate and hospital assignment models."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, utc_now


class EstimationMethod(str, Enum):
    """How a travel estimate was produced."""

    HAVERSINE_HEURISTIC = "haversine_heuristic"
    CORRECTED_ESTIMATE = "corrected_estimate"  # Clamping changed the raw value


class AssignmentRationale(str, Enum):
    """Why a hospital was chosen."""

    BEST_TRAVEL_TIME = "best_travel_time"
    CAPACITY_OVERRIDE = "capacity_override"  # Chosen despite being at capacity
    OPERATOR_OVERRIDE = "operator_override"  # Pinned by an operator


class TravelEstimate(Base):
    """Travel metrics between an incident and a hospital.

    Insert-only: a recomputation adds a new row, latest calculated_at wins.
    """

    __tablename__ = "travel_estimates"

    report_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("patient_reports.id"),
        nullable=False,
        index=True,
    )
    hospital_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("hospitals.id"),
        nullable=False,
    )
    distance_meters: Mapped[float] = mapped_column(Float, nullable=False)
    travel_time_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    congestion_factor: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    method: Mapped[EstimationMethod] = mapped_column(String(50), nullable=False)
    calculated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )


class HospitalAssignment(Base):
    """Hospital selected for a report.

    At most one active record per report. Reassignment deactivates the
    previous record rather than deleting it.
    """

    __tablename__ = "hospital_assignments"

    report_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("patient_reports.id"),
        nullable=False,
        index=True,
    )
    hospital_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("hospitals.id"),
        nullable=False,
        index=True,
    )
    rationale: Mapped[AssignmentRationale] = mapped_column(String(50), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    distance_meters: Mapped[float | None] = mapped_column(Float, nullable=True)
    adjusted_travel_time_seconds: Mapped[int | None] = mapped_column(
        Integer, nullable=True
    )
    assigned_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    superseded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    superseded_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<HospitalAssignment {self.report_id} -> {self.hospital_id} "
            f"active={self.is_active}>"
        )
