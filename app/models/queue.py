"""Per-hospital treatment queue models."""

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin, as_utc, utc_now


class QueueStatus(str, Enum):
    """Status of a queue entry."""

    WAITING = "waiting"
    IN_TREATMENT = "in_treatment"
    REMOVED = "removed"


class QueueEntry(Base, TimestampMixin):
    """A report's place in one hospital's queue.

    queue_position is only meaningful while waiting; it is cleared when
    the entry leaves the waiting sequence.
    """

    __tablename__ = "patient_queue"

    hospital_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("hospitals.id"),
        nullable=False,
        index=True,
    )
    report_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("patient_reports.id"),
        nullable=False,
        index=True,
    )
    queue_position: Mapped[int | None] = mapped_column(Integer, nullable=True)
    queue_status: Mapped[QueueStatus] = mapped_column(
        String(20),
        default=QueueStatus.WAITING,
        nullable=False,
        index=True,
    )
    # ESI level at time of ranking
    criticality: Mapped[int] = mapped_column(Integer, nullable=False)
    entered_queue_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
    )
    # Per-hospital arrival counter, breaks entered_queue_at ties
    arrival_seq: Mapped[int] = mapped_column(Integer, nullable=False)
    assigned_doctor: Mapped[str | None] = mapped_column(String(200), nullable=True)
    removal_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<QueueEntry {self.hospital_id}/{self.report_id} "
            f"pos={self.queue_position} status={self.queue_status}>"
        )

    @property
    def is_waiting(self) -> bool:
        return self.queue_status == QueueStatus.WAITING

    def rank_key(self) -> tuple[int, datetime, int]:
        """Ordering key: most critical first, then earliest arrival."""
        return (self.criticality, as_utc(self.entered_queue_at), self.arrival_seq)


class QueueState(Base):
    """Queue-level bookkeeping for one hospital."""

    __tablename__ = "queue_management"

    hospital_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("hospitals.id"),
        nullable=False,
        unique=True,
    )
    # Incremented on every committed mutation
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_arrival_seq: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    is_halted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    halted_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    halted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
