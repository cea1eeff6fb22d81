"""Hospital directory model (read-only to the engine)."""

from sqlalchemy import Boolean, Float, Integer, String
from sqlalchemy.dialects.postgresql import JSON
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class Hospital(Base):
    """Receiving hospital as published by the external directory."""

    __tablename__ = "hospitals"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    region: Mapped[str | None] = mapped_column(String(100), nullable=True)
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Null when the directory has no fix for the hospital
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)

    max_concurrent_patients: Mapped[int] = mapped_column(
        Integer,
        default=100,
        nullable=False,
    )
    specialties: Mapped[list | None] = mapped_column(JSON, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Hospital {self.id} {self.name}>"

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None
