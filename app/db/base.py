"""SQLAlchemy 2.0 declarative base configuration."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import DateTime, MetaData, String
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column, registry

# Naming convention for constraints
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

# Shared registry for all models
_mapper_registry = registry(metadata=MetaData(naming_convention=convention))


def new_id() -> str:
    """Generate an opaque string identifier."""
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models with an opaque string id."""

    registry = _mapper_registry
    metadata = _mapper_registry.metadata

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=new_id,
    )

    @declared_attr.directive
    def __tablename__(cls) -> str:
        """Generate table name from class name."""
        name = cls.__name__
        return "".join(["_" + c.lower() if c.isupper() else c for c in name]).lstrip("_")


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        default=None,
        nullable=True,
    )

    def touch(self, now: datetime | None = None) -> datetime:
        """Advance updated_at, never moving it backwards."""
        now = as_utc(now or utc_now())
        previous = as_utc(self.updated_at) if self.updated_at else None
        if previous is not None and now <= previous:
            now = previous + timedelta(microseconds=1)
        self.updated_at = now
        return now


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite returns naive values)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
