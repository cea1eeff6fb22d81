"""Pytest configuration and fixtures."""

import os

# Settings are read at import time; point them at the test environment first
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["NOTIFICATIONS_ENABLED"] = "false"

from collections.abc import AsyncGenerator, Generator  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import StaticPool  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

import app.models  # noqa: E402,F401
from app.api.deps import get_event_bus, get_triage_engine  # noqa: E402
from app.db.base import Base  # noqa: E402
from app.db.session import get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models.hospital import Hospital  # noqa: E402
from app.services.engine import TriageEngine  # noqa: E402
from app.services.events import EventBus  # noqa: E402
from app.services.travel_policy import DEFAULT_POLICY  # noqa: E402

# Use SQLite for testing (simpler than spinning up postgres)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Incident location in central Kingston used across tests
KINGSTON_INCIDENT = (18.0179, -76.8099)


def make_engine():
    return create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
    )


def make_session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def hospital(
    hospital_id: str,
    latitude: float | None = 17.9714,
    longitude: float | None = -76.7931,
    capacity: int = 50,
    name: str | None = None,
    region: str | None = "Kingston",
) -> Hospital:
    """Build a hospital row with sensible defaults."""
    return Hospital(
        id=hospital_id,
        name=name or f"Hospital {hospital_id}",
        region=region,
        latitude=latitude,
        longitude=longitude,
        max_concurrent_patients=capacity,
        specialties=["Emergency"],
        is_active=True,
    )


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine."""
    engine = make_engine()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(async_engine)


@pytest.fixture(scope="function")
async def async_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def add_hospitals(session_factory):
    """Insert hospitals and return their ids."""

    async def _add(*hospitals: Hospital) -> list[str]:
        async with session_factory() as session:
            session.add_all(hospitals)
            await session.commit()
        return [h.id for h in hospitals]

    return _add


@pytest.fixture
def bus() -> EventBus:
    return EventBus(outbox_size=64)


@pytest.fixture
def triage_engine(session_factory, bus) -> TriageEngine:
    """Engine wired to the test database, without notifications."""
    return TriageEngine(session_factory, bus, notifier=None, policy=DEFAULT_POLICY)


@pytest.fixture
async def single_hospital(add_hospitals) -> str:
    """One Kingston hospital with ample capacity."""
    (hospital_id,) = await add_hospitals(hospital("HOSP001", capacity=100))
    return hospital_id


@pytest.fixture
async def submit(triage_engine):
    """Submit a report at the Kingston incident location with an ESI level."""

    async def _submit(esi_level: int | None = None, **kwargs):
        lat, lon = KINGSTON_INCIDENT
        kwargs.setdefault("latitude", lat)
        kwargs.setdefault("longitude", lon)
        return await triage_engine.submit_report(
            incident_type=kwargs.pop("incident_type", "Road traffic collision"),
            patient_status=kwargs.pop("patient_status", "conscious"),
            esi_level=esi_level,
            **kwargs,
        )

    return _submit


@pytest.fixture(scope="function")
def client() -> Generator[TestClient, None, None]:
    """Create FastAPI test client with overridden dependencies.

    The database lives on the client's own event loop; setup runs
    through the client's portal.
    """
    engine = make_engine()
    factory = make_session_factory(engine)
    test_bus = EventBus(outbox_size=64)
    test_engine = TriageEngine(factory, test_bus, notifier=None, policy=DEFAULT_POLICY)

    async def setup() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with factory() as session:
            session.add_all(
                [
                    hospital("HOSP001", 17.9714, -76.7931, capacity=60,
                             name="Kingston Public Hospital"),
                    hospital("HOSP002", 17.9909, -76.9574, capacity=40,
                             name="Spanish Town Hospital", region="Spanish Town"),
                ]
            )
            await session.commit()

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_event_bus] = lambda: test_bus
    app.dependency_overrides[get_triage_engine] = lambda: test_engine

    with TestClient(app) as test_client:
        test_client.portal.call(setup)
        test_client.bus = test_bus
        test_client.engine = test_engine
        yield test_client
        test_client.portal.call(engine.dispose)

    app.dependency_overrides.clear()
