"""Database initialization utilities."""

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.db.base import Base
from app.db.session import engine
from app.fixtures.hospitals import seed_hospitals

# Register every model on Base.metadata before create_all
import app.models  # noqa: F401

logger = logging.getLogger(__name__)


async def create_tables() -> None:
    """Create all database tables."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables created")


async def drop_tables() -> None:
    """Drop all database tables (use with caution)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    logger.info("Database tables dropped")


async def init_db(session: AsyncSession) -> None:
    """Initialize database with required data.

    Args:
        session: Database session
    """
    await create_tables()
    await seed_hospitals(session)
    logger.info("Database initialization complete")
