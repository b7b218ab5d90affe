"""Database initialization utilities."""

import logging

from casedesk.db.base import Base
from casedesk.db.session import engine

# Register every mapped table on Base.metadata
import casedesk.models  # noqa: F401

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
