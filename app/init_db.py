"""Create the referral intake tables. Also run from app.main at startup.

Usage:
    python -m app.init_db
"""
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from app.config import DATABASE_URL
from app.database import Base
import app.models  # noqa: F401 - register referral tables with Base.metadata

logger = logging.getLogger(__name__)


async def create_tables(engine: AsyncEngine) -> list[str]:
    """create_all for every referral table; existing tables are left as they are."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    names = sorted(Base.metadata.tables)
    logger.info("Database tables ensured: %s", ", ".join(names))
    return names


async def init_db():
    engine = create_async_engine(DATABASE_URL, echo=True)
    try:
        await create_tables(engine)
    finally:
        await engine.dispose()
    print("Database tables created successfully!")


if __name__ == "__main__":
    asyncio.run(init_db())
