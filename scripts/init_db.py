"""
Create the warehouse tables (dimension members, facts, anomalies, watermarks, runs)

Usage:
    python -m scripts.init_db
"""

import asyncio
import logging
from typing import Optional

from core.database import create_engine
from core.logging import setup_logging
# Import all models to ensure they are registered
from models import Base

logger = logging.getLogger(__name__)


async def init_database(database_url: Optional[str] = None):
    logger.info("Connecting to database...")
    engine = create_engine(database_url)

    try:
        async with engine.begin() as conn:
            logger.info("Creating tables...")
            # Create all tables defined in models
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Tables created successfully.")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(init_database())
