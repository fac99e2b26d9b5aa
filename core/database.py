"""
Database session management with SQLAlchemy async
"""

from functools import lru_cache
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def create_engine(database_url: Optional[str] = None, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pooling is left to the database driver."""
    return create_async_engine(
        database_url or settings.DATABASE_URL,
        echo=echo,
        poolclass=NullPool,
        future=True
    )


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory used for every unit of work."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    """Process-wide warehouse engine, created on first use."""
    logger.debug("Creating warehouse engine")
    return create_engine(echo=settings.ENVIRONMENT == "development")


@lru_cache(maxsize=1)
def get_session_maker() -> async_sessionmaker:
    return create_session_maker(get_engine())


async def get_session() -> AsyncIterator[AsyncSession]:
    """Get database session"""
    async with get_session_maker()() as session:
        yield session
