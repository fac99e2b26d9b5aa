"""
FastAPI dependencies: database sessions, the pipeline catalog and the coordinator
"""

from functools import lru_cache
from typing import AsyncIterator
from sqlalchemy.ext.asyncio import AsyncSession
from core.config import settings
from core.database import get_session_maker
from pipeline.coordinator import PipelineCoordinator
from schemas.pipeline import PipelineCatalog


async def get_db() -> AsyncIterator[AsyncSession]:
    """Get database session"""
    async with get_session_maker()() as session:
        yield session


@lru_cache(maxsize=1)
def load_catalog() -> PipelineCatalog:
    return PipelineCatalog.from_yaml(settings.PIPELINES_FILE)


def get_catalog() -> PipelineCatalog:
    return load_catalog()


@lru_cache(maxsize=1)
def get_coordinator() -> PipelineCoordinator:
    """One coordinator per process so cancel() reaches the run in flight"""
    return PipelineCoordinator(get_session_maker(), load_catalog())
