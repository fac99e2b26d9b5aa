"""
Pytest configuration and fixtures
"""

import asyncio
from datetime import datetime, timedelta
from typing import AsyncGenerator, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession
from unittest.mock import AsyncMock

from core.database import create_engine, create_session_maker
from models.base import Base, BoundaryType
from pipeline.coordinator import PipelineCoordinator
from pipeline.extractor import SourceAdapter, take_batch
from schemas.pipeline import PipelineCatalog, PipelineDefinition
from schemas.records import Boundary, SourceRecord

BASE_TIME = datetime(2024, 1, 15, 10, 0, 0)


def make_record(source_id: str, minutes: int = 0, **payload) -> SourceRecord:
    """Source row changed `minutes` after BASE_TIME"""
    return SourceRecord(
        source_id=source_id,
        payload=payload,
        extracted_at=BASE_TIME + timedelta(minutes=minutes)
    )


def order(source_id: str, minutes: int, product_id: str, amount, order_date: str = "2024-01-15", **extra) -> SourceRecord:
    return make_record(
        source_id,
        minutes,
        product_id=product_id,
        product_name=extra.pop("product_name", f"Product {product_id}"),
        amount=amount,
        order_date=order_date,
        **extra
    )


class FakeSource(SourceAdapter):
    """
    In-memory timestamp-ordered source.

    Attributes:
        records: Rows currently in the source (mutable between runs)
        failures: Exceptions raised by the next fetch calls, in order
        gate: When set, fetch waits for it (holds a run in flight)
    """

    boundary_type = BoundaryType.TIMESTAMP

    def __init__(self, records: Optional[List[SourceRecord]] = None):
        super().__init__("fake_orders")
        self.records: List[SourceRecord] = list(records or [])
        self.failures: List[BaseException] = []
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self.fetch_calls = 0

    async def fetch(self, since: Boundary, limit: int):
        self.fetch_calls += 1
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            raise self.failures.pop(0)
        return take_batch(self.records, since, limit)


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """SQLite test database in a temporary file"""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'warehouse.db'}")

    # Create all tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return create_session_maker(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def sales_definition() -> PipelineDefinition:
    """Orders feeding fact_sales with a product and a date dimension"""
    return PipelineDefinition.model_validate({
        "pipeline_id": "orders_to_sales",
        "source": {"kind": "table", "table": "orders"},
        "fact": {"table": "fact_sales", "measures": ["amount"]},
        "dimensions": [
            {"name": "dim_product", "key_fields": ["product_id"], "attributes": ["product_name"]},
            {"name": "dim_date", "kind": "date", "key_fields": ["order_date"]},
        ],
        "max_batch_size": 100,
        "retry_limit": 2,
        "backoff_base": 0.01,
    })


@pytest.fixture
def catalog(sales_definition) -> PipelineCatalog:
    return PipelineCatalog(pipelines=[sales_definition])


@pytest.fixture
def three_orders() -> List[SourceRecord]:
    """A and B share a date but differ in product; C repeats A's product"""
    return [
        order("A", 0, "p1", 10.0),
        order("B", 5, "p2", 20.0),
        order("C", 10, "p1", 30.0),
    ]


@pytest.fixture
def fake_source(three_orders) -> FakeSource:
    return FakeSource(three_orders)


@pytest.fixture
def coordinator(session_factory, catalog, fake_source) -> PipelineCoordinator:
    """Coordinator wired to the fake source, without real backoff sleeps"""
    return PipelineCoordinator(
        session_factory,
        catalog,
        source_builder=lambda definition: fake_source,
        step_timeout=5.0,
        lease_seconds=900,
        sleep=AsyncMock()
    )
