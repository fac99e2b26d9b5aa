"""
Unit tests for watermark tracking and the run registry
"""

import pytest
from datetime import datetime, timedelta, timezone
from sqlalchemy import update
from models.base import BoundaryType, RunStatus, utcnow
from models.pipeline_run import PipelineRun
from pipeline.run_lock import RunRegistry
from pipeline.watermark import WatermarkTracker, decode_boundary, encode_boundary, is_after
from schemas.records import BEGINNING
from core.exceptions import AlreadyRunning, SourceUnavailable, StaleAdvance, WatermarkError


T0 = datetime(2024, 1, 15, 10, 0, 0)


class TestBoundaryEncoding:

    def test_timestamp_round_trip_is_naive_utc(self):
        aware = datetime(2024, 1, 15, 12, 0, tzinfo=timezone(timedelta(hours=2)))

        encoded = encode_boundary(aware, BoundaryType.TIMESTAMP)

        assert encoded == "2024-01-15T10:00:00"
        assert decode_boundary(encoded, BoundaryType.TIMESTAMP) == T0

    def test_integer_boundary(self):
        assert encode_boundary(42, BoundaryType.INTEGER) == "42"
        assert decode_boundary("42", BoundaryType.INTEGER) == 42

    def test_wrong_type_rejected(self):
        with pytest.raises(WatermarkError):
            encode_boundary("2024-01-15", BoundaryType.TIMESTAMP)
        with pytest.raises(WatermarkError):
            encode_boundary(True, BoundaryType.INTEGER)

    def test_beginning_precedes_everything(self):
        assert is_after(T0, BEGINNING)
        assert not is_after(BEGINNING, BEGINNING)
        assert not is_after(T0, T0)


class TestWatermarkTracker:
    """Test reading and advancing per-pipeline watermarks"""

    @pytest.mark.asyncio
    async def test_read_without_row_is_beginning(self, db_session):
        tracker = WatermarkTracker(db_session)

        assert await tracker.read("orders_to_sales") is BEGINNING

    @pytest.mark.asyncio
    async def test_advance_creates_then_moves_forward(self, db_session):
        tracker = WatermarkTracker(db_session)

        await tracker.advance("orders_to_sales", T0)
        watermark = await tracker.advance("orders_to_sales", T0 + timedelta(minutes=5))

        assert watermark.version == 2
        assert await tracker.read("orders_to_sales") == T0 + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_advance_must_be_strictly_greater(self, db_session):
        tracker = WatermarkTracker(db_session)
        await tracker.advance("orders_to_sales", T0)

        with pytest.raises(StaleAdvance):
            await tracker.advance("orders_to_sales", T0)
        with pytest.raises(StaleAdvance):
            await tracker.advance("orders_to_sales", T0 - timedelta(seconds=1))

        assert await tracker.read("orders_to_sales") == T0

    @pytest.mark.asyncio
    async def test_lost_compare_and_set_is_stale(self, db_session, session_factory):
        """A concurrent writer bumping the version makes the second advance fail"""
        tracker = WatermarkTracker(db_session)
        watermark = await tracker.advance("orders_to_sales", T0)

        async with session_factory() as other:
            await WatermarkTracker(other).advance("orders_to_sales", T0 + timedelta(minutes=1))

        with pytest.raises(StaleAdvance):
            await tracker._compare_and_set(watermark, "2024-01-15T10:02:00")

    @pytest.mark.asyncio
    async def test_boundary_type_mismatch(self, db_session):
        tracker = WatermarkTracker(db_session)
        await tracker.advance("orders_to_sales", 10, BoundaryType.INTEGER)

        with pytest.raises(WatermarkError):
            await tracker.advance("orders_to_sales", T0, BoundaryType.TIMESTAMP)

    @pytest.mark.asyncio
    async def test_reset_rewinds(self, db_session):
        tracker = WatermarkTracker(db_session)
        await tracker.advance("orders_to_sales", T0)

        watermark = await tracker.reset("orders_to_sales")

        assert watermark.boundary_value is None
        assert watermark.version == 2
        assert await tracker.read("orders_to_sales") is BEGINNING

        # Advancing after a rewind works from the rewound position
        await tracker.advance("orders_to_sales", T0)
        assert await tracker.read("orders_to_sales") == T0


class TestRunRegistry:
    """Test the persisted single-flight lock"""

    @pytest.mark.asyncio
    async def test_second_acquire_fails_fast(self, db_session, session_factory):
        registry = RunRegistry(db_session)
        first = await registry.acquire("orders_to_sales")

        async with session_factory() as other:
            with pytest.raises(AlreadyRunning) as exc_info:
                await RunRegistry(other).acquire("orders_to_sales")

        assert exc_info.value.context["running_run_id"] == str(first.run_id)

    @pytest.mark.asyncio
    async def test_other_pipelines_are_independent(self, db_session):
        registry = RunRegistry(db_session)

        await registry.acquire("orders_to_sales")
        await registry.acquire("returns_csv")

        assert await registry.current("orders_to_sales") is not None
        assert await registry.current("returns_csv") is not None

    @pytest.mark.asyncio
    async def test_release_frees_the_lock(self, db_session):
        registry = RunRegistry(db_session)
        run = await registry.acquire("orders_to_sales")

        released = await registry.release(run, RunStatus.COMMITTED, records_extracted=3, records_committed=3)
        again = await registry.acquire("orders_to_sales")

        assert released is True
        assert again.run_id != run.run_id

    @pytest.mark.asyncio
    async def test_release_records_error_details(self, db_session):
        registry = RunRegistry(db_session)
        run = await registry.acquire("orders_to_sales")
        error = SourceUnavailable("source down", context={"step": "extract"})

        await registry.release(run, RunStatus.FAILED, error=error)

        await db_session.refresh(run)
        assert run.status == RunStatus.FAILED
        assert run.failed_step == "extract"
        assert run.error_message == "source down"
        assert run.error_details["error_type"] == "SourceUnavailable"
        assert run.error_details["retryable"] is True

    @pytest.mark.asyncio
    async def test_stale_runs_are_reaped(self, db_session):
        """A crashed owner stops heartbeating; its lock expires after the lease"""
        registry = RunRegistry(db_session, lease_seconds=60)
        crashed = await registry.acquire("orders_to_sales")
        await db_session.execute(
            update(PipelineRun)
            .where(PipelineRun.id == crashed.id)
            .values(heartbeat_at=utcnow() - timedelta(minutes=5))
        )
        await db_session.commit()

        run = await registry.acquire("orders_to_sales")

        await db_session.refresh(crashed)
        assert crashed.status == RunStatus.FAILED
        assert run.status == RunStatus.RUNNING

    @pytest.mark.asyncio
    async def test_fresh_heartbeat_keeps_lock(self, db_session):
        registry = RunRegistry(db_session, lease_seconds=60)
        run = await registry.acquire("orders_to_sales")
        await registry.heartbeat(run)

        with pytest.raises(AlreadyRunning):
            await registry.acquire("orders_to_sales")
