# ============================================================================
# File: pipeline/coordinator.py
# Description: Single-flight pipeline orchestrator with bounded retries
# ============================================================================
"""
Pipeline Coordinator - Orchestrates one Extract, Transform, Load, Advance run.

This module provides robust run orchestration with:
- Strict single-flight per pipeline (persisted run lock, fail fast)
- Explicit bounded retries with exponential backoff for retryable errors
- Cooperative cancellation between steps
- Shielded commit: once loading starts, load and watermark advance finish
- Accurate run metrics recorded on the run row

Run flow:
    1. Acquire run lock, read watermark
    2. Extract the next batch after the watermark
    3. Empty batch -> release as committed, status "noop"
    4. Transform
    5. Load (one transaction)
    6. Advance watermark
    7. Release as committed
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession
import asyncio
import logging
import uuid

from core.config import settings
from core.exceptions import (
    ConcurrentWriteError,
    ETLException,
    RunCancelled,
    StepFailed,
)
from models.base import RunStatus
from models.pipeline_run import PipelineRun
from pipeline.extractor import Extractor, SourceAdapter
from pipeline.loader import WarehouseLoader
from pipeline.resolver import DimensionResolver
from pipeline.retry import RetryPolicy, call_with_retry
from pipeline.run_lock import RunRegistry
from pipeline.sources import build_source
from pipeline.transformer import StarSchemaTransformer
from pipeline.watermark import WatermarkTracker, encode_boundary
from schemas.api import RunRequest, RunResult
from schemas.pipeline import PipelineCatalog, PipelineDefinition
from schemas.records import ExtractBatch, LoadResult, TransformResult

logger = logging.getLogger(__name__)


@dataclass
class RunState:
    """Progress of one run, recorded on the run row whatever the outcome"""
    step: str = "acquire"
    records_extracted: int = 0
    records_committed: int = 0
    records_skipped: int = 0
    records_rejected: int = 0
    watermark_before: Optional[str] = None
    watermark_after: Optional[str] = None
    committed: bool = False

    def counters(self) -> Dict[str, Any]:
        return {
            "records_extracted": self.records_extracted,
            "records_committed": self.records_committed,
            "records_skipped": self.records_skipped,
            "records_rejected": self.records_rejected,
            "watermark_before": self.watermark_before,
            "watermark_after": self.watermark_after,
        }


class PipelineCoordinator:
    """
    Production-grade pipeline orchestrator

    Responsibilities:
    - Enforce one run in flight per pipeline
    - Orchestrate Extract → Transform → Load → Advance
    - Retry transient failures, propagate fatal ones with context
    - Never advance the watermark past data that is not committed
    - Record accurate run metrics
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        catalog: PipelineCatalog,
        source_builder: Callable[[PipelineDefinition], SourceAdapter] = build_source,
        backoff_max: Optional[float] = None,
        step_timeout: Optional[float] = None,
        lease_seconds: Optional[int] = None,
        sleep: Callable = asyncio.sleep
    ):
        self.session_factory = session_factory
        self.catalog = catalog
        self.source_builder = source_builder
        self.backoff_max = settings.BACKOFF_MAX if backoff_max is None else backoff_max
        self.step_timeout = settings.STEP_TIMEOUT_SECONDS if step_timeout is None else step_timeout
        self.lease_seconds = settings.RUN_LEASE_SECONDS if lease_seconds is None else lease_seconds
        self._sleep = sleep

        # pipeline_id -> run_id of runs in flight in this process
        self._active: Dict[str, uuid.UUID] = {}
        self._cancel_requested: Set[str] = set()

    async def run_pipeline(self, pipeline_id: str, **overrides: Any) -> RunResult:
        """Convenience wrapper around run()"""
        return await self.run(RunRequest(pipeline_id=pipeline_id, **overrides))

    def cancel(self, pipeline_id: str) -> bool:
        """
        Request cancellation of the run in flight for pipeline_id.

        Honoured before extract, transform and load; a run that already
        started loading completes. Returns False when no run is in flight
        in this process.
        """
        self.catalog.get(pipeline_id)
        if pipeline_id not in self._active:
            return False
        self._cancel_requested.add(pipeline_id)
        logger.warning(f"Cancellation requested for {pipeline_id} (run {self._active[pipeline_id]})")
        return True

    def is_running(self, pipeline_id: str) -> bool:
        return pipeline_id in self._active

    async def run(self, request: RunRequest) -> RunResult:
        """
        Run one batch of a pipeline.

        Returns:
            RunResult with status "committed" or "noop"

        Raises:
            PipelineNotFound: Unknown pipeline_id
            AlreadyRunning: Another run of this pipeline is in flight
            RetriesExhausted: A retryable failure outlasted the retry limit
            RunCancelled: cancel() was honoured between steps
            StepFailed: An unexpected exception escaped a step
            ETLException: Any other fatal error, with pipeline_id, run_id and step
        """
        definition = self.catalog.get(request.pipeline_id)
        pipeline_id = definition.pipeline_id

        batch_size = request.max_batch_size or definition.max_batch_size
        policy = RetryPolicy(
            retry_limit=definition.retry_limit if request.retry_limit is None else request.retry_limit,
            backoff_base=definition.backoff_base if request.backoff_base is None else request.backoff_base,
            backoff_max=self.backoff_max,
            timeout=self.step_timeout
        )
        snapshot = definition.model_dump(mode="json", exclude={"source": {"api_key"}})
        snapshot["effective"] = {
            "max_batch_size": batch_size,
            "retry_limit": policy.retry_limit,
            "backoff_base": policy.backoff_base,
        }

        async with self.session_factory() as lock_session:
            registry = RunRegistry(lock_session, lease_seconds=self.lease_seconds)
            run = await registry.acquire(pipeline_id, config_snapshot=snapshot)

            self._active[pipeline_id] = run.run_id
            self._cancel_requested.discard(pipeline_id)
            state = RunState()
            source: Optional[SourceAdapter] = None

            logger.info(f"Run {run.run_id} started for {pipeline_id} (batch size {batch_size})")

            try:
                source = self.source_builder(definition)
                async with self.session_factory() as session:
                    result = await self._execute(
                        run, registry, session, source, definition, policy, batch_size, state
                    )

            except asyncio.CancelledError:
                if state.committed:
                    await self._release(registry, run, RunStatus.COMMITTED, state)
                else:
                    error = RunCancelled(
                        "Run task was cancelled",
                        context={"pipeline_id": pipeline_id, "run_id": str(run.run_id), "step": state.step}
                    )
                    await self._release(registry, run, RunStatus.FAILED, state, error)
                raise

            except ETLException as e:
                e.add_context(pipeline_id=pipeline_id, run_id=str(run.run_id), step=state.step)
                logger.error(
                    f"Run {run.run_id} for {pipeline_id} failed at {state.step}: {e.message}",
                    extra={"error_context": e.to_dict()}
                )
                await self._release(registry, run, RunStatus.FAILED, state, e)
                raise

            except Exception as e:
                logger.exception(f"Unexpected error in run {run.run_id} for {pipeline_id}")
                wrapped = StepFailed(
                    f"Unexpected error during {state.step}",
                    context={"pipeline_id": pipeline_id, "run_id": str(run.run_id), "step": state.step},
                    original_exception=e
                )
                await self._release(registry, run, RunStatus.FAILED, state, wrapped)
                raise wrapped

            finally:
                self._active.pop(pipeline_id, None)
                self._cancel_requested.discard(pipeline_id)
                if source is not None:
                    await source.close()

            await self._release(registry, run, RunStatus.COMMITTED, state)

        logger.info(
            f"Run {run.run_id} for {pipeline_id} {result.status}: "
            f"extracted={result.records_extracted}, committed={result.committed_count}, "
            f"skipped={result.skipped_duplicate_count}, rejected={result.rejected_count}"
        )
        return result

    async def _execute(
        self,
        run: PipelineRun,
        registry: RunRegistry,
        session: AsyncSession,
        source: SourceAdapter,
        definition: PipelineDefinition,
        policy: RetryPolicy,
        batch_size: int,
        state: RunState
    ) -> RunResult:
        pipeline_id = definition.pipeline_id
        tracker = WatermarkTracker(session)
        extractor = Extractor(source)
        transformer = StarSchemaTransformer(definition)
        loader = WarehouseLoader(session)

        # --------------------------------------------------
        # STEP 1: WATERMARK
        # --------------------------------------------------
        state.step = "read_watermark"
        since = await self._retry("read_watermark", lambda: tracker.read(pipeline_id), policy, pipeline_id)
        state.watermark_before = encode_boundary(since, source.boundary_type)

        # --------------------------------------------------
        # STEP 2: EXTRACT
        # --------------------------------------------------
        self._check_cancelled(pipeline_id, run, "extract")
        state.step = "extract"
        batch: ExtractBatch = await self._retry(
            "extract",
            lambda: extractor.extract(pipeline_id, since, batch_size),
            policy,
            pipeline_id
        )
        state.records_extracted = len(batch)

        if not batch.records:
            state.watermark_after = state.watermark_before
            logger.info(f"No new data for {pipeline_id}")
            return RunResult(
                status="noop",
                pipeline_id=pipeline_id,
                run_id=str(run.run_id),
                new_watermark=since
            )

        await registry.heartbeat(run)

        # --------------------------------------------------
        # STEP 3: TRANSFORM
        # --------------------------------------------------
        self._check_cancelled(pipeline_id, run, "transform")
        state.step = "transform"
        transformed: TransformResult = await self._retry(
            "transform",
            lambda: transformer.transform(batch.records, DimensionResolver(session)),
            policy,
            pipeline_id
        )
        state.records_rejected = transformed.rejected_count

        await registry.heartbeat(run)

        # --------------------------------------------------
        # STEP 4: LOAD + ADVANCE (shielded)
        # --------------------------------------------------
        self._check_cancelled(pipeline_id, run, "load")
        state.step = "load"

        current = {"transformed": transformed}

        async def attempt_load() -> LoadResult:
            if session.in_transaction():
                await session.rollback()
            pending = current["transformed"]
            try:
                return await loader.load(pending.dimension_deltas, pending.facts, pipeline_id, run.run_id)
            except ConcurrentWriteError:
                # Surrogate keys may have been taken by another writer
                current["transformed"] = await transformer.transform(
                    batch.records, DimensionResolver(session)
                )
                raise

        async def commit_batch() -> LoadResult:
            loaded = await self._retry("load", attempt_load, policy, pipeline_id)
            state.records_committed = loaded.committed_count
            state.records_skipped = loaded.skipped_duplicate_count

            state.step = "advance"
            await self._retry(
                "advance",
                lambda: tracker.advance(pipeline_id, batch.next_boundary, source.boundary_type),
                policy,
                pipeline_id
            )
            state.watermark_after = encode_boundary(batch.next_boundary, source.boundary_type)
            state.committed = True
            return loaded

        task = asyncio.ensure_future(commit_batch())
        try:
            loaded = await asyncio.shield(task)
        except asyncio.CancelledError:
            logger.warning(f"Cancellation of {pipeline_id} deferred until the batch is committed")
            await task
            raise

        final = current["transformed"]
        return RunResult(
            status="committed",
            pipeline_id=pipeline_id,
            run_id=str(run.run_id),
            committed_count=loaded.committed_count,
            skipped_duplicate_count=loaded.skipped_duplicate_count,
            rejected_count=final.rejected_count,
            new_watermark=batch.next_boundary,
            records_extracted=len(batch),
            dimensions_upserted=loaded.dimensions_upserted,
            rejections=final.rejections
        )

    async def _retry(self, step: str, func, policy: RetryPolicy, pipeline_id: str):
        return await call_with_retry(step, func, policy, pipeline_id=pipeline_id, sleep=self._sleep)

    def _check_cancelled(self, pipeline_id: str, run: PipelineRun, step: str) -> None:
        if pipeline_id in self._cancel_requested:
            raise RunCancelled(
                f"Run cancelled before {step}",
                context={"pipeline_id": pipeline_id, "run_id": str(run.run_id), "step": step}
            )

    async def _release(
        self,
        registry: RunRegistry,
        run: PipelineRun,
        status: RunStatus,
        state: RunState,
        error: Optional[BaseException] = None
    ) -> None:
        """Close the run row; a failure here must not mask the run's own outcome"""
        try:
            await registry.release(run, status, error=error, **state.counters())
        except Exception:
            logger.exception(f"Failed to release run {run.run_id} for {run.pipeline_id}")


__all__ = ["PipelineCoordinator", "RunState"]
