"""
Single-flight run registry backed by the pipeline_runs table.

Acquiring the lock inserts a run row with status 'running'; the partial
unique index on pipeline_id for running rows rejects a second insert for
the same pipeline, which surfaces as AlreadyRunning. The lock survives
process restarts; rows left behind by a crashed process are reaped once
their heartbeat is older than the lease.
"""

from datetime import timedelta
from typing import Any, Dict, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy import select, update
from models.base import RunStatus, utcnow
from models.pipeline_run import PipelineRun
from core.exceptions import AlreadyRunning, ETLException, TargetUnavailable
import logging
import uuid

logger = logging.getLogger(__name__)


class RunRegistry:
    """
    Persisted per-pipeline lock and run history.

    Responsibilities:
    - Create the running row (acquire) or fail fast with AlreadyRunning
    - Keep the heartbeat of the running row fresh
    - Close the row as committed or failed with its statistics
    - Reap running rows whose owner stopped heartbeating
    """

    def __init__(self, db_session: AsyncSession, lease_seconds: Optional[int] = None):
        self.db = db_session
        self.lease_seconds = lease_seconds

    async def acquire(
        self,
        pipeline_id: str,
        config_snapshot: Optional[Dict[str, Any]] = None
    ) -> PipelineRun:
        """Create the running row for pipeline_id"""
        if self.lease_seconds:
            await self.reap_stale(timedelta(seconds=self.lease_seconds), pipeline_id=pipeline_id)

        now = utcnow()
        run = PipelineRun(
            run_id=uuid.uuid4(),
            pipeline_id=pipeline_id,
            status=RunStatus.RUNNING,
            started_at=now,
            heartbeat_at=now,
            config_snapshot=config_snapshot
        )
        self.db.add(run)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            holder = await self.current(pipeline_id)
            raise AlreadyRunning(
                f"Pipeline {pipeline_id} already has a run in flight",
                context={
                    "pipeline_id": pipeline_id,
                    "running_run_id": str(holder.run_id) if holder else None
                },
                original_exception=e
            )
        except OperationalError as e:
            await self.db.rollback()
            raise TargetUnavailable(
                "Failed to register pipeline run",
                context={"pipeline_id": pipeline_id, "operation": "INSERT", "table_name": "pipeline_runs"},
                original_exception=e
            )

        logger.info(f"Run {run.run_id} acquired lock for {pipeline_id}")
        return run

    async def current(self, pipeline_id: str) -> Optional[PipelineRun]:
        """The running row for pipeline_id, if any"""
        result = await self.db.execute(
            select(PipelineRun)
            .where(
                PipelineRun.pipeline_id == pipeline_id,
                PipelineRun.status == RunStatus.RUNNING
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def heartbeat(self, run: PipelineRun) -> None:
        await self.db.execute(
            update(PipelineRun)
            .where(PipelineRun.id == run.id, PipelineRun.status == RunStatus.RUNNING)
            .values(heartbeat_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def release(
        self,
        run: PipelineRun,
        status: RunStatus,
        records_extracted: int = 0,
        records_committed: int = 0,
        records_skipped: int = 0,
        records_rejected: int = 0,
        watermark_before: Optional[str] = None,
        watermark_after: Optional[str] = None,
        error: Optional[BaseException] = None
    ) -> bool:
        """
        Close the run; returns False when the row was no longer running
        (it was reaped while this process was working).
        """
        completed_at = utcnow()
        values: Dict[str, Any] = {
            "status": status,
            "completed_at": completed_at,
            "duration_seconds": (completed_at - run.started_at).total_seconds(),
            "records_extracted": records_extracted,
            "records_committed": records_committed,
            "records_skipped": records_skipped,
            "records_rejected": records_rejected,
            "watermark_before": watermark_before,
            "watermark_after": watermark_after,
        }
        if error is not None:
            if isinstance(error, ETLException):
                values["error_message"] = error.message
                values["error_details"] = error.to_dict()
                values["failed_step"] = error.step
            else:
                values["error_message"] = str(error) or type(error).__name__
                values["error_details"] = {"error_type": type(error).__name__}

        result = await self.db.execute(
            update(PipelineRun)
            .where(PipelineRun.id == run.id, PipelineRun.status == RunStatus.RUNNING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        if result.rowcount != 1:
            logger.warning(f"Run {run.run_id} for {run.pipeline_id} was no longer running at release")
            return False

        logger.info(f"Run {run.run_id} for {run.pipeline_id} released as {status.value}")
        return True

    async def reap_stale(self, older_than: timedelta, pipeline_id: Optional[str] = None) -> int:
        """Mark running rows whose heartbeat is older than older_than as failed"""
        cutoff = utcnow() - older_than
        stmt = (
            update(PipelineRun)
            .where(
                PipelineRun.status == RunStatus.RUNNING,
                PipelineRun.heartbeat_at < cutoff
            )
            .values(
                status=RunStatus.FAILED,
                completed_at=utcnow(),
                error_message="Run abandoned: heartbeat expired"
            )
            .execution_options(synchronize_session=False)
        )
        if pipeline_id is not None:
            stmt = stmt.where(PipelineRun.pipeline_id == pipeline_id)

        result = await self.db.execute(stmt)
        await self.db.commit()

        if result.rowcount:
            logger.warning(f"Reaped {result.rowcount} stale running run(s)")
        return result.rowcount
