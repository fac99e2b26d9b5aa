"""
Run statistics and warehouse metrics endpoint
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from api.dependencies import get_db
from schemas.api import StatsResponse, RunSummary
from models.base import RunStatus, utcnow
from models.pipeline_run import PipelineRun
from models.warehouse import DimensionMember, FactAnomaly, FactRow
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    limit: int = Query(10, ge=1, le=100, description="Number of recent runs to return"),
    db: AsyncSession = Depends(get_db)
):
    """
    Get run statistics and warehouse metrics.

    Returns:
    - Run counts by status and average committed run duration
    - Fact rows per fact table, members per dimension
    - Recent run history
    """
    request_id = f"req_{uuid.uuid4().hex[:12]}"

    logger.info(f"[{request_id}] GET /stats")

    # ========== Runs ==========

    status_result = await db.execute(
        select(PipelineRun.status, func.count()).group_by(PipelineRun.status)
    )
    runs_by_status = {
        (status.value if isinstance(status, RunStatus) else str(status)): count
        for status, count in status_result.all()
    }
    total_runs = sum(runs_by_status.values())

    avg_duration_result = await db.execute(
        select(func.avg(PipelineRun.duration_seconds)).where(
            and_(
                PipelineRun.status == RunStatus.COMMITTED,
                PipelineRun.duration_seconds.isnot(None)
            )
        )
    )
    avg_duration = avg_duration_result.scalar()

    # ========== Warehouse ==========

    facts_result = await db.execute(
        select(FactRow.fact_table, func.count()).group_by(FactRow.fact_table)
    )
    facts_by_table = {table: count for table, count in facts_result.all()}

    members_result = await db.execute(
        select(DimensionMember.dimension, func.count()).group_by(DimensionMember.dimension)
    )
    members_by_dimension = {dimension: count for dimension, count in members_result.all()}

    anomalies_result = await db.execute(select(func.count()).select_from(FactAnomaly))
    open_anomalies = anomalies_result.scalar()

    # ========== Recent Runs ==========

    recent_runs_result = await db.execute(
        select(PipelineRun)
        .order_by(PipelineRun.started_at.desc())
        .limit(limit)
    )
    recent_runs = [
        RunSummary(
            run_id=str(run.run_id),
            pipeline_id=run.pipeline_id,
            status=run.status,
            started_at=run.started_at,
            completed_at=run.completed_at,
            failed_step=run.failed_step,
            records_extracted=run.records_extracted or 0,
            records_committed=run.records_committed or 0,
            records_skipped=run.records_skipped or 0,
            records_rejected=run.records_rejected or 0
        )
        for run in recent_runs_result.scalars()
    ]

    logger.info(
        f"[{request_id}] Stats: {total_runs} runs, "
        f"{sum(facts_by_table.values())} facts, {open_anomalies} anomalies"
    )

    return StatsResponse(
        timestamp=utcnow(),
        total_runs=total_runs,
        runs_by_status=runs_by_status,
        avg_run_duration_seconds=round(avg_duration, 2) if avg_duration else None,
        facts_by_table=facts_by_table,
        members_by_dimension=members_by_dimension,
        open_anomalies=open_anomalies or 0,
        recent_runs=recent_runs
    )
