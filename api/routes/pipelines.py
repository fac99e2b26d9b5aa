"""
Pipeline endpoints: list, trigger, cancel, watermark reset and anomaly review
"""

from typing import List, Optional
from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from api.dependencies import get_catalog, get_coordinator, get_db
from models.base import RunStatus
from models.warehouse import FactAnomaly
from models.watermark import Watermark
from pipeline.coordinator import PipelineCoordinator
from pipeline.run_lock import RunRegistry
from pipeline.watermark import WatermarkTracker
from schemas.api import (
    AnomalyResponse,
    PipelineInfo,
    RunOverrides,
    RunRequest,
    RunResult,
    WatermarkResetRequest,
)
from schemas.pipeline import PipelineCatalog
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/pipelines", tags=["Pipelines"])


@router.get("", response_model=List[PipelineInfo])
async def list_pipelines(
    db: AsyncSession = Depends(get_db),
    catalog: PipelineCatalog = Depends(get_catalog)
):
    """Configured pipelines with their current watermark"""
    result = await db.execute(select(Watermark))
    watermarks = {w.pipeline_id: w.boundary_value for w in result.scalars()}

    return [
        PipelineInfo(
            pipeline_id=definition.pipeline_id,
            description=definition.description,
            source_kind=definition.source.kind,
            fact_table=definition.fact.table,
            dimensions=[d.name for d in definition.dimensions],
            watermark=watermarks.get(definition.pipeline_id)
        )
        for definition in catalog.pipelines
    ]


@router.post("/{pipeline_id}/runs", response_model=RunResult)
async def trigger_run(
    pipeline_id: str,
    overrides: Optional[RunOverrides] = Body(None),
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    """
    Run one batch of a pipeline and wait for the outcome.

    Errors are returned as structured bodies:
    - 404 unknown pipeline
    - 409 a run is already in flight, or a replay conflicted with stored facts
    - 503 a transient failure outlasted the retry limit
    """
    values = overrides.model_dump(exclude_none=True) if overrides else {}
    logger.info(f"POST /pipelines/{pipeline_id}/runs {values}")
    return await coordinator.run(RunRequest(pipeline_id=pipeline_id, **values))


@router.post("/{pipeline_id}/cancel")
async def cancel_run(
    pipeline_id: str,
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    """Ask the run in flight to stop before its next step"""
    requested = coordinator.cancel(pipeline_id)
    return {"pipeline_id": pipeline_id, "cancellation_requested": requested}


@router.put("/{pipeline_id}/watermark")
async def reset_watermark(
    pipeline_id: str,
    request: WatermarkResetRequest,
    db: AsyncSession = Depends(get_db),
    catalog: PipelineCatalog = Depends(get_catalog),
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    """
    Rewind (or set) a pipeline watermark so the next runs replay a window.

    The reset holds the pipeline's run lock, so it is refused while a run is
    in flight and no run can start until it is done. It is kept in the run
    history like a run.
    """
    catalog.get(pipeline_id)

    registry = RunRegistry(db, lease_seconds=coordinator.lease_seconds)
    lock = await registry.acquire(pipeline_id, config_snapshot={"operation": "watermark_reset"})
    tracker = WatermarkTracker(db)

    try:
        current = await tracker.get(pipeline_id)
        before = current.boundary_value if current else None
        watermark = await tracker.reset(pipeline_id, request.boundary, request.boundary_type)
    except Exception as e:
        await db.rollback()
        await registry.release(lock, RunStatus.FAILED, error=e)
        raise

    await registry.release(
        lock,
        RunStatus.COMMITTED,
        watermark_before=before,
        watermark_after=watermark.boundary_value
    )
    return {
        "pipeline_id": pipeline_id,
        "boundary_type": watermark.boundary_type.value,
        "watermark": watermark.boundary_value,
        "version": watermark.version
    }


@router.get("/{pipeline_id}/anomalies", response_model=List[AnomalyResponse])
async def list_anomalies(
    pipeline_id: str,
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
    catalog: PipelineCatalog = Depends(get_catalog)
):
    """Facts replayed with different measures, newest first"""
    catalog.get(pipeline_id)

    result = await db.execute(
        select(FactAnomaly)
        .where(FactAnomaly.pipeline_id == pipeline_id)
        .order_by(FactAnomaly.detected_at.desc(), FactAnomaly.id.desc())
        .limit(limit)
    )
    return [
        AnomalyResponse(
            fact_table=a.fact_table,
            fact_key=a.fact_key,
            source_id=a.source_id,
            pipeline_id=a.pipeline_id,
            run_id=str(a.run_id) if a.run_id else None,
            stored_measures=a.stored_measures,
            incoming_measures=a.incoming_measures,
            detected_at=a.detected_at
        )
        for a in result.scalars()
    ]
