"""
Pydantic schemas for run requests/results and API responses
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime
from models.base import BoundaryType, RunStatus, utcnow
from schemas.records import Boundary, RejectedRecord


# ============================================================================
# Run Schemas
# ============================================================================

class RunOverrides(BaseModel):
    """Per-run overrides of the pipeline definition's defaults"""
    max_batch_size: Optional[int] = Field(None, ge=1, description="Maximum records extracted in one batch")
    retry_limit: Optional[int] = Field(None, ge=0, description="Retries allowed after the first attempt")
    backoff_base: Optional[float] = Field(None, ge=0, description="First retry delay in seconds, doubled per retry")


class RunRequest(RunOverrides):
    """Invocation of one pipeline run"""
    pipeline_id: str = Field(..., min_length=1, max_length=100)


class RunResult(BaseModel):
    """Outcome of a run that reached COMMITTED (or found nothing to do)"""
    status: Literal["committed", "noop"]
    pipeline_id: str
    run_id: str
    committed_count: int = 0
    skipped_duplicate_count: int = 0
    rejected_count: int = 0
    new_watermark: Boundary = None
    records_extracted: int = 0
    dimensions_upserted: int = 0
    rejections: List[RejectedRecord] = Field(default_factory=list)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "committed",
                "pipeline_id": "orders_to_sales",
                "run_id": "550e8400-e29b-41d4-a716-446655440000",
                "committed_count": 3,
                "skipped_duplicate_count": 0,
                "rejected_count": 0,
                "new_watermark": "2024-01-15T11:00:00",
                "records_extracted": 3,
                "dimensions_upserted": 3,
                "rejections": []
            }
        }
    )


class WatermarkResetRequest(BaseModel):
    """Operator rewind of a pipeline watermark (None restarts from the beginning)"""
    boundary: Boundary = None
    boundary_type: BoundaryType = BoundaryType.TIMESTAMP

    @model_validator(mode="after")
    def coerce_boundary(self) -> "WatermarkResetRequest":
        if isinstance(self.boundary, str) and self.boundary_type == BoundaryType.TIMESTAMP:
            self.boundary = datetime.fromisoformat(self.boundary.replace("Z", "+00:00"))
        elif isinstance(self.boundary, str) and self.boundary_type == BoundaryType.INTEGER:
            self.boundary = int(self.boundary)
        return self


# ============================================================================
# Health Check Schemas
# ============================================================================

class PipelineStatusInfo(BaseModel):
    """Watermark and last run of one pipeline"""
    pipeline_id: str
    watermark: Optional[str] = None
    watermark_updated_at: Optional[datetime] = None
    last_run_status: Optional[RunStatus] = None
    last_run_started_at: Optional[datetime] = None
    last_run_error: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=utcnow)
    database_connected: bool
    pipelines: List[PipelineStatusInfo] = Field(default_factory=list)
    total_pipelines: int = 0
    failed_pipelines: int = 0

    @model_validator(mode="after")
    def determine_status(self) -> "HealthCheckResponse":
        """Determine overall health status"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.total_pipelines == 0 or self.failed_pipelines == 0:
            self.status = "healthy"
        elif self.failed_pipelines < self.total_pipelines:
            self.status = "degraded"
        else:
            self.status = "unhealthy"
        return self


# ============================================================================
# Pipeline Schemas
# ============================================================================

class PipelineInfo(BaseModel):
    pipeline_id: str
    description: Optional[str] = None
    source_kind: str
    fact_table: str
    dimensions: List[str]
    watermark: Optional[str] = None


class AnomalyResponse(BaseModel):
    """A LoadConflict kept for manual review"""
    fact_table: str
    fact_key: str
    source_id: str
    pipeline_id: Optional[str] = None
    run_id: Optional[str] = None
    stored_measures: Dict[str, Any]
    incoming_measures: Dict[str, Any]
    detected_at: datetime


# ============================================================================
# Statistics Schemas
# ============================================================================

class RunSummary(BaseModel):
    run_id: str
    pipeline_id: str
    status: RunStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    failed_step: Optional[str] = None
    records_extracted: int = 0
    records_committed: int = 0
    records_skipped: int = 0
    records_rejected: int = 0

    model_config = ConfigDict(use_enum_values=True)


class StatsResponse(BaseModel):
    """Statistics response model"""
    timestamp: datetime = Field(default_factory=utcnow)

    total_runs: int
    runs_by_status: Dict[str, int]
    avg_run_duration_seconds: Optional[float] = None

    # Warehouse contents
    facts_by_table: Dict[str, int]
    members_by_dimension: Dict[str, int]
    open_anomalies: int = 0

    recent_runs: List[RunSummary] = Field(default_factory=list)


# ============================================================================
# Error Response Schema
# ============================================================================

class ErrorResponse(BaseModel):
    """Structured error: ETLException.to_dict()"""
    error_type: str
    message: str
    retryable: bool = False
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str
    original_error: Optional[str] = None
