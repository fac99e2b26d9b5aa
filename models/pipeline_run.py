from sqlalchemy import Column, BigInteger, String, DateTime, Float, Integer, Text, Index, Uuid, text
import uuid
from models.base import Base, JSONType, RunStatus, enum_column, utcnow


class PipelineRun(Base):
    """
    One row per pipeline execution; doubles as the single-flight lock.

    Purpose:
    - Guarantee at most one running execution per pipeline
    - Audit trail of every run with its counts and failure context
    - Let a restarted process detect and reap runs abandoned by a crash

    Design:
    - The partial unique index on (pipeline_id) WHERE status = 'running'
      makes acquiring the lock an INSERT that fails for the second caller
    - heartbeat_at is touched between steps; stale running rows are reaped
    """
    __tablename__ = "pipeline_runs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    run_id = Column(Uuid(as_uuid=True), default=uuid.uuid4, unique=True, nullable=False, index=True)

    pipeline_id = Column(String(100), nullable=False, index=True)

    status = Column(enum_column(RunStatus), default=RunStatus.RUNNING, nullable=False, index=True)

    # Timestamps
    started_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    heartbeat_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    # Statistics
    records_extracted = Column(Integer, default=0)
    records_committed = Column(Integer, default=0)
    records_skipped = Column(Integer, default=0)
    records_rejected = Column(Integer, default=0)

    # Error tracking
    failed_step = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)

    # Configuration snapshot
    config_snapshot = Column(JSONType, nullable=True)

    # Watermark info
    watermark_before = Column(String(255), nullable=True)
    watermark_after = Column(String(255), nullable=True)

    __table_args__ = (
        Index(
            "uq_pipeline_runs_one_running",
            "pipeline_id",
            unique=True,
            postgresql_where=text("status = 'running'"),
            sqlite_where=text("status = 'running'"),
        ),
        Index("idx_pipeline_run_started", "pipeline_id", "started_at"),
    )

