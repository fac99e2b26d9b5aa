from sqlalchemy import Column, Integer, String, DateTime, Index
from models.base import Base, BoundaryType, enum_column, utcnow


class Watermark(Base):
    """
    High-water mark of what a pipeline has durably loaded.

    Purpose:
    - Resume extraction from the last committed boundary
    - Avoid reprocessing already loaded windows

    Design:
    - One row per pipeline, single writer
    - boundary_value stores the encoded boundary (ISO timestamp, integer or cursor)
    - version is bumped on every write; writers compare-and-set on it
    - A missing row means the pipeline starts from the beginning
    """
    __tablename__ = "watermarks"

    id = Column(Integer, primary_key=True, autoincrement=True)

    pipeline_id = Column(String(100), nullable=False)

    boundary_type = Column(enum_column(BoundaryType), nullable=False)
    boundary_value = Column(String(255), nullable=True)

    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_watermark_pipeline", "pipeline_id", unique=True),
    )
