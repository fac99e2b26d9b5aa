"""
SQLAlchemy ORM models for database tables.

This package defines the warehouse and control schema using SQLAlchemy ORM:

Models:
    base: Base declarative class, JSON column type and shared enums (RunStatus, BoundaryType)
    watermark: Per-pipeline high-water mark with compare-and-set versioning
    pipeline_run: Run history and single-flight lock
    warehouse: Star schema storage (dimension members, fact rows, fact anomalies)

Database Schema:
    All models inherit from the Base declarative class. JSON columns use
    JSONB on PostgreSQL and plain JSON elsewhere, so the same schema runs
    on SQLite for local work and tests.

Usage:
    from models import Watermark, PipelineRun, DimensionMember, FactRow
    from models.base import RunStatus, BoundaryType

Relationships:
    - PipelineRun → FactRow (run_id lineage)
    - FactRow → DimensionMember (dimension_refs hold surrogate keys)
    - Watermark ↔ PipelineRun (watermark_before / watermark_after snapshots)
"""

from models.base import Base, RunStatus, BoundaryType
from models.watermark import Watermark
from models.pipeline_run import PipelineRun
from models.warehouse import DimensionMember, FactRow, FactAnomaly

__all__ = [
    "Base",
    "RunStatus",
    "BoundaryType",
    "Watermark",
    "PipelineRun",
    "DimensionMember",
    "FactRow",
    "FactAnomaly",
]
