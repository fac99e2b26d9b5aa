"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models used throughout the pipeline:

Schemas:
    records: Records flowing through a run (SourceRecord, DimensionRecord,
             FactRecord, RejectedRecord, TransformResult, LoadResult)
    pipeline: Pipeline definitions and the YAML catalog
    api: Run requests/results and API response schemas

Usage:
    from schemas.records import SourceRecord, FactRecord
    from schemas.pipeline import PipelineCatalog
    from schemas.api import RunRequest, RunResult

Example:
    # Validate a source row
    record = SourceRecord(
        source_id="order-1",
        payload={"product_id": "p1", "amount": "19.99"},
        extracted_at="2024-01-15T10:00:00Z"
    )

    # Timestamps are normalised to naive UTC
    assert record.extracted_at.tzinfo is None
"""

__all__ = [
    "SourceRecord",
    "ExtractBatch",
    "DimensionRecord",
    "FactRecord",
    "RejectedRecord",
    "TransformResult",
    "LoadResult",
    "PipelineDefinition",
    "PipelineCatalog",
    "RunRequest",
    "RunResult",
]
