"""
Star-schema ETL pipeline components.

This package contains all components of one idempotent pipeline run:

Modules:
    extractor: Source adapter contract and ordered, bounded extraction
    transformer: Source records to dimension members and facts
    resolver: Stable surrogate keys backed by the dimension store
    loader: Single-transaction idempotent load with conflict detection
    watermark: Per-pipeline boundary with compare-and-set advance
    run_lock: Persisted single-flight lock and run history
    retry: Bounded retry with exponential backoff over classified errors
    coordinator: Orchestrates extract, transform, load and advance
    scheduler: APScheduler integration for periodic runs

Subpackages:
    sources: Table, CSV and REST API source adapters

Architecture:
    A run moves a pipeline's watermark forward by at most one batch:

    1. Extract - records strictly after the watermark, in boundary order
    2. Transform - validate, reject bad rows, resolve surrogate keys
    3. Load - dimensions and facts in one transaction, duplicates skipped
    4. Advance - compare-and-set the watermark to the batch boundary

    The watermark only moves after the load commits, so any failure is
    repaired by simply running again.

Usage:
    from pipeline.coordinator import PipelineCoordinator
    from schemas.pipeline import PipelineCatalog

Example:
    catalog = PipelineCatalog.from_yaml("pipelines.yaml")
    coordinator = PipelineCoordinator(get_session_maker(), catalog)

    result = await coordinator.run_pipeline("orders_to_sales")
    print(f"Committed {result.committed_count} facts")

Error Handling:
    All components raise exceptions from core.exceptions; the coordinator
    retries the retryable ones and propagates the rest with pipeline_id,
    run_id and step in their context.
"""

__all__ = [
    "SourceAdapter",
    "Extractor",
    "StarSchemaTransformer",
    "DimensionResolver",
    "WarehouseLoader",
    "WatermarkTracker",
    "RunRegistry",
    "PipelineCoordinator",
    "PipelineScheduler",
]
