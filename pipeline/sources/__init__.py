"""
Source adapters and the factory that builds them from pipeline configuration
"""

from pipeline.extractor import SourceAdapter
from pipeline.sources.api_source import APISource
from pipeline.sources.csv_source import CSVSource
from pipeline.sources.table_source import TableSource
from schemas.pipeline import PipelineDefinition


def build_source(definition: PipelineDefinition) -> SourceAdapter:
    """Construct the adapter configured for a pipeline"""
    config = definition.source
    common = {
        "id_column": config.id_column,
        "timestamp_column": config.timestamp_column,
        "ordering": config.ordering,
    }

    if config.kind == "table":
        return TableSource(
            definition.pipeline_id,
            table_name=config.table,
            database_url=config.database_url,
            **common
        )
    if config.kind == "csv":
        return CSVSource(definition.pipeline_id, file_path=config.file_path, **common)
    if config.kind == "api":
        return APISource(
            definition.pipeline_id,
            api_url=config.api_url,
            api_key=config.api_key,
            timeout=config.timeout,
            **common
        )
    raise ValueError(f"Unknown source kind: {config.kind}")


__all__ = ["APISource", "CSVSource", "TableSource", "build_source"]
