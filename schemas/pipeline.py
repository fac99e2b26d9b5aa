"""
Pipeline definitions: where a pipeline reads from and which star schema it feeds.

Definitions are kept in a YAML catalog (see pipelines.yaml) and validated
here before any run starts.
"""

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from core.config import settings
from core.exceptions import PipelineNotFound
from models.base import BoundaryType


class SourceConfig(BaseModel):
    """Configuration of the (read-only) source adapter"""

    kind: Literal["table", "csv", "api"]
    id_column: str = "id"
    timestamp_column: str = "updated_at"
    ordering: BoundaryType = BoundaryType.TIMESTAMP

    # table
    table: Optional[str] = None
    database_url: Optional[str] = None

    # csv
    file_path: Optional[str] = None

    # api
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout: float = Field(default=30.0, gt=0)

    @field_validator("ordering")
    @classmethod
    def check_ordering(cls, v: BoundaryType) -> BoundaryType:
        if v == BoundaryType.CURSOR:
            raise ValueError("sources order by timestamp or integer id")
        return v

    @model_validator(mode="after")
    def check_location(self) -> "SourceConfig":
        required = {"table": "table", "csv": "file_path", "api": "api_url"}[self.kind]
        if not getattr(self, required):
            raise ValueError(f"source kind '{self.kind}' requires '{required}'")
        return self


class DimensionConfig(BaseModel):
    """
    One dimension of the star schema.

    attribute dimensions key on the joined values of key_fields; date
    dimensions derive calendar attributes from a single date/timestamp field.
    """

    name: str = Field(..., min_length=1, max_length=100)
    kind: Literal["attribute", "date"] = "attribute"
    key_fields: List[str] = Field(..., min_length=1)
    attributes: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_date_key(self) -> "DimensionConfig":
        if self.kind == "date" and len(self.key_fields) != 1:
            raise ValueError(f"date dimension '{self.name}' takes exactly one key field")
        return self


class FactConfig(BaseModel):
    table: str = Field(..., min_length=1, max_length=100)
    measures: List[str] = Field(..., min_length=1)
    required_fields: List[str] = Field(default_factory=list)


class PipelineDefinition(BaseModel):
    """A named pipeline and its run defaults"""

    pipeline_id: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.\-]+$")
    description: Optional[str] = None
    source: SourceConfig
    fact: FactConfig
    dimensions: List[DimensionConfig] = Field(default_factory=list)

    max_batch_size: int = Field(default_factory=lambda: settings.ETL_BATCH_SIZE, ge=1)
    retry_limit: int = Field(default_factory=lambda: settings.MAX_RETRIES, ge=0)
    backoff_base: float = Field(default_factory=lambda: settings.BACKOFF_BASE, ge=0)

    @field_validator("dimensions")
    @classmethod
    def unique_dimension_names(cls, v: List[DimensionConfig]) -> List[DimensionConfig]:
        names = [d.name for d in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate dimension names: {', '.join(duplicates)}")
        return v

    @property
    def required_fields(self) -> List[str]:
        """Every payload field a record needs to become a fact"""
        fields: List[str] = []
        for name in self.fact.required_fields + self.fact.measures:
            if name not in fields:
                fields.append(name)
        for dimension in self.dimensions:
            for name in dimension.key_fields:
                if name not in fields:
                    fields.append(name)
        return fields


class PipelineCatalog(BaseModel):
    """All configured pipelines"""

    pipelines: List[PipelineDefinition] = Field(default_factory=list)

    @field_validator("pipelines")
    @classmethod
    def unique_pipeline_ids(cls, v: List[PipelineDefinition]) -> List[PipelineDefinition]:
        ids = [p.pipeline_id for p in v]
        if len(ids) != len(set(ids)):
            raise ValueError("pipeline_id values must be unique")
        return v

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "PipelineCatalog":
        with open(path, "r", encoding="utf-8") as fh:
            data: Dict[str, Any] = yaml.safe_load(fh) or {}
        return cls.model_validate(data)

    def get(self, pipeline_id: str) -> PipelineDefinition:
        for definition in self.pipelines:
            if definition.pipeline_id == pipeline_id:
                return definition
        raise PipelineNotFound(
            f"No pipeline named '{pipeline_id}'",
            context={"pipeline_id": pipeline_id}
        )

    @property
    def pipeline_ids(self) -> List[str]:
        return [p.pipeline_id for p in self.pipelines]
