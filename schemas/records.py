"""
Pydantic schemas for the records that flow through one pipeline run
"""

from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any, Union
from datetime import datetime, timezone
import enum

# A watermark boundary: timestamp, integer cursor or opaque string cursor.
# None is the "beginning" sentinel and sorts before every boundary.
Boundary = Union[datetime, int, str, None]

BEGINNING: Boundary = None


class SourceRecord(BaseModel):
    """
    One raw change row as extracted from the source.

    Immutable once produced. extracted_at is normalised to naive UTC so
    boundaries from every source compare consistently.
    """

    model_config = ConfigDict(frozen=True)

    source_id: str = Field(..., min_length=1, max_length=255)
    payload: Dict[str, Any] = Field(default_factory=dict)
    extracted_at: datetime

    @field_validator("source_id", mode="before")
    @classmethod
    def clean_source_id(cls, v):
        """Accept integer ids from the source, store them as text"""
        if isinstance(v, int) and not isinstance(v, bool):
            v = str(v)
        if isinstance(v, str):
            v = v.strip()
        return v

    @field_validator("extracted_at")
    @classmethod
    def to_naive_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is not None:
            v = v.astimezone(timezone.utc).replace(tzinfo=None)
        return v


class ExtractBatch(BaseModel):
    """Ordered records of one extraction and the boundary they reach"""
    records: List[SourceRecord] = Field(default_factory=list)
    next_boundary: Boundary = None

    def __len__(self) -> int:
        return len(self.records)


class DimensionRecord(BaseModel):
    """
    A dimension member to upsert.

    Type-1 semantics: attributes overwrite the stored ones, the surrogate
    key never changes once assigned.
    """
    dimension: str
    natural_key: str = Field(..., min_length=1, max_length=255)
    surrogate_key: int = Field(..., ge=1)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    is_new: bool = False


class FactRecord(BaseModel):
    """A fact row; fact_key is derived from source_id and never regenerated"""
    fact_table: str
    fact_key: str = Field(..., min_length=1, max_length=64)
    source_id: str
    dimension_refs: Dict[str, int] = Field(default_factory=dict)
    measures: Dict[str, float] = Field(default_factory=dict)


class RejectionReason(str, enum.Enum):
    """Why a source record was left out of a batch"""
    MISSING_FIELD = "missing_field"
    INVALID_MEASURE = "invalid_measure"
    INVALID_DIMENSION_KEY = "invalid_dimension_key"
    INVALID_DATE = "invalid_date"
    DUPLICATE_SOURCE_ID = "duplicate_source_id"


class RejectedRecord(BaseModel):
    source_id: str
    reason: RejectionReason
    detail: Optional[str] = None

    model_config = ConfigDict(use_enum_values=True)


class TransformResult(BaseModel):
    """Output of transforming one batch"""
    dimension_deltas: List[DimensionRecord] = Field(default_factory=list)
    facts: List[FactRecord] = Field(default_factory=list)
    rejections: List[RejectedRecord] = Field(default_factory=list)

    @property
    def rejected_count(self) -> int:
        return len(self.rejections)


class FactConflict(BaseModel):
    """Same fact_key, different measures: a non-idempotent replay"""
    fact_table: str
    fact_key: str
    source_id: str
    stored_measures: Dict[str, Any]
    incoming_measures: Dict[str, Any]


class LoadResult(BaseModel):
    committed_count: int = 0
    skipped_duplicate_count: int = 0
    dimensions_upserted: int = 0
