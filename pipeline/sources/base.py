"""
Shared row handling for sources that yield flat rows (tables, CSV files, JSON APIs)
"""

from typing import Any, Dict, Optional
from datetime import date, datetime, timezone
from decimal import Decimal
from models.base import BoundaryType, utcnow
from schemas.records import Boundary, SourceRecord
from pipeline.extractor import SourceAdapter
from core.exceptions import SourceSchemaError
import logging
import math

logger = logging.getLogger(__name__)


def to_scalar(value: Any) -> Any:
    """Convert driver and numpy values to JSON-friendly python scalars"""
    if value is None:
        return None
    if hasattr(value, "item") and not isinstance(value, (str, bytes)):
        # numpy scalar
        value = value.item()
    if isinstance(value, float) and math.isnan(value):
        return None
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a datetime or ISO string; naive UTC result"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class RowSource(SourceAdapter):
    """
    Base class for sources whose rows carry an id column and an ordering column.

    Timestamp-ordered sources order by timestamp_column; integer-ordered
    sources order by the (monotonic) id column itself.
    """

    def __init__(
        self,
        source_name: str,
        id_column: str = "id",
        timestamp_column: str = "updated_at",
        ordering: BoundaryType = BoundaryType.TIMESTAMP
    ):
        super().__init__(source_name)
        self.id_column = id_column
        self.timestamp_column = timestamp_column
        self.boundary_type = ordering

    @property
    def boundary_column(self) -> str:
        if self.boundary_type == BoundaryType.INTEGER:
            return self.id_column
        return self.timestamp_column

    def boundary_of(self, record: SourceRecord) -> Boundary:
        if self.boundary_type == BoundaryType.INTEGER:
            return int(record.payload[self.id_column])
        return record.extracted_at

    def to_record(self, row: Dict[str, Any]) -> SourceRecord:
        """
        Map a raw row to a SourceRecord.

        Raises:
            SourceSchemaError: id or ordering value is absent or unusable
        """
        payload = {str(k): to_scalar(v) for k, v in row.items()}

        source_id = payload.get(self.id_column)
        if source_id is None or str(source_id).strip() == "":
            raise SourceSchemaError(
                f"Row from {self.source_name} has no '{self.id_column}' value",
                context={"source": self.source_name, "missing_fields": [self.id_column]}
            )

        extracted_at = parse_timestamp(row.get(self.timestamp_column))
        if self.boundary_type == BoundaryType.TIMESTAMP:
            if extracted_at is None:
                raise SourceSchemaError(
                    f"Row from {self.source_name} has no usable '{self.timestamp_column}' value",
                    context={
                        "source": self.source_name,
                        "source_id": str(source_id),
                        "missing_fields": [self.timestamp_column]
                    }
                )
        else:
            try:
                payload[self.id_column] = int(source_id)
            except (TypeError, ValueError):
                raise SourceSchemaError(
                    f"Row from {self.source_name} has a non-integer '{self.id_column}'",
                    context={"source": self.source_name, "source_id": str(source_id)}
                )
            if extracted_at is None:
                extracted_at = utcnow()

        return SourceRecord(
            source_id=str(source_id),
            payload=payload,
            extracted_at=extracted_at
        )
