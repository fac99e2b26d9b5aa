"""
CSV file source with incremental loading
"""

import pandas as pd
from typing import List, Tuple
from pathlib import Path
from models.base import BoundaryType
from schemas.records import Boundary, SourceRecord
from pipeline.extractor import take_batch
from pipeline.sources.base import RowSource
from core.exceptions import SourceSchemaError, SourceUnavailable
import logging

logger = logging.getLogger(__name__)


class CSVSource(RowSource):
    """
    Read change rows from a CSV file.

    Supports:
    - Incremental loading via timestamp or integer row id
    - Header normalization
    - Empty cells as missing values
    """

    def __init__(
        self,
        source_name: str,
        file_path: str,
        id_column: str = "id",
        timestamp_column: str = "updated_at",
        ordering: BoundaryType = BoundaryType.TIMESTAMP
    ):
        super().__init__(source_name, id_column, timestamp_column, ordering)
        self.file_path = Path(file_path)

    async def fetch(self, since: Boundary, limit: int) -> Tuple[List[SourceRecord], Boundary]:
        """
        Read the file and cut the next batch after `since`.

        Raises:
            SourceUnavailable: the file is missing or unreadable
            SourceSchemaError: the id or ordering column is missing
        """
        if not self.file_path.exists():
            raise SourceUnavailable(
                f"CSV file not found: {self.file_path}",
                context={"source": self.source_name, "file_path": str(self.file_path)}
            )

        logger.info(f"Reading CSV from {self.file_path}")

        # Every cell as text so ids and dimension keys keep their exact spelling
        df = pd.read_csv(self.file_path, dtype=str, keep_default_na=False)

        # Normalize column names (strip whitespace, lowercase)
        df.columns = df.columns.str.strip().str.lower().str.replace(' ', '_')

        required = {self.id_column, self.boundary_column}
        missing = sorted(required - set(df.columns))
        if missing:
            raise SourceSchemaError(
                f"CSV file {self.file_path.name} lacks required columns",
                context={"source": self.source_name, "missing_fields": missing}
            )

        if self.timestamp_column in df.columns:
            parsed = pd.to_datetime(df[self.timestamp_column], utc=True, errors="coerce")
            df[self.timestamp_column] = parsed.dt.tz_localize(None).map(
                lambda ts: None if pd.isna(ts) else ts.isoformat()
            )

        df = df.astype(object).where(pd.notna(df), None)
        records = [
            self.to_record({k: (None if v == "" else v) for k, v in row.items()})
            for row in df.to_dict(orient="records")
        ]

        batch, next_boundary = take_batch(records, since, limit, self.boundary_of)
        logger.info(f"Read {len(records)} rows from CSV, {len(batch)} after {since}")
        return batch, next_boundary
