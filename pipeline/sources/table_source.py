"""
Relational table source with incremental loading
"""

from typing import List, Optional, Tuple
from sqlalchemy import DateTime, Integer, String, literal_column, select, table, column
from sqlalchemy.ext.asyncio import AsyncEngine
from models.base import BoundaryType
from schemas.records import Boundary, SourceRecord
from pipeline.sources.base import RowSource
from core.database import create_engine
from core.config import settings
import logging

logger = logging.getLogger(__name__)

BOUNDARY_LABEL = "_etl_boundary"


class TableSource(RowSource):
    """
    Read change rows from a table of an operational database.

    Rows are selected strictly after the watermark in (boundary, id) order.
    A batch never ends in the middle of a group of rows sharing the same
    boundary value: the last group is always read completely.
    """

    def __init__(
        self,
        source_name: str,
        table_name: str,
        database_url: Optional[str] = None,
        engine: Optional[AsyncEngine] = None,
        id_column: str = "id",
        timestamp_column: str = "updated_at",
        ordering: BoundaryType = BoundaryType.TIMESTAMP
    ):
        super().__init__(source_name, id_column, timestamp_column, ordering)
        self.table_name = table_name
        self._owns_engine = engine is None
        self.engine = engine or create_engine(database_url or settings.source_database_url)

        schema = None
        name = table_name
        if "." in table_name:
            schema, name = table_name.split(".", 1)

        boundary_type = Integer if ordering == BoundaryType.INTEGER else DateTime
        columns = [column(self.boundary_column, boundary_type)]
        if self.id_column != self.boundary_column:
            columns.append(column(self.id_column, String))
        self.table = table(name, *columns, schema=schema)

    async def fetch(self, since: Boundary, limit: int) -> Tuple[List[SourceRecord], Boundary]:
        boundary_col = self.table.c[self.boundary_column]
        id_col = self.table.c[self.id_column]

        stmt = select(literal_column("*"), boundary_col.label(BOUNDARY_LABEL)).select_from(self.table)
        if since is not None:
            stmt = stmt.where(boundary_col > since)

        async with self.engine.connect() as conn:
            result = await conn.execute(stmt.order_by(boundary_col, id_col).limit(limit))
            rows = [dict(row) for row in result.mappings()]

            if len(rows) == limit:
                # Complete the group of rows sharing the last boundary
                last = rows[-1][BOUNDARY_LABEL]
                result = await conn.execute(
                    stmt.where(boundary_col <= last).order_by(boundary_col, id_col)
                )
                rows = [dict(row) for row in result.mappings()]

        if not rows:
            return [], since

        records = []
        for row in rows:
            boundary = row.pop(BOUNDARY_LABEL, None)
            if self.boundary_type == BoundaryType.TIMESTAMP:
                # typed value; drivers may hand back text for the raw column
                row[self.timestamp_column] = boundary
            records.append(self.to_record(row))

        records.sort(key=lambda r: (self.boundary_of(r), r.source_id))
        logger.info(f"Read {len(records)} rows from {self.table_name}")
        return records, self.boundary_of(records[-1])

    async def close(self) -> None:
        if self._owns_engine:
            await self.engine.dispose()
