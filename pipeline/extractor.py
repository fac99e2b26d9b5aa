"""
Extraction: the source adapter contract and the extractor that enforces it.

Adapters do the I/O; the Extractor guarantees that whatever an adapter
returns is a well-ordered window (since, next_boundary] so a retried or
replayed extraction with the same `since` yields the same rows.
"""

from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Tuple
from sqlalchemy.exc import OperationalError
from models.base import BoundaryType
from schemas.records import Boundary, ExtractBatch, SourceRecord
from pipeline.watermark import is_after
from core.exceptions import ETLException, SourceSchemaError, SourceUnavailable
import httpx
import logging

logger = logging.getLogger(__name__)


class SourceAdapter(ABC):
    """
    Abstract base class for all (read-only) sources.

    Responsibilities:
    - Query rows strictly after a boundary, in boundary order
    - Map rows to SourceRecord
    - Report the boundary of every record
    """

    boundary_type: BoundaryType = BoundaryType.TIMESTAMP

    def __init__(self, source_name: str):
        self.source_name = source_name

    @abstractmethod
    async def fetch(self, since: Boundary, limit: int) -> Tuple[List[SourceRecord], Boundary]:
        """
        Fetch records after `since`.

        Args:
            since: Last committed boundary (None for the beginning)
            limit: Preferred batch size; a batch may exceed it only to keep
                records sharing the final boundary together

        Returns:
            Records in (boundary, source_id) order and the boundary of the
            last record (or `since` when nothing is new)
        """
        pass

    def boundary_of(self, record: SourceRecord) -> Boundary:
        """Boundary value carried by a record"""
        return record.extracted_at

    async def close(self) -> None:
        """Release connections held by the adapter"""
        return None


def take_batch(
    records: Iterable[SourceRecord],
    since: Boundary,
    limit: int,
    boundary_of=lambda r: r.extracted_at
) -> Tuple[List[SourceRecord], Boundary]:
    """
    Order in-memory records and cut a batch of about `limit` records after `since`.

    The cut never separates records sharing the last boundary value.
    """
    pending = sorted(
        (r for r in records if is_after(boundary_of(r), since)),
        key=lambda r: (boundary_of(r), r.source_id)
    )
    if not pending:
        return [], since

    batch = pending[:limit]
    last = boundary_of(batch[-1])
    for record in pending[limit:]:
        if boundary_of(record) != last:
            break
        batch.append(record)

    return batch, last


class Extractor:
    """Bounded, ordered extraction from one source adapter"""

    def __init__(self, source: SourceAdapter):
        self.source = source

    async def extract(self, pipeline_id: str, since: Boundary, limit: int) -> ExtractBatch:
        """
        Extract the next batch after `since`.

        Raises:
            SourceUnavailable: Connectivity problems (retryable)
            SourceSchemaError: Missing fields or an ordering violation (fatal)
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")

        logger.info(f"Extracting up to {limit} records for {pipeline_id} since {since}")

        try:
            records, next_boundary = await self.source.fetch(since, limit)
        except ETLException:
            raise
        except (OSError, OperationalError, httpx.TransportError) as e:
            raise SourceUnavailable(
                f"Source {self.source.source_name} is unreachable",
                context={"pipeline_id": pipeline_id, "source": self.source.source_name},
                original_exception=e
            )

        if not records:
            logger.info(f"No new records for {pipeline_id}")
            return ExtractBatch(records=[], next_boundary=since)

        self._check_window(pipeline_id, records, since, next_boundary)

        logger.info(f"Extracted {len(records)} records for {pipeline_id} (next boundary: {next_boundary})")
        return ExtractBatch(records=records, next_boundary=next_boundary)

    def _check_window(
        self,
        pipeline_id: str,
        records: List[SourceRecord],
        since: Boundary,
        next_boundary: Boundary
    ) -> None:
        """Every record must lie in (since, next_boundary], in order"""
        context: dict[str, Any] = {"pipeline_id": pipeline_id, "source": self.source.source_name}

        if not is_after(next_boundary, since):
            raise SourceSchemaError(
                "Source returned records without moving past the watermark",
                context={**context, "since": since, "next_boundary": next_boundary}
            )

        previous = None
        for record in records:
            boundary = self.source.boundary_of(record)
            key = (boundary, record.source_id)
            if not is_after(boundary, since) or boundary > next_boundary:
                raise SourceSchemaError(
                    "Record lies outside the extraction window",
                    context={**context, "source_id": record.source_id, "boundary": boundary}
                )
            if previous is not None and key < previous:
                raise SourceSchemaError(
                    "Source returned records out of order",
                    context={**context, "source_id": record.source_id}
                )
            previous = key
