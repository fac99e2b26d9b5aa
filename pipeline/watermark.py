"""
Watermark tracking: how far each pipeline has durably loaded its source.

The stored boundary only ever moves forward through advance(), which is a
compare-and-set on the row's version so two overlapping runs can never
both move it. reset() is the operator escape hatch used to replay a window.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy import select, update
from models.base import BoundaryType, utcnow
from models.watermark import Watermark
from schemas.records import BEGINNING, Boundary
from core.exceptions import StaleAdvance, TargetUnavailable, WatermarkError
import logging

logger = logging.getLogger(__name__)


def encode_boundary(boundary: Boundary, boundary_type: BoundaryType) -> Optional[str]:
    """Serialise a boundary for storage"""
    if boundary is None:
        return None
    if boundary_type == BoundaryType.TIMESTAMP:
        if not isinstance(boundary, datetime):
            raise WatermarkError(
                "Timestamp boundary must be a datetime",
                context={"boundary": boundary}
            )
        if boundary.tzinfo is not None:
            boundary = boundary.astimezone(timezone.utc).replace(tzinfo=None)
        return boundary.isoformat()
    if boundary_type == BoundaryType.INTEGER:
        if isinstance(boundary, bool) or not isinstance(boundary, int):
            raise WatermarkError(
                "Integer boundary must be an int",
                context={"boundary": boundary}
            )
        return str(boundary)
    return str(boundary)


def decode_boundary(value: Optional[str], boundary_type: BoundaryType) -> Boundary:
    """Inverse of encode_boundary"""
    if value is None:
        return BEGINNING
    if boundary_type == BoundaryType.TIMESTAMP:
        return datetime.fromisoformat(value)
    if boundary_type == BoundaryType.INTEGER:
        return int(value)
    return value


def is_after(candidate: Boundary, current: Boundary) -> bool:
    """Strict ordering in which BEGINNING precedes every boundary"""
    if candidate is None:
        return False
    if current is None:
        return True
    return candidate > current


class WatermarkTracker:
    """
    Read and advance per-pipeline watermarks.

    Every write commits before returning, so an advanced watermark is
    durable by the time the caller sees success.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def get(self, pipeline_id: str) -> Optional[Watermark]:
        """Retrieve the watermark row for this pipeline"""
        try:
            result = await self.db.execute(
                select(Watermark)
                .where(Watermark.pipeline_id == pipeline_id)
                .execution_options(populate_existing=True)
            )
        except OperationalError as e:
            raise TargetUnavailable(
                "Failed to read watermark",
                context={"pipeline_id": pipeline_id, "operation": "SELECT", "table_name": "watermarks"},
                original_exception=e
            )
        return result.scalar_one_or_none()

    async def read(self, pipeline_id: str) -> Boundary:
        """Current boundary, or BEGINNING when none is recorded"""
        watermark = await self.get(pipeline_id)
        if watermark is None:
            return BEGINNING
        return decode_boundary(watermark.boundary_value, watermark.boundary_type)

    async def advance(
        self,
        pipeline_id: str,
        new_boundary: Boundary,
        boundary_type: BoundaryType = BoundaryType.TIMESTAMP
    ) -> Watermark:
        """
        Move the watermark forward to new_boundary.

        Raises:
            StaleAdvance: new_boundary is not strictly after the stored one,
                or another writer changed the row since it was read
            WatermarkError: the stored boundary has a different type
        """
        encoded = encode_boundary(new_boundary, boundary_type)
        new_boundary = decode_boundary(encoded, boundary_type)
        watermark = await self.get(pipeline_id)

        if watermark is None:
            if new_boundary is None:
                raise StaleAdvance(
                    "Cannot advance a watermark to the beginning",
                    context={"pipeline_id": pipeline_id}
                )
            return await self._insert(pipeline_id, encoded, boundary_type)

        if watermark.boundary_type != boundary_type:
            raise WatermarkError(
                "Boundary type does not match the stored watermark",
                context={
                    "pipeline_id": pipeline_id,
                    "stored_type": watermark.boundary_type.value,
                    "new_type": boundary_type.value
                }
            )

        current = decode_boundary(watermark.boundary_value, watermark.boundary_type)
        if not is_after(new_boundary, current):
            raise StaleAdvance(
                "New boundary is not after the stored watermark",
                context={
                    "pipeline_id": pipeline_id,
                    "stored_boundary": watermark.boundary_value,
                    "new_boundary": encoded
                }
            )

        return await self._compare_and_set(watermark, encoded)

    async def reset(
        self,
        pipeline_id: str,
        boundary: Boundary = BEGINNING,
        boundary_type: BoundaryType = BoundaryType.TIMESTAMP
    ) -> Watermark:
        """Rewind (or set) the watermark unconditionally, e.g. to replay a window"""
        encoded = encode_boundary(boundary, boundary_type)
        watermark = await self.get(pipeline_id)

        if watermark is None:
            watermark = await self._insert(pipeline_id, encoded, boundary_type)
        else:
            await self.db.execute(
                update(Watermark)
                .where(Watermark.id == watermark.id)
                .values(
                    boundary_type=boundary_type,
                    boundary_value=encoded,
                    version=Watermark.version + 1,
                    updated_at=utcnow()
                )
            )
            await self.db.commit()
            watermark = await self.get(pipeline_id)

        logger.warning(f"Watermark for {pipeline_id} reset to {encoded or 'beginning'}")
        return watermark

    async def _insert(
        self,
        pipeline_id: str,
        encoded: Optional[str],
        boundary_type: BoundaryType
    ) -> Watermark:
        watermark = Watermark(
            pipeline_id=pipeline_id,
            boundary_type=boundary_type,
            boundary_value=encoded,
            version=1,
            created_at=utcnow(),
            updated_at=utcnow()
        )
        self.db.add(watermark)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise StaleAdvance(
                "Watermark was created concurrently",
                context={"pipeline_id": pipeline_id, "new_boundary": encoded},
                original_exception=e
            )
        except OperationalError as e:
            await self.db.rollback()
            raise TargetUnavailable(
                "Failed to write watermark",
                context={"pipeline_id": pipeline_id, "operation": "INSERT", "table_name": "watermarks"},
                original_exception=e
            )
        logger.info(f"Watermark for {pipeline_id} initialised at {encoded}")
        return watermark

    async def _compare_and_set(self, watermark: Watermark, encoded: Optional[str]) -> Watermark:
        pipeline_id = watermark.pipeline_id
        expected_version = watermark.version
        try:
            result = await self.db.execute(
                update(Watermark)
                .where(
                    Watermark.id == watermark.id,
                    Watermark.version == expected_version
                )
                .values(
                    boundary_value=encoded,
                    version=expected_version + 1,
                    updated_at=utcnow()
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                raise StaleAdvance(
                    "Watermark changed since it was read",
                    context={
                        "pipeline_id": pipeline_id,
                        "expected_version": expected_version,
                        "new_boundary": encoded
                    }
                )
            await self.db.commit()
        except OperationalError as e:
            await self.db.rollback()
            raise TargetUnavailable(
                "Failed to advance watermark",
                context={"pipeline_id": pipeline_id, "operation": "UPDATE", "table_name": "watermarks"},
                original_exception=e
            )

        logger.info(f"Watermark for {pipeline_id} advanced to {encoded}")
        return await self.get(pipeline_id)
