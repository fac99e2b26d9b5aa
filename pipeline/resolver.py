"""
Surrogate key resolution for dimension members
"""

from typing import Dict, Iterable, Set, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import OperationalError
from sqlalchemy import select, func
from models.warehouse import DimensionMember
from core.exceptions import TargetUnavailable
import logging

logger = logging.getLogger(__name__)

PREFETCH_CHUNK_SIZE = 500


class DimensionResolver:
    """
    Map (dimension, natural_key) to a stable surrogate key.

    Existing members keep the key they were given on first load. Unknown
    natural keys get the next free key of their dimension (max + 1,
    starting at 1); those allocations only become durable when the loader
    commits the members, and a resolver is scoped to one transform attempt.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session
        self._keys: Dict[Tuple[str, str], int] = {}
        self._next_key: Dict[str, int] = {}
        self._allocated: Set[Tuple[str, str]] = set()

    async def prefetch(self, dimension: str, natural_keys: Iterable[str]) -> None:
        """Load stored surrogate keys for many natural keys at once"""
        pending = sorted({k for k in natural_keys if (dimension, k) not in self._keys})

        for i in range(0, len(pending), PREFETCH_CHUNK_SIZE):
            chunk = pending[i:i + PREFETCH_CHUNK_SIZE]
            rows = await self._query(
                select(DimensionMember.natural_key, DimensionMember.surrogate_key)
                .where(
                    DimensionMember.dimension == dimension,
                    DimensionMember.natural_key.in_(chunk)
                ),
                dimension
            )
            for natural_key, surrogate_key in rows:
                self._keys[(dimension, natural_key)] = surrogate_key

    async def resolve(self, dimension: str, natural_key: str) -> int:
        """Surrogate key for natural_key, allocating one if the member is new"""
        cache_key = (dimension, natural_key)
        if cache_key in self._keys:
            return self._keys[cache_key]

        rows = await self._query(
            select(DimensionMember.surrogate_key).where(
                DimensionMember.dimension == dimension,
                DimensionMember.natural_key == natural_key
            ),
            dimension
        )
        existing = rows[0][0] if rows else None
        if existing is not None:
            self._keys[cache_key] = existing
            return existing

        surrogate_key = await self._allocate(dimension)
        self._keys[cache_key] = surrogate_key
        self._allocated.add(cache_key)
        logger.debug(f"Allocated surrogate key {surrogate_key} for {dimension}:{natural_key}")
        return surrogate_key

    def is_new(self, dimension: str, natural_key: str) -> bool:
        """Whether resolve() allocated the key instead of finding it"""
        return (dimension, natural_key) in self._allocated

    async def _allocate(self, dimension: str) -> int:
        if dimension not in self._next_key:
            rows = await self._query(
                select(func.max(DimensionMember.surrogate_key))
                .where(DimensionMember.dimension == dimension),
                dimension
            )
            current_max = rows[0][0] if rows else None
            self._next_key[dimension] = (current_max or 0) + 1

        surrogate_key = self._next_key[dimension]
        self._next_key[dimension] = surrogate_key + 1
        return surrogate_key

    async def _query(self, stmt, dimension: str):
        try:
            result = await self.db.execute(stmt)
        except OperationalError as e:
            raise TargetUnavailable(
                "Failed to read dimension members",
                context={"dimension": dimension, "operation": "SELECT", "table_name": "dimension_members"},
                original_exception=e
            )
        return result.all()
