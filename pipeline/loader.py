"""
Load dimension members and facts into the warehouse with upsert logic (idempotency)
"""

from typing import Any, Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from models.base import utcnow
from models.warehouse import DimensionMember, FactAnomaly, FactRow
from schemas.records import DimensionRecord, FactConflict, FactRecord, LoadResult
from core.exceptions import ConcurrentWriteError, LoadConflict, TargetUnavailable
import logging
import math
import uuid

logger = logging.getLogger(__name__)

LOOKUP_CHUNK_SIZE = 500


def _insert_for(session: AsyncSession):
    """Dialect-specific INSERT supporting ON CONFLICT"""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


def measures_match(stored: Dict[str, float], incoming: Dict[str, float]) -> bool:
    """Same measure names with numerically equal values"""
    if set(stored) != set(incoming):
        return False
    return all(
        math.isclose(float(stored[name]), float(incoming[name]), rel_tol=1e-9, abs_tol=1e-12)
        for name in incoming
    )


class WarehouseLoader:
    """
    Load one transformed batch with idempotent upsert operations.

    Ensures:
    - No duplicate facts on repeated runs (fact_key is the idempotency key)
    - Dimension attributes are updated in place, surrogate keys never change
    - A replay with different measures is refused and recorded as an anomaly
    - Atomic transactions (the batch is visible completely or not at all)
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def load(
        self,
        dimension_deltas: List[DimensionRecord],
        fact_records: List[FactRecord],
        pipeline_id: Optional[str] = None,
        run_id: Optional[uuid.UUID] = None
    ) -> LoadResult:
        """
        Upsert dimensions, then insert new facts, in a single transaction.

        Returns:
            LoadResult with committed and skipped-duplicate counts

        Raises:
            LoadConflict: a fact_key already exists with different measures
            ConcurrentWriteError: a concurrent writer won a unique-key race
            TargetUnavailable: the warehouse connection failed
        """
        context = {"pipeline_id": pipeline_id, "run_id": str(run_id) if run_id else None}

        try:
            dimensions_upserted = await self._write_dimensions(dimension_deltas)
            committed, skipped, conflicts = await self._write_facts(fact_records, pipeline_id, run_id)

            if conflicts:
                await self.db.rollback()
                await self._record_anomalies(conflicts, pipeline_id, run_id)
                raise LoadConflict(
                    f"{len(conflicts)} fact(s) replayed with different measures",
                    conflicts=conflicts,
                    context={**context, "fact_table": conflicts[0].fact_table}
                )

            await self.db.commit()

        except LoadConflict:
            raise
        except ConcurrentWriteError as e:
            await self.db.rollback()
            e.add_context(**context)
            raise
        except IntegrityError as e:
            await self.db.rollback()
            raise ConcurrentWriteError(
                "Unique key race while loading batch",
                context=context,
                original_exception=e
            )
        except OperationalError as e:
            await self.db.rollback()
            raise TargetUnavailable(
                "Warehouse unavailable while loading batch",
                context=context,
                original_exception=e
            )
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Loaded batch: {committed} facts committed, {skipped} duplicates skipped, "
            f"{dimensions_upserted} dimension members upserted"
        )
        return LoadResult(
            committed_count=committed,
            skipped_duplicate_count=skipped,
            dimensions_upserted=dimensions_upserted
        )

    async def _write_dimensions(self, deltas: List[DimensionRecord]) -> int:
        """
        INSERT ... ON CONFLICT (dimension, natural_key) DO UPDATE SET attributes

        The incoming attributes are merged into the stored ones: a pipeline
        overwrites the attributes it maps and leaves the rest of the member alone.
        """
        insert = _insert_for(self.db)
        stored = await self._stored_attributes(deltas)
        now = utcnow()

        for delta in deltas:
            attributes = {**stored.get((delta.dimension, delta.natural_key), {}), **delta.attributes}
            stmt = insert(DimensionMember).values(
                dimension=delta.dimension,
                natural_key=delta.natural_key,
                surrogate_key=delta.surrogate_key,
                attributes=attributes,
                created_at=now,
                updated_at=now
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["dimension", "natural_key"],
                set_={
                    "attributes": stmt.excluded.attributes,
                    "updated_at": stmt.excluded.updated_at,
                }
            ).returning(DimensionMember.surrogate_key)

            result = await self.db.execute(stmt)
            stored_key = result.scalar_one()

            if stored_key != delta.surrogate_key:
                raise ConcurrentWriteError(
                    "Dimension member was created concurrently with another surrogate key",
                    context={
                        "dimension": delta.dimension,
                        "natural_key": delta.natural_key,
                        "resolved_key": delta.surrogate_key,
                        "stored_key": stored_key
                    }
                )

        return len(deltas)

    async def _stored_attributes(self, deltas: List[DimensionRecord]) -> Dict[tuple, Dict[str, Any]]:
        stored: Dict[tuple, Dict[str, Any]] = {}
        by_dimension: Dict[str, List[str]] = {}
        for delta in deltas:
            by_dimension.setdefault(delta.dimension, []).append(delta.natural_key)

        for dimension, keys in by_dimension.items():
            for i in range(0, len(keys), LOOKUP_CHUNK_SIZE):
                chunk = keys[i:i + LOOKUP_CHUNK_SIZE]
                result = await self.db.execute(
                    select(DimensionMember.natural_key, DimensionMember.attributes).where(
                        DimensionMember.dimension == dimension,
                        DimensionMember.natural_key.in_(chunk)
                    )
                )
                for natural_key, attributes in result:
                    stored[(dimension, natural_key)] = dict(attributes or {})

        return stored

    async def _write_facts(
        self,
        facts: List[FactRecord],
        pipeline_id: Optional[str],
        run_id: Optional[uuid.UUID]
    ):
        """Insert facts whose key is new; compare measures of the ones already stored"""
        existing = await self._existing_facts(facts)

        committed = 0
        skipped = 0
        conflicts: List[FactConflict] = []
        now = utcnow()

        for fact in facts:
            stored = existing.get((fact.fact_table, fact.fact_key))
            if stored is not None:
                if measures_match(stored.measures, fact.measures):
                    skipped += 1
                else:
                    conflicts.append(FactConflict(
                        fact_table=fact.fact_table,
                        fact_key=fact.fact_key,
                        source_id=fact.source_id,
                        stored_measures=stored.measures,
                        incoming_measures=fact.measures
                    ))
                continue

            self.db.add(FactRow(
                fact_table=fact.fact_table,
                fact_key=fact.fact_key,
                source_id=fact.source_id,
                dimension_refs=fact.dimension_refs,
                measures=fact.measures,
                pipeline_id=pipeline_id,
                run_id=run_id,
                loaded_at=now
            ))
            committed += 1

        if committed and not conflicts:
            await self.db.flush()

        return committed, skipped, conflicts

    async def _existing_facts(self, facts: List[FactRecord]) -> Dict[tuple, FactRow]:
        existing: Dict[tuple, FactRow] = {}
        by_table: Dict[str, List[str]] = {}
        for fact in facts:
            by_table.setdefault(fact.fact_table, []).append(fact.fact_key)

        for fact_table, keys in by_table.items():
            for i in range(0, len(keys), LOOKUP_CHUNK_SIZE):
                chunk = keys[i:i + LOOKUP_CHUNK_SIZE]
                result = await self.db.execute(
                    select(FactRow).where(
                        FactRow.fact_table == fact_table,
                        FactRow.fact_key.in_(chunk)
                    )
                )
                for row in result.scalars():
                    existing[(row.fact_table, row.fact_key)] = row

        return existing

    async def _record_anomalies(
        self,
        conflicts: List[FactConflict],
        pipeline_id: Optional[str],
        run_id: Optional[uuid.UUID]
    ) -> None:
        """Persist conflicts in their own transaction so they survive the rollback"""
        now = utcnow()
        for conflict in conflicts:
            self.db.add(FactAnomaly(
                fact_table=conflict.fact_table,
                fact_key=conflict.fact_key,
                source_id=conflict.source_id,
                pipeline_id=pipeline_id,
                run_id=run_id,
                stored_measures=conflict.stored_measures,
                incoming_measures=conflict.incoming_measures,
                detected_at=now
            ))
        await self.db.commit()

        for conflict in conflicts:
            logger.error(
                f"Fact {conflict.fact_table}/{conflict.fact_key} (source {conflict.source_id}) "
                f"replayed with different measures: stored={conflict.stored_measures} "
                f"incoming={conflict.incoming_measures}"
            )
