"""
Transform extracted source records into star-schema dimension and fact records
"""

from typing import Dict, Any, Optional, List, Tuple
from datetime import date, datetime
from schemas.pipeline import DimensionConfig, PipelineDefinition
from schemas.records import (
    DimensionRecord, FactRecord, RejectedRecord, RejectionReason,
    SourceRecord, TransformResult
)
from pipeline.resolver import DimensionResolver
from core.exceptions import TransformFatal
import hashlib
import logging
import math

logger = logging.getLogger(__name__)

NATURAL_KEY_SEPARATOR = "|"


def derive_fact_key(source_id: str) -> str:
    """Stable fact key for a source row: replays always land on the same key"""
    return hashlib.sha256(source_id.encode("utf-8")).hexdigest()


def date_attributes(value: date) -> Dict[str, Any]:
    """Calendar attributes of a date dimension member"""
    return {
        "date": value.isoformat(),
        "date_key": int(value.strftime("%Y%m%d")),
        "year": value.year,
        "quarter": (value.month - 1) // 3 + 1,
        "month": value.month,
        "day": value.day,
        "day_of_week": value.isoweekday(),
        "day_name": value.strftime("%A"),
    }


class RecordRejected(Exception):
    """Internal signal: the current record is invalid, the batch continues"""

    def __init__(self, reason: RejectionReason, detail: str):
        self.reason = reason
        self.detail = detail
        super().__init__(detail)


class StarSchemaTransformer:
    """
    Map source records onto one fact table and its dimensions.

    Handles:
    - Required field and measure validation (invalid rows are rejected, not fatal)
    - Natural key derivation for attribute and date dimensions
    - Surrogate key resolution for valid rows only
    - Deduplication of dimension deltas within a batch
    """

    def __init__(self, definition: PipelineDefinition):
        self.definition = definition
        self.fact = definition.fact
        self.dimensions = definition.dimensions

        self._mapped_fields = list(definition.required_fields)
        for dimension in self.dimensions:
            for name in dimension.attributes:
                if name not in self._mapped_fields:
                    self._mapped_fields.append(name)

    async def transform(
        self,
        records: List[SourceRecord],
        resolver: DimensionResolver
    ) -> TransformResult:
        """
        Transform one batch.

        Raises:
            TransformFatal: the payload shape cannot be interpreted at all
        """
        rejections: List[RejectedRecord] = []
        valid: List[Tuple[SourceRecord, Dict[str, float], Dict[str, Tuple[str, Dict[str, Any]]]]] = []
        seen_ids = set()

        for record in records:
            self._check_shape(record)

            if record.source_id in seen_ids:
                rejections.append(RejectedRecord(
                    source_id=record.source_id,
                    reason=RejectionReason.DUPLICATE_SOURCE_ID,
                    detail="source_id already seen earlier in this batch"
                ))
                continue
            seen_ids.add(record.source_id)

            try:
                self._check_required(record)
                measures = self._parse_measures(record)
                members = {d.name: self._derive_member(d, record) for d in self.dimensions}
            except RecordRejected as e:
                rejections.append(RejectedRecord(
                    source_id=record.source_id,
                    reason=e.reason,
                    detail=e.detail
                ))
                continue

            valid.append((record, measures, members))

        for dimension in self.dimensions:
            await resolver.prefetch(
                dimension.name,
                [members[dimension.name][0] for _, _, members in valid]
            )

        deltas: Dict[Tuple[str, str], DimensionRecord] = {}
        facts: List[FactRecord] = []

        for record, measures, members in valid:
            refs: Dict[str, int] = {}
            for name, (natural_key, attributes) in members.items():
                surrogate_key = await resolver.resolve(name, natural_key)
                refs[name] = surrogate_key
                # Last record of the batch supplies the attributes
                deltas[(name, natural_key)] = DimensionRecord(
                    dimension=name,
                    natural_key=natural_key,
                    surrogate_key=surrogate_key,
                    attributes=attributes,
                    is_new=resolver.is_new(name, natural_key)
                )

            facts.append(FactRecord(
                fact_table=self.fact.table,
                fact_key=derive_fact_key(record.source_id),
                source_id=record.source_id,
                dimension_refs=refs,
                measures=measures
            ))

        if rejections:
            logger.warning(
                f"Rejected {len(rejections)} of {len(records)} records for {self.definition.pipeline_id}"
            )
        logger.info(
            f"Transformed {len(facts)} facts and {len(deltas)} dimension members "
            f"for {self.definition.pipeline_id}"
        )

        return TransformResult(
            dimension_deltas=list(deltas.values()),
            facts=facts,
            rejections=rejections
        )

    def _check_shape(self, record: SourceRecord) -> None:
        if not isinstance(record.payload, dict):
            raise TransformFatal(
                "Record payload is not a mapping",
                context={"source_id": record.source_id, "payload_type": type(record.payload).__name__}
            )
        for name in self._mapped_fields:
            if isinstance(record.payload.get(name), (dict, list, tuple, set)):
                raise TransformFatal(
                    "Mapped field carries a nested structure",
                    context={"source_id": record.source_id, "field_name": name}
                )

    def _check_required(self, record: SourceRecord) -> None:
        missing = [
            name for name in self.definition.required_fields
            if self._is_missing(record.payload.get(name))
        ]
        if missing:
            raise RecordRejected(
                RejectionReason.MISSING_FIELD,
                f"missing fields: {', '.join(missing)}"
            )

    def _parse_measures(self, record: SourceRecord) -> Dict[str, float]:
        measures = {}
        for name in self.fact.measures:
            value = self._parse_float(record.payload.get(name))
            if value is None:
                raise RecordRejected(
                    RejectionReason.INVALID_MEASURE,
                    f"measure '{name}' is not a finite number: {record.payload.get(name)!r}"
                )
            measures[name] = value
        return measures

    def _derive_member(
        self,
        dimension: DimensionConfig,
        record: SourceRecord
    ) -> Tuple[str, Dict[str, Any]]:
        """Natural key and attributes of the member a record refers to"""
        payload = record.payload

        if dimension.kind == "date":
            field = dimension.key_fields[0]
            day = self._parse_date(payload.get(field))
            if day is None:
                raise RecordRejected(
                    RejectionReason.INVALID_DATE,
                    f"field '{field}' of dimension '{dimension.name}' is not a date: {payload.get(field)!r}"
                )
            return day.isoformat(), date_attributes(day)

        parts = []
        for field in dimension.key_fields:
            value = payload.get(field)
            text = "" if value is None else str(value).strip()
            if not text:
                raise RecordRejected(
                    RejectionReason.INVALID_DIMENSION_KEY,
                    f"empty key field '{field}' for dimension '{dimension.name}'"
                )
            parts.append(text)

        attributes = {field: payload.get(field) for field in dimension.key_fields}
        for name in dimension.attributes:
            attributes[name] = payload.get(name)

        return NATURAL_KEY_SEPARATOR.join(parts), attributes

    @staticmethod
    def _is_missing(value: Any) -> bool:
        return value is None

    @staticmethod
    def _parse_float(value: Any) -> Optional[float]:
        """Safely parse a finite float; booleans are not numbers here"""
        if value is None or value == "" or isinstance(value, bool):
            return None
        try:
            parsed = float(value)
        except (ValueError, TypeError):
            return None
        if not math.isfinite(parsed):
            return None
        return parsed

    @staticmethod
    def _parse_date(value: Any) -> Optional[date]:
        """Safely parse a date from a date, datetime or ISO string"""
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return value.date()
        if isinstance(value, date):
            return value
        if not isinstance(value, str):
            return None
        try:
            return datetime.fromisoformat(value.strip().replace("Z", "+00:00")).date()
        except ValueError:
            return None
