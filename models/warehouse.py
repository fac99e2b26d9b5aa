from sqlalchemy import Column, BigInteger, Integer, String, DateTime, Index, Uuid
from models.base import Base, JSONType, utcnow


class DimensionMember(Base):
    """
    Dimension rows of the star schema, one table for every dimension.

    Schema Design Philosophy:
    - (dimension, natural_key) identifies the business entity
    - surrogate_key is assigned once per natural key and never changes
    - attributes are overwritten in place (type-1 slowly changing dimension)

    Dashboards read dimension_members joined to fact_rows on
    (dimension, surrogate_key).
    """
    __tablename__ = "dimension_members"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    dimension = Column(String(100), nullable=False)
    natural_key = Column(String(255), nullable=False)
    surrogate_key = Column(BigInteger, nullable=False)

    attributes = Column(JSONType, nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("uq_dimension_natural_key", "dimension", "natural_key", unique=True),
        Index("uq_dimension_surrogate_key", "dimension", "surrogate_key", unique=True),
    )


class FactRow(Base):
    """
    Fact rows of the star schema, one table for every fact table.

    fact_key is derived from the originating source_id, so a replayed source
    row always lands on the same key and is never duplicated.
    """
    __tablename__ = "fact_rows"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    fact_table = Column(String(100), nullable=False)
    fact_key = Column(String(64), nullable=False)
    source_id = Column(String(255), nullable=False)

    # dimension name -> surrogate key
    dimension_refs = Column(JSONType, nullable=False, default=dict)
    # measure name -> numeric value
    measures = Column(JSONType, nullable=False, default=dict)

    # Lineage
    pipeline_id = Column(String(100), nullable=True, index=True)
    run_id = Column(Uuid(as_uuid=True), nullable=True)
    loaded_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("uq_fact_table_key", "fact_table", "fact_key", unique=True),
    )


class FactAnomaly(Base):
    """
    A replay that carried different measures for an already loaded fact.

    Written outside the rejected batch's transaction so it survives the
    rollback; kept for manual review, never auto-resolved.
    """
    __tablename__ = "fact_anomalies"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    fact_table = Column(String(100), nullable=False)
    fact_key = Column(String(64), nullable=False, index=True)
    source_id = Column(String(255), nullable=False)

    pipeline_id = Column(String(100), nullable=True, index=True)
    run_id = Column(Uuid(as_uuid=True), nullable=True)

    stored_measures = Column(JSONType, nullable=False)
    incoming_measures = Column(JSONType, nullable=False)

    detected_at = Column(DateTime, nullable=False, default=utcnow, index=True)
