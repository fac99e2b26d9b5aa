"""
Unit tests for the star-schema transformer and surrogate key resolver
"""

import pytest
from datetime import datetime
from models.warehouse import DimensionMember
from pipeline.resolver import DimensionResolver
from pipeline.transformer import StarSchemaTransformer, date_attributes, derive_fact_key
from schemas.records import RejectionReason
from core.exceptions import TransformFatal
from conftest import make_record, order


class TestStarSchemaTransformer:
    """Test mapping of source records onto facts and dimensions"""

    @pytest.mark.asyncio
    async def test_three_row_batch(self, db_session, sales_definition, three_orders):
        """A and B share a date but differ in product; C repeats A's product"""
        transformer = StarSchemaTransformer(sales_definition)

        result = await transformer.transform(three_orders, DimensionResolver(db_session))

        assert len(result.facts) == 3
        assert result.rejections == []

        products = [d for d in result.dimension_deltas if d.dimension == "dim_product"]
        dates = [d for d in result.dimension_deltas if d.dimension == "dim_date"]
        assert sorted(d.natural_key for d in products) == ["p1", "p2"]
        assert [d.natural_key for d in dates] == ["2024-01-15"]
        assert all(d.is_new for d in result.dimension_deltas)

        facts = {f.source_id: f for f in result.facts}
        assert facts["A"].dimension_refs["dim_product"] == facts["C"].dimension_refs["dim_product"]
        assert facts["A"].dimension_refs["dim_product"] != facts["B"].dimension_refs["dim_product"]
        assert facts["A"].measures == {"amount": 10.0}
        assert facts["A"].fact_key == derive_fact_key("A")

    @pytest.mark.asyncio
    async def test_surrogate_keys_start_at_one(self, db_session, sales_definition, three_orders):
        transformer = StarSchemaTransformer(sales_definition)

        result = await transformer.transform(three_orders, DimensionResolver(db_session))

        keys = {d.natural_key: d.surrogate_key for d in result.dimension_deltas if d.dimension == "dim_product"}
        assert keys == {"p1": 1, "p2": 2}

    @pytest.mark.asyncio
    async def test_existing_members_keep_their_key(self, db_session, sales_definition):
        """Surrogate keys are looked up, not regenerated"""
        db_session.add(DimensionMember(dimension="dim_product", natural_key="p9", surrogate_key=7, attributes={}))
        await db_session.commit()

        transformer = StarSchemaTransformer(sales_definition)
        result = await transformer.transform(
            [order("A", 0, "p9", 1.0), order("B", 1, "p10", 2.0)],
            DimensionResolver(db_session)
        )

        keys = {d.natural_key: d for d in result.dimension_deltas if d.dimension == "dim_product"}
        assert keys["p9"].surrogate_key == 7
        assert keys["p9"].is_new is False
        assert keys["p10"].surrogate_key == 8
        assert keys["p10"].is_new is True

    @pytest.mark.asyncio
    async def test_invalid_records_are_rejected_not_fatal(self, db_session, sales_definition):
        """Bad rows are collected with a reason code; the batch proceeds"""
        records = [
            order("ok", 0, "p1", 5.0),
            make_record("no_amount", 1, product_id="p1", order_date="2024-01-15"),
            order("bad_amount", 2, "p1", "abc"),
            order("bool_amount", 3, "p1", True),
            order("nan_amount", 4, "p1", float("nan")),
            order("blank_product", 5, "   ", 1.0),
            order("bad_date", 6, "p1", 1.0, order_date="15/01/2024"),
        ]
        transformer = StarSchemaTransformer(sales_definition)

        result = await transformer.transform(records, DimensionResolver(db_session))

        reasons = {r.source_id: r.reason for r in result.rejections}
        assert reasons == {
            "no_amount": RejectionReason.MISSING_FIELD.value,
            "bad_amount": RejectionReason.INVALID_MEASURE.value,
            "bool_amount": RejectionReason.INVALID_MEASURE.value,
            "nan_amount": RejectionReason.INVALID_MEASURE.value,
            "blank_product": RejectionReason.INVALID_DIMENSION_KEY.value,
            "bad_date": RejectionReason.INVALID_DATE.value,
        }
        assert [f.source_id for f in result.facts] == ["ok"]
        assert result.rejected_count == 6

    @pytest.mark.asyncio
    async def test_rejected_rows_do_not_allocate_keys(self, db_session, sales_definition):
        records = [
            order("bad", 0, "p_rejected", "not-a-number"),
            order("good", 1, "p_kept", 3.0),
        ]
        transformer = StarSchemaTransformer(sales_definition)

        result = await transformer.transform(records, DimensionResolver(db_session))

        products = [d for d in result.dimension_deltas if d.dimension == "dim_product"]
        assert [(d.natural_key, d.surrogate_key) for d in products] == [("p_kept", 1)]

    @pytest.mark.asyncio
    async def test_duplicate_source_id_first_wins(self, db_session, sales_definition):
        records = [order("A", 0, "p1", 1.0), order("A", 1, "p2", 2.0)]
        transformer = StarSchemaTransformer(sales_definition)

        result = await transformer.transform(records, DimensionResolver(db_session))

        assert len(result.facts) == 1
        assert result.facts[0].measures == {"amount": 1.0}
        assert result.rejections[0].reason == RejectionReason.DUPLICATE_SOURCE_ID.value

    @pytest.mark.asyncio
    async def test_last_record_supplies_dimension_attributes(self, db_session, sales_definition):
        records = [
            order("A", 0, "p1", 1.0, product_name="Old name"),
            order("B", 1, "p1", 2.0, product_name="New name"),
        ]
        transformer = StarSchemaTransformer(sales_definition)

        result = await transformer.transform(records, DimensionResolver(db_session))

        products = [d for d in result.dimension_deltas if d.dimension == "dim_product"]
        assert len(products) == 1
        assert products[0].attributes["product_name"] == "New name"

    @pytest.mark.asyncio
    async def test_nested_mapped_field_is_fatal(self, db_session, sales_definition):
        records = [order("A", 0, "p1", 1.0), order("B", 1, "p1", {"value": 2.0})]
        transformer = StarSchemaTransformer(sales_definition)

        with pytest.raises(TransformFatal) as exc_info:
            await transformer.transform(records, DimensionResolver(db_session))

        assert exc_info.value.context["field_name"] == "amount"
        assert exc_info.value.context["source_id"] == "B"

    @pytest.mark.asyncio
    async def test_unmapped_nested_fields_are_ignored(self, db_session, sales_definition):
        records = [order("A", 0, "p1", 1.0, tags=["x", "y"])]
        transformer = StarSchemaTransformer(sales_definition)

        result = await transformer.transform(records, DimensionResolver(db_session))

        assert len(result.facts) == 1

    @pytest.mark.asyncio
    async def test_numeric_strings_are_accepted(self, db_session, sales_definition):
        transformer = StarSchemaTransformer(sales_definition)

        result = await transformer.transform([order("A", 0, "p1", "19.99")], DimensionResolver(db_session))

        assert result.facts[0].measures == {"amount": 19.99}

    @pytest.mark.asyncio
    async def test_timestamp_strings_feed_date_dimension(self, db_session, sales_definition):
        records = [order("A", 0, "p1", 1.0, order_date="2024-03-31T23:30:00Z")]
        transformer = StarSchemaTransformer(sales_definition)

        result = await transformer.transform(records, DimensionResolver(db_session))

        dates = [d for d in result.dimension_deltas if d.dimension == "dim_date"]
        assert dates[0].natural_key == "2024-03-31"
        assert dates[0].attributes["quarter"] == 1


class TestDateAttributes:
    """Calendar attributes of date dimension members"""

    def test_monday(self):
        attributes = date_attributes(datetime(2024, 1, 15).date())

        assert attributes == {
            "date": "2024-01-15",
            "date_key": 20240115,
            "year": 2024,
            "quarter": 1,
            "month": 1,
            "day": 15,
            "day_of_week": 1,
            "day_name": "Monday",
        }

    def test_quarter_boundaries(self):
        assert date_attributes(datetime(2024, 4, 1).date())["quarter"] == 2
        assert date_attributes(datetime(2024, 12, 31).date())["quarter"] == 4


class TestFactKey:

    def test_fact_key_is_deterministic(self):
        assert derive_fact_key("order-1") == derive_fact_key("order-1")
        assert derive_fact_key("order-1") != derive_fact_key("order-2")
        assert len(derive_fact_key("order-1")) == 64


class TestDimensionResolver:
    """Test surrogate key lookup and allocation"""

    @pytest.mark.asyncio
    async def test_allocates_after_current_max(self, db_session):
        db_session.add_all([
            DimensionMember(dimension="dim_product", natural_key="a", surrogate_key=3, attributes={}),
            DimensionMember(dimension="dim_customer", natural_key="a", surrogate_key=40, attributes={}),
        ])
        await db_session.commit()
        resolver = DimensionResolver(db_session)

        assert await resolver.resolve("dim_product", "a") == 3
        assert await resolver.resolve("dim_product", "b") == 4
        assert await resolver.resolve("dim_product", "c") == 5
        assert await resolver.resolve("dim_product", "b") == 4
        assert resolver.is_new("dim_product", "b")
        assert not resolver.is_new("dim_product", "a")

    @pytest.mark.asyncio
    async def test_prefetch_fills_cache(self, db_session):
        db_session.add(DimensionMember(dimension="dim_product", natural_key="a", surrogate_key=1, attributes={}))
        await db_session.commit()
        resolver = DimensionResolver(db_session)

        await resolver.prefetch("dim_product", ["a", "missing"])

        assert resolver._keys == {("dim_product", "a"): 1}
