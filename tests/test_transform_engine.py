"""Tests for the transform engine, type coercion and templates."""

from decimal import Decimal

import pytest
from unittest.mock import AsyncMock, Mock

from shopify_sync.models import (
    CoerceTransform,
    DefaultTransform,
    ExpressionTransform,
    FieldMapping,
    FieldTarget,
    LookupTransform,
    MappingConfig,
    MultiSource,
    SingleSource,
    SourceField,
    TemplateTransform,
    TransformStatus,
)
from shopify_sync.services.transform_engine import (
    COERCION_TARGETS,
    TemplateEngine,
    TransformEngine,
    TypeCoercer,
    normalize_target_type,
)


def field_mapping(mapping_id, field, column, transform=None, enabled=True):
    return FieldMapping(
        id=mapping_id,
        source=SingleSource(resource="ProductVariant", field=field),
        target=FieldTarget(table="dbo.Sku", column=column),
        transform=transform,
        enabled=enabled,
    )


def config_with(*mappings):
    return MappingConfig(
        id="mapping-1",
        name="Test",
        source_resource="ProductVariant",
        target_table="dbo.Sku",
        mappings=list(mappings),
    )


@pytest.fixture
def connector():
    connector = Mock()
    connector.dialect = "postgresql"
    connector.query = AsyncMock(return_value=[])
    return connector


@pytest.fixture
def engine(connector):
    return TransformEngine(connector)


class TestTypeCoercer:
    """Test target type coercion."""

    def test_normalize_target_type(self):
        assert normalize_target_type("decimal(10,2)") == "decimal"
        assert normalize_target_type("NVARCHAR(100)") == "string"
        assert normalize_target_type("bit") == "boolean"
        assert normalize_target_type("geometry") is None

    def test_int_truncates_decimal_strings(self):
        coercer = TypeCoercer()
        assert coercer.coerce("12.9", "int").value == 12
        assert coercer.coerce("42", "int").value == 42
        assert coercer.coerce("abc", "int").success is False

    def test_empty_string_becomes_null(self):
        coercer = TypeCoercer()
        assert coercer.coerce("  ", "int").value is None
        assert coercer.coerce("", "string").value == ""
        assert coercer.coerce("", "boolean").value is False

    def test_boolean(self):
        coercer = TypeCoercer()
        assert coercer.coerce("Yes", "bit").value is True
        assert coercer.coerce(0, "boolean").value is False
        assert coercer.coerce("maybe", "boolean").success is False

    def test_decimal_keeps_precision_as_text(self):
        coercer = TypeCoercer()
        assert coercer.coerce("19.99", "decimal(10,2)").value == "19.99"
        assert coercer.coerce(5, "money").value == "5"
        assert coercer.coerce("1e5", "decimal").success is False

    def test_bigint_takes_gid_tail(self):
        coercer = TypeCoercer()
        assert coercer.coerce("gid://shopify/ProductVariant/4455", "bigint").value == "4455"
        assert coercer.coerce(2.5, "bigint").success is False

    def test_datetime_normalized_to_utc(self):
        coercer = TypeCoercer()
        result = coercer.coerce("2024-03-01T10:00:00-05:00", "datetime")
        assert result.value == "2024-03-01T15:00:00.000Z"
        assert coercer.coerce("2024-03-01T23:30:00-05:00", "date").value == "2024-03-02"

    def test_unknown_target_type(self):
        result = TypeCoercer().coerce("x", "geometry")
        assert result.success is False
        assert "Unknown target type" in result.error

    def test_null_stays_null_for_every_target(self):
        coercer = TypeCoercer()
        for target in COERCION_TARGETS:
            result = coercer.coerce(None, target)
            assert result.success is True, target
            assert result.value is None, target

    def test_non_finite_numbers_are_rejected(self):
        coercer = TypeCoercer()
        for value in (float("nan"), float("inf"), float("-inf"), Decimal("NaN"), Decimal("Infinity")):
            for target in ("int", "float", "decimal", "bigint"):
                assert coercer.coerce(value, target).success is False, (value, target)
        for text in ("NaN", "Infinity", "-inf", "1e400"):
            assert coercer.coerce(text, "float").success is False, text
            assert coercer.coerce(text, "int").success is False, text
            assert coercer.coerce(text, "decimal").success is False, text


class TestTemplateEngine:
    def test_both_placeholder_styles(self):
        result = TemplateEngine().apply("SKU-{sku}-${color}", {"sku": "A1", "color": "red"})
        assert result.value == "SKU-A1-red"
        assert result.missing_vars == []

    def test_missing_and_null_values(self):
        result = TemplateEngine().apply("{a}|{b}", {"a": None})
        assert result.value == "|"
        assert result.missing_vars == ["b"]


class TestTransformEngine:
    """Test record transformation."""

    @pytest.mark.asyncio
    async def test_direct_and_expression(self, engine, sku_mapping):
        batch = await engine.transform_batch(sku_mapping, [{"id": "gid://shopify/ProductVariant/1", "sku": "A1", "price": "10.00"}])

        result = batch.results[0]
        assert result.status == TransformStatus.SUCCESS
        assert result.target_row == {"Sku": "A1", "PriceWithTax": 11.3}
        assert result.source_id == "gid://shopify/ProductVariant/1"
        assert batch.summary.total == 1
        assert batch.summary.successful == 1

    @pytest.mark.asyncio
    async def test_results_keep_input_order(self, engine, sku_mapping):
        records = [{"id": str(i), "sku": f"S{i}", "price": i} for i in range(5)]
        batch = await engine.transform_batch(sku_mapping, records)
        assert [r.source_id for r in batch.results] == ["0", "1", "2", "3", "4"]

    @pytest.mark.asyncio
    async def test_partial_and_error_status(self, engine):
        config = config_with(
            field_mapping("m1", "sku", "Sku"),
            field_mapping("m2", "qty", "Qty", CoerceTransform(target_type="int")),
        )
        batch = await engine.transform_batch(config, [{"sku": "A1", "qty": "lots"}, {"qty": "many"}])

        partial, failed = batch.results
        assert partial.status == TransformStatus.PARTIAL
        assert partial.target_row == {"Sku": "A1"}
        assert partial.errors[0].field == "Qty"

        # A null direct value still produces a column, so only the coerce fails
        assert failed.status == TransformStatus.PARTIAL
        assert failed.target_row == {"Sku": None}

        only_coerce = config_with(field_mapping("m2", "qty", "Qty", CoerceTransform(target_type="int")))
        batch = await engine.transform_batch(only_coerce, [{"qty": "many"}])
        assert batch.results[0].status == TransformStatus.ERROR
        assert batch.summary.failed == 1

    @pytest.mark.asyncio
    async def test_disabled_mappings_are_skipped(self, engine):
        config = config_with(
            field_mapping("m1", "sku", "Sku"),
            field_mapping("m2", "title", "Title", enabled=False),
        )
        batch = await engine.transform_batch(config, [{"sku": "A1", "title": "Shirt"}])
        assert batch.results[0].target_row == {"Sku": "A1"}

    @pytest.mark.asyncio
    async def test_multi_source_expression(self, engine):
        mapping = FieldMapping(
            id="m-name",
            source=MultiSource(fields=[
                SourceField(resource="Customer", field="firstName", alias="first"),
                SourceField(resource="Customer", field="lastName", alias="last"),
            ]),
            target=FieldTarget(table="dbo.Customer", column="FullName"),
            transform=ExpressionTransform(formula="first + ' ' + last"),
        )
        batch = await engine.transform_batch(config_with(mapping), [{"firstName": "Jane", "lastName": "Doe"}])
        assert batch.results[0].target_row == {"FullName": "Jane Doe"}

    @pytest.mark.asyncio
    async def test_template_and_default(self, engine):
        config = config_with(
            field_mapping("m1", "sku", "Code", TemplateTransform(template="SKU-{sku}-{product.handle}")),
            field_mapping("m2", "barcode", "Barcode", DefaultTransform(value="NONE")),
        )
        record = {"sku": "A1", "product": {"handle": "shirt"}, "barcode": None}
        batch = await engine.transform_batch(config, [record])
        assert batch.results[0].target_row == {"Code": "SKU-A1-shirt", "Barcode": "NONE"}

    @pytest.mark.asyncio
    async def test_invalid_expression_reported_per_record(self, engine):
        config = config_with(field_mapping("m1", "price", "Price", ExpressionTransform(formula="eval(price)")))
        batch = await engine.transform_batch(config, [{"price": 1}, {"price": 2}])
        assert all(r.status == TransformStatus.ERROR for r in batch.results)
        assert "Unknown function" in batch.results[1].errors[0].message

    @pytest.mark.asyncio
    async def test_lookup_loaded_once_per_batch(self, engine, connector):
        connector.query.side_effect = [
            [{"cnt": 2}],
            [
                {"match_value": "RED", "return_value": 1},
                {"match_value": "Blue", "return_value": 2},
            ],
        ]
        config = config_with(
            field_mapping("m1", "color", "ColorId", LookupTransform(table="dbo.Color", match_column="Name", return_column="Id")),
        )
        records = [{"color": "red"}, {"color": "BLUE"}, {"color": "green"}]

        batch = await engine.transform_batch(config, records)

        assert [r.target_row["ColorId"] for r in batch.results] == [1, 2, None]
        assert batch.results[2].warnings[0].message == "Lookup not found for value: green"
        assert connector.query.await_count == 2
        assert batch.lookup_stats.tables_loaded == 1
        assert batch.lookup_stats.total_rows == 2

    @pytest.mark.asyncio
    async def test_lookup_default_and_load_failure(self, engine, connector):
        connector.query.side_effect = Exception("relation does not exist")
        config = config_with(
            field_mapping(
                "m1", "color", "ColorId",
                LookupTransform(table="dbo.Color", match_column="Name", return_column="Id", default_value=0),
            ),
        )
        batch = await engine.transform_batch(config, [{"color": "red"}])

        assert batch.results[0].target_row == {"ColorId": 0}
        assert batch.results[0].warnings == []
        assert "Failed to load lookup table dbo.Color" in batch.lookup_stats.warnings[0]

    @pytest.mark.asyncio
    async def test_progress_callback(self, engine, sku_mapping):
        calls = []
        await engine.transform_batch(
            sku_mapping,
            [{"sku": "A"}, {"sku": "B"}],
            on_progress=lambda done, total: calls.append((done, total)),
        )
        assert calls == [(1, 2), (2, 2)]

    @pytest.mark.asyncio
    async def test_lookup_cache_cleared_when_setup_fails(self, connector):
        connector.query.side_effect = [
            [{"cnt": 1}],
            [{"match_value": "RED", "return_value": 1}],
        ]
        evaluator = Mock()
        evaluator.compile.side_effect = RuntimeError("parser crashed")
        engine = TransformEngine(connector, evaluator=evaluator)
        clear = Mock(wraps=engine.lookup_resolver.clear)
        engine.lookup_resolver.clear = clear
        config = config_with(
            field_mapping("m1", "color", "ColorId", LookupTransform(table="dbo.Color", match_column="Name", return_column="Id")),
            field_mapping("m2", "price", "Price", ExpressionTransform(formula="price * 2")),
        )

        with pytest.raises(RuntimeError, match="parser crashed"):
            await engine.transform_batch(config, [{"color": "red", "price": 1}])

        cache = clear.call_args.args[0]
        assert cache.stats.tables_loaded == 1
        assert cache.tables == {}
