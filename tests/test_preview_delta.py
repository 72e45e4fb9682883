"""Tests for mapping preview and delta reports."""

import pytest
from unittest.mock import AsyncMock, Mock

from shopify_sync.core.exceptions import MappingNotFoundError
from shopify_sync.models import FilterOperator, MappingFilter, TransformStatus
from shopify_sync.services.delta_service import DeltaService, normalize_key
from shopify_sync.services.mapping_validator import MappingValidator
from shopify_sync.services.preview_service import PreviewService
from shopify_sync.services.transform_engine import TransformEngine

SAMPLE = [
    {"id": "gid://shopify/ProductVariant/1", "sku": "A", "price": "10", "status": "ACTIVE"},
    {"id": "gid://shopify/ProductVariant/2", "sku": "B", "price": "abc", "status": "ACTIVE"},
    {"id": "gid://shopify/ProductVariant/3", "sku": "C", "price": "5", "status": "DRAFT"},
]


@pytest.fixture
def connector():
    connector = Mock()
    connector.dialect = "mssql"
    connector.query = AsyncMock(return_value=[])
    return connector


@pytest.fixture
def fetcher():
    fetcher = Mock()
    fetcher.fetch_sample = AsyncMock(return_value=[dict(r) for r in SAMPLE])
    fetcher.fetch_key_values = AsyncMock(return_value=([], False))
    return fetcher


@pytest.fixture
def mappings(sku_mapping):
    mappings = Mock()
    mappings.get_by_id = AsyncMock(return_value=sku_mapping)
    return mappings


class TestPreviewService:
    """Test previews of saved and unsaved mappings."""

    @pytest.mark.asyncio
    async def test_preview_saved_mapping(self, fetcher, connector, mappings, sku_mapping):
        sku_mapping.filters = [MappingFilter(field="status", operator=FilterOperator.EQ, value="ACTIVE")]
        service = PreviewService(fetcher, TransformEngine(connector), mappings)

        result = await service.preview("mapping-1", limit=3)

        assert result.fetched == 3
        assert result.filtered_out == 1
        assert [row.source_id for row in result.rows] == [
            "gid://shopify/ProductVariant/1",
            "gid://shopify/ProductVariant/2",
        ]
        assert result.rows[0].target_row == {"Sku": "A", "PriceWithTax": 11.3}
        assert result.rows[0].status == TransformStatus.SUCCESS
        assert result.summary.total == 2

        resource, fields, limit = fetcher.fetch_sample.await_args.args
        assert resource == "ProductVariant"
        assert fields == ["id", "sku", "price", "status"]
        assert limit == 3

    @pytest.mark.asyncio
    async def test_preview_unsaved_config(self, fetcher, connector, mappings, sku_mapping):
        service = PreviewService(fetcher, TransformEngine(connector), mappings)
        result = await service.preview(sku_mapping)
        assert result.fetched == 3
        mappings.get_by_id.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_preview_carries_schema_validation(self, fetcher, connector, mappings, sku_mapping, sku_schema):
        connector.introspect_schema = AsyncMock(return_value=sku_schema)
        sku_mapping.mappings[0].target.column = "Code"
        service = PreviewService(fetcher, TransformEngine(connector), mappings, validator=MappingValidator(connector))

        result = await service.preview(sku_mapping)

        # An invalid mapping still previews so the rows can be inspected
        assert result.fetched == 3
        assert result.validation.valid is False
        assert result.validation.errors[0].message == 'Target column "Code" not found in table "dbo.Sku"'

    @pytest.mark.asyncio
    async def test_preview_without_validator(self, fetcher, connector, mappings, sku_mapping):
        service = PreviewService(fetcher, TransformEngine(connector), mappings)
        result = await service.preview(sku_mapping)
        assert result.validation is None

    @pytest.mark.asyncio
    async def test_unknown_mapping(self, fetcher, connector, mappings):
        mappings.get_by_id.return_value = None
        service = PreviewService(fetcher, TransformEngine(connector), mappings)
        with pytest.raises(MappingNotFoundError):
            await service.preview("missing")


class TestDeltaService:
    """Test key comparison."""

    def test_normalize_key(self):
        assert normalize_key("gid://shopify/ProductVariant/42") == "42"
        assert normalize_key(42) == "42"
        assert normalize_key("SKU-1") == "SKU-1"

    @pytest.mark.asyncio
    async def test_missing_on_each_side(self, fetcher, connector, mappings):
        fetcher.fetch_key_values.return_value = (
            ["gid://shopify/ProductVariant/1", "gid://shopify/ProductVariant/2", "gid://shopify/ProductVariant/3"],
            False,
        )
        connector.query.return_value = [{"k": 1}, {"k": "2"}, {"k": 4}, {"k": None}]

        result = await DeltaService(fetcher, connector, mappings).calculate_delta("mapping-1")

        assert result.mapping_name == "Variants to Sku"
        assert result.shopify_count == 3
        assert result.database_count == 3
        assert result.missing_in_database == 1
        assert result.missing_in_shopify == 1
        assert result.in_sync == 2
        assert result.sample_missing_in_database == ["3"]
        assert result.sample_missing_in_shopify == ["4"]
        assert result.truncated is False
        assert connector.query.await_args.args[0] == "SELECT [ShopifyId] AS k FROM [dbo].[Sku]"

    @pytest.mark.asyncio
    async def test_truncation_and_samples(self, fetcher, connector, mappings):
        fetcher.fetch_key_values.return_value = ([str(i) for i in range(30)], True)

        result = await DeltaService(fetcher, connector, mappings, sample_size=5).calculate_delta("mapping-1")

        assert result.truncated is True
        assert result.missing_in_database == 30
        assert len(result.sample_missing_in_database) == 5

    @pytest.mark.asyncio
    async def test_mapping_without_key(self, fetcher, connector, mappings, sku_mapping):
        sku_mapping.key_mapping = None
        with pytest.raises(ValueError, match="no key mapping"):
            await DeltaService(fetcher, connector, mappings).calculate_delta("mapping-1")

    @pytest.mark.asyncio
    async def test_unknown_mapping(self, fetcher, connector, mappings):
        mappings.get_by_id.return_value = None
        with pytest.raises(MappingNotFoundError):
            await DeltaService(fetcher, connector, mappings).calculate_delta("missing")
