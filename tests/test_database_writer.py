"""Tests for the relational writer."""

import pytest
from unittest.mock import AsyncMock, Mock

from shopify_sync.core.exceptions import DatabaseWriteError
from shopify_sync.services.database_writer import DatabaseWriter


def make_connector(dialect="postgresql", existing=None):
    connector = Mock()
    connector.dialect = dialect
    connector.query = AsyncMock(return_value=[{"k": k} for k in (existing or [])])
    connector.execute = AsyncMock(return_value=1)
    return connector


ROWS = [
    {"ShopifyId": "1", "Sku": "A"},
    {"ShopifyId": "2", "Sku": "B"},
]


class TestUpsert:
    """Test upsert statements and result counts."""

    @pytest.mark.asyncio
    async def test_counts_from_existing_keys(self):
        connector = make_connector(existing=["1"])
        result = await DatabaseWriter(connector).upsert("dbo.Sku", "ShopifyId", ROWS)

        assert result.inserted == 1
        assert result.updated == 1
        assert result.errors == []

        sql, params = connector.execute.await_args.args
        assert sql.startswith('INSERT INTO "dbo"."Sku" ("ShopifyId", "Sku") VALUES')
        assert 'ON CONFLICT ("ShopifyId") DO UPDATE SET "Sku" = excluded."Sku"' in sql
        assert params == {"r0_c0": "1", "r0_c1": "A", "r1_c0": "2", "r1_c1": "B"}

    @pytest.mark.asyncio
    async def test_skip_mode(self):
        connector = make_connector(existing=["1"])
        result = await DatabaseWriter(connector).upsert("dbo.Sku", "ShopifyId", ROWS, on_conflict="skip")

        assert (result.inserted, result.updated, result.skipped) == (1, 0, 1)
        assert "DO NOTHING" in connector.execute.await_args.args[0]

    @pytest.mark.asyncio
    async def test_mysql_statement(self):
        connector = make_connector("mysql")
        await DatabaseWriter(connector).upsert("Sku", "ShopifyId", ROWS)
        sql = connector.execute.await_args.args[0]
        assert sql.startswith("INSERT INTO `Sku` (`ShopifyId`, `Sku`)")
        assert "ON DUPLICATE KEY UPDATE `Sku` = VALUES(`Sku`)" in sql

    @pytest.mark.asyncio
    async def test_mssql_merge(self):
        connector = make_connector("mssql")
        await DatabaseWriter(connector).upsert("dbo.Sku", "ShopifyId", ROWS)
        sql = connector.execute.await_args.args[0]
        assert sql.startswith("MERGE INTO [dbo].[Sku] AS target")
        assert "ON target.[ShopifyId] = source.[ShopifyId]" in sql
        assert "WHEN MATCHED THEN UPDATE SET target.[Sku] = source.[Sku]" in sql
        assert sql.endswith("VALUES (source.[ShopifyId], source.[Sku]);")

    @pytest.mark.asyncio
    async def test_duplicate_keys_last_wins(self):
        connector = make_connector()
        rows = [{"ShopifyId": "1", "Sku": "old"}, {"ShopifyId": "1", "Sku": "new"}]
        result = await DatabaseWriter(connector).upsert("Sku", "ShopifyId", rows)

        assert result.inserted == 1
        assert result.skipped == 1
        assert connector.execute.await_args.args[1]["r0_c1"] == "new"

    @pytest.mark.asyncio
    async def test_missing_key_is_a_row_error(self):
        connector = make_connector()
        rows = [{"ShopifyId": None, "Sku": "A"}, {"ShopifyId": "2", "Sku": "B"}]
        result = await DatabaseWriter(connector).upsert("Sku", "ShopifyId", rows)

        assert result.inserted == 1
        assert result.errors == [{"row": 0, "error": "Missing value for key column 'ShopifyId'"}]

    @pytest.mark.asyncio
    async def test_key_column_must_be_present(self):
        with pytest.raises(DatabaseWriteError, match="not found in row data"):
            await DatabaseWriter(make_connector()).upsert("Sku", "ShopifyId", [{"Sku": "A"}])

    @pytest.mark.asyncio
    async def test_chunk_failure_reports_rows(self):
        connector = make_connector()
        connector.execute.side_effect = [1, Exception("deadlock")]
        rows = [{"ShopifyId": str(i), "Sku": f"S{i}"} for i in range(4)]

        result = await DatabaseWriter(connector, chunk_size=2).upsert("Sku", "ShopifyId", rows)

        assert result.inserted == 2
        assert [e["row"] for e in result.errors] == [2, 3]

    @pytest.mark.asyncio
    async def test_json_values_are_serialized(self):
        connector = make_connector()
        await DatabaseWriter(connector).upsert("Sku", "ShopifyId", [{"ShopifyId": "1", "Tags": ["a", "b"]}])
        assert connector.execute.await_args.args[1]["r0_c1"] == '["a", "b"]'

    @pytest.mark.asyncio
    async def test_empty_rows(self):
        connector = make_connector()
        result = await DatabaseWriter(connector).upsert("Sku", "ShopifyId", [])
        assert result.inserted == 0
        connector.execute.assert_not_awaited()


class TestMaintenance:
    """Test key based deletes and updates."""

    @pytest.mark.asyncio
    async def test_delete_stale(self):
        connector = make_connector(existing=["1", "2", "3"])
        connector.execute.return_value = 2

        deleted = await DatabaseWriter(connector).delete_stale("Sku", "ShopifyId", {"1", 4})

        assert deleted == 2
        sql, params = connector.execute.await_args.args
        assert sql == 'DELETE FROM "Sku" WHERE "ShopifyId" IN (:k0, :k1)'
        assert params == {"k0": "2", "k1": "3"}

    @pytest.mark.asyncio
    async def test_delete_stale_never_runs_with_empty_keys(self):
        connector = make_connector(existing=["1"])
        assert await DatabaseWriter(connector).delete_stale("Sku", "ShopifyId", set()) == 0
        connector.query.assert_not_awaited()
        connector.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delete_and_update_by_key(self):
        connector = make_connector()
        writer = DatabaseWriter(connector)

        assert await writer.delete_by_key("Sku", "ShopifyId", "1") is True
        assert connector.execute.await_args.args == ('DELETE FROM "Sku" WHERE "ShopifyId" = :key', {"key": "1"})

        connector.execute.return_value = 0
        assert await writer.update_by_key("Sku", "ShopifyId", "1", {"Sku": "B"}) is False
        assert await writer.update_by_key("Sku", "ShopifyId", "1", {}) is False

    @pytest.mark.asyncio
    async def test_batch_insert(self):
        connector = make_connector()
        result = await DatabaseWriter(connector).batch_insert("Log", [{"a": 1}, {"a": 2, "b": 3}])
        assert result.inserted == 2
        sql, params = connector.execute.await_args.args
        assert sql == 'INSERT INTO "Log" ("a", "b") VALUES (:r0_c0, :r0_c1), (:r1_c0, :r1_c1)'
        assert params["r0_c1"] is None
