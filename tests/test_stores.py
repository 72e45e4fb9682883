"""Tests for the Mongo backed mapping store and sync history."""

from datetime import datetime, timedelta

import pytest

from shopify_sync.models import (
    SyncHistoryEntry,
    SyncStats,
    SyncStatus,
    SyncType,
)
from shopify_sync.services.mapping_service import MappingService
from shopify_sync.services.sync_history import INTERRUPTED_MESSAGE, SyncHistoryService


def entry(entry_id, mapping_id="mapping-1", status=SyncStatus.COMPLETED, minutes_ago=0):
    return SyncHistoryEntry(
        id=entry_id,
        mapping_id=mapping_id,
        type=SyncType.FULL,
        status=status,
        started_at=datetime.utcnow() - timedelta(minutes=minutes_ago),
    )


class TestSyncHistoryService:
    """Test run history persistence."""

    @pytest.mark.asyncio
    async def test_create_and_update(self, fake_db):
        history = SyncHistoryService(fake_db, max_errors=2)
        await history.create(entry("run-1", status=SyncStatus.RUNNING))

        updated = await history.update(
            "run-1",
            status=SyncStatus.FAILED,
            stats=SyncStats(fetched=5, failed=5),
            errors=["a", "b", "c"],
        )

        assert updated is True
        stored = await history.get("run-1")
        assert stored.status == SyncStatus.FAILED
        assert stored.stats.fetched == 5
        assert stored.errors == ["a", "b"]
        assert await history.update("run-1") is False
        assert await history.update("missing", status=SyncStatus.FAILED) is False

    @pytest.mark.asyncio
    async def test_recent_newest_first(self, fake_db):
        history = SyncHistoryService(fake_db)
        await history.create(entry("old", minutes_ago=30))
        await history.create(entry("new", minutes_ago=1))
        await history.create(entry("other", mapping_id="mapping-2", minutes_ago=10))

        recent = await history.get_recent(limit=2)
        assert [e.id for e in recent.entries] == ["new", "other"]
        assert recent.total == 3
        assert recent.has_more is True

        for_mapping = await history.get_recent(mapping_id="mapping-1")
        assert [e.id for e in for_mapping.entries] == ["new", "old"]
        assert (await history.get_last_for_mapping("mapping-2")).id == "other"

    @pytest.mark.asyncio
    async def test_prunes_oldest_entries(self, fake_db):
        history = SyncHistoryService(fake_db, max_entries=2)
        for i, minutes in enumerate((30, 20, 10)):
            await history.create(entry(f"run-{i}", minutes_ago=minutes))

        remaining = await history.get_recent()
        assert [e.id for e in remaining.entries] == ["run-2", "run-1"]

    @pytest.mark.asyncio
    async def test_recover_stale_syncs(self, fake_db):
        history = SyncHistoryService(fake_db)
        await history.create(entry("run-1", status=SyncStatus.RUNNING))
        await history.create(entry("run-2"))

        assert await history.recover_stale_syncs() == 1
        recovered = await history.get("run-1")
        assert recovered.status == SyncStatus.FAILED
        assert recovered.errors == [INTERRUPTED_MESSAGE]
        assert await history.has_running_sync("mapping-1") is None

    @pytest.mark.asyncio
    async def test_stats(self, fake_db):
        history = SyncHistoryService(fake_db)
        await history.create(entry("a", minutes_ago=5))
        await history.create(entry("b", status=SyncStatus.FAILED, minutes_ago=1))
        await history.create(entry("c", mapping_id="mapping-2", minutes_ago=60 * 48))

        stats = await history.get_stats()

        assert stats["total_syncs"] == 3
        assert stats["last_24_hours"] == {"total": 2, "successful": 1, "failed": 1}
        first = stats["by_mapping"][0]
        assert first["mapping_id"] == "mapping-1"
        assert first["total"] == 2
        assert first["last_status"] == "failed"


class TestMappingService:
    """Test mapping CRUD."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, fake_db, sku_mapping):
        service = MappingService(fake_db)
        await service.save(sku_mapping)

        loaded = await service.get_by_id("mapping-1")
        assert loaded.name == "Variants to Sku"
        assert loaded.key_mapping.target_column == "ShopifyId"
        assert loaded.mappings[1].transform.formula == "round(price * 1.13, 2)"
        assert await service.get_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_save_replaces(self, fake_db, sku_mapping):
        service = MappingService(fake_db)
        await service.save(sku_mapping)
        sku_mapping.name = "Renamed"
        await service.save(sku_mapping)

        assert [m.name for m in await service.get_all()] == ["Renamed"]

    @pytest.mark.asyncio
    async def test_by_source_resource(self, fake_db, sku_mapping):
        service = MappingService(fake_db)
        await service.save(sku_mapping)
        disabled = sku_mapping.model_copy(update={"id": "mapping-2", "name": "Disabled", "webhook_enabled": False})
        await service.save(disabled)

        assert len(await service.get_by_source_resource("ProductVariant")) == 2
        enabled = await service.get_by_source_resource("ProductVariant", webhook_enabled_only=True)
        assert [m.id for m in enabled] == ["mapping-1"]
        assert await service.get_by_source_resource("Order") == []

    @pytest.mark.asyncio
    async def test_invalid_documents_are_skipped(self, fake_db, sku_mapping):
        service = MappingService(fake_db)
        await service.save(sku_mapping)
        await fake_db.get_collection("mappings").insert_one({"_id": "broken", "name": "Broken"})

        assert [m.id for m in await service.get_all()] == ["mapping-1"]

    @pytest.mark.asyncio
    async def test_delete(self, fake_db, sku_mapping):
        service = MappingService(fake_db)
        await service.save(sku_mapping)
        assert await service.delete("mapping-1") is True
        assert await service.delete("mapping-1") is False
