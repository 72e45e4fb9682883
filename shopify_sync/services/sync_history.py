"""Sync run history stored in MongoDB."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from shopify_sync.core.config import COLLECTIONS
from shopify_sync.core.database import Database
from shopify_sync.models import (
    SyncDuration,
    SyncHistoryEntry,
    SyncHistoryList,
    SyncStats,
    SyncStatus,
)

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Sync interrupted (server restart or crash)"


class SyncHistoryService:
    """Stores one document per sync run and keeps the collection bounded."""

    def __init__(self, db: Database, max_entries: int = 1000, max_errors: int = 50):
        self.db = db
        self.max_entries = max_entries
        self.max_errors = max_errors

    @property
    def collection(self):
        return self.db.get_collection(COLLECTIONS["sync_runs"])

    def _to_document(self, entry: SyncHistoryEntry) -> Dict[str, Any]:
        doc = entry.model_dump(by_alias=True)
        doc["type"] = entry.type.value
        doc["status"] = entry.status.value
        doc["errors"] = entry.errors[: self.max_errors]
        return doc

    async def create(self, entry: SyncHistoryEntry) -> str:
        """Insert a run entry and prune the oldest ones past ``max_entries``."""
        await self.collection.insert_one(self._to_document(entry))
        await self._prune()
        return entry.id

    async def update(
        self,
        entry_id: str,
        status: Optional[SyncStatus] = None,
        completed_at: Optional[datetime] = None,
        stats: Optional[SyncStats] = None,
        duration: Optional[SyncDuration] = None,
        errors: Optional[List[str]] = None,
        mapping_name: Optional[str] = None,
    ) -> bool:
        update: Dict[str, Any] = {}
        if status is not None:
            update["status"] = status.value
        if completed_at is not None:
            update["completed_at"] = completed_at
        if stats is not None:
            update["stats"] = stats.model_dump()
        if duration is not None:
            update["duration"] = duration.model_dump()
        if errors is not None:
            update["errors"] = errors[: self.max_errors]
        if mapping_name is not None:
            update["mapping_name"] = mapping_name
        if not update:
            return False

        try:
            result = await self.collection.update_one({"_id": entry_id}, {"$set": update})
            return result.matched_count > 0
        except Exception as e:
            logger.error(f"Failed to update sync history {entry_id}: {e}")
            return False

    async def get(self, entry_id: str) -> Optional[SyncHistoryEntry]:
        doc = await self.collection.find_one({"_id": entry_id})
        return SyncHistoryEntry(**doc) if doc else None

    async def _find(self, filters: Dict[str, Any], limit: int) -> List[SyncHistoryEntry]:
        cursor = self.collection.find(filters).sort("started_at", -1).limit(limit)
        return [SyncHistoryEntry(**doc) async for doc in cursor]

    async def get_recent(self, limit: int = 50, mapping_id: Optional[str] = None) -> SyncHistoryList:
        filters = {"mapping_id": mapping_id} if mapping_id else {}
        entries = await self._find(filters, limit)
        total = await self.collection.count_documents(filters)
        return SyncHistoryList(entries=entries, total=total, has_more=total > limit)

    async def get_by_status(self, status: SyncStatus, limit: int = 50) -> List[SyncHistoryEntry]:
        return await self._find({"status": status.value}, limit)

    async def get_last_for_mapping(self, mapping_id: str) -> Optional[SyncHistoryEntry]:
        entries = await self._find({"mapping_id": mapping_id}, 1)
        return entries[0] if entries else None

    async def has_running_sync(self, mapping_id: str) -> Optional[SyncHistoryEntry]:
        doc = await self.collection.find_one({"mapping_id": mapping_id, "status": SyncStatus.RUNNING.value})
        return SyncHistoryEntry(**doc) if doc else None

    async def recover_stale_syncs(self) -> int:
        """Mark runs left ``running`` by a previous process as failed."""
        result = await self.collection.update_many(
            {"status": SyncStatus.RUNNING.value},
            {
                "$set": {
                    "status": SyncStatus.FAILED.value,
                    "completed_at": datetime.utcnow(),
                    "errors": [INTERRUPTED_MESSAGE],
                }
            },
        )
        if result.modified_count:
            logger.warning(f"Recovered {result.modified_count} interrupted sync runs")
        return result.modified_count

    async def get_stats(self) -> Dict[str, Any]:
        since = datetime.utcnow() - timedelta(hours=24)
        recent = {"started_at": {"$gte": since}}

        total = await self.collection.count_documents({})
        last_total = await self.collection.count_documents(recent)
        last_success = await self.collection.count_documents({**recent, "status": SyncStatus.COMPLETED.value})
        last_failed = await self.collection.count_documents({**recent, "status": SyncStatus.FAILED.value})

        pipeline = [
            {"$sort": {"started_at": -1}},
            {
                "$group": {
                    "_id": "$mapping_id",
                    "total": {"$sum": 1},
                    "last_status": {"$first": "$status"},
                    "last_run": {"$first": "$started_at"},
                }
            },
            {"$sort": {"total": -1}},
        ]
        by_mapping = []
        async for doc in self.collection.aggregate(pipeline):
            if doc["_id"] is None:
                continue
            by_mapping.append(
                {
                    "mapping_id": doc["_id"],
                    "total": doc["total"],
                    "last_status": doc.get("last_status") or "unknown",
                    "last_run": doc.get("last_run"),
                }
            )

        return {
            "total_syncs": total,
            "last_24_hours": {"total": last_total, "successful": last_success, "failed": last_failed},
            "by_mapping": by_mapping,
        }

    async def _prune(self):
        count = await self.collection.count_documents({})
        excess = count - self.max_entries
        if excess <= 0:
            return
        cursor = self.collection.find({}, {"_id": 1}).sort("started_at", 1).limit(excess)
        ids = [doc["_id"] async for doc in cursor]
        if ids:
            await self.collection.delete_many({"_id": {"$in": ids}})
            logger.debug(f"Pruned {len(ids)} old sync history entries")
