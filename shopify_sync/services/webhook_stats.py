"""Webhook processing history and statistics."""

import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from shopify_sync.core.config import COLLECTIONS
from shopify_sync.core.database import Database
from shopify_sync.models import (
    WebhookDayStats,
    WebhookHistoryEntry,
    WebhookQueueStats,
    WebhookStats,
    WebhookStatus,
    WebhookTopicStats,
)

logger = logging.getLogger(__name__)

QueueStatsGetter = Callable[[], Awaitable[WebhookQueueStats]]


class WebhookStatsService:
    """Keeps a bounded log of processed webhooks.

    Stats are informational; failures here are logged and never propagate
    to webhook processing.
    """

    def __init__(self, db: Database, max_entries: int = 1000):
        self.db = db
        self.max_entries = max_entries
        self._queue_stats: Optional[QueueStatsGetter] = None

    @property
    def collection(self):
        return self.db.get_collection(COLLECTIONS["webhook_history"])

    def set_queue_stats_getter(self, getter: QueueStatsGetter):
        self._queue_stats = getter

    async def record_webhook(self, entry: WebhookHistoryEntry) -> None:
        try:
            doc = entry.model_dump(by_alias=True, exclude={"id"})
            doc["status"] = entry.status.value
            await self.collection.insert_one(doc)
            await self._prune()
        except Exception as e:
            logger.error(f"Error recording webhook {entry.webhook_id}: {e}")

    async def get_stats(self) -> WebhookStats:
        today = datetime.utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        since_today = {"received_at": {"$gte": today}}
        stats = WebhookStats()

        try:
            stats.today = WebhookDayStats(
                received=await self.collection.count_documents(since_today),
                processed=await self.collection.count_documents(
                    {**since_today, "status": WebhookStatus.COMPLETED.value}
                ),
                failed=await self.collection.count_documents({**since_today, "status": WebhookStatus.FAILED.value}),
                skipped=await self.collection.count_documents({**since_today, "status": WebhookStatus.SKIPPED.value}),
            )

            avg_pipeline = [
                {"$match": since_today},
                {"$group": {"_id": None, "avg_ms": {"$avg": "$processing_ms"}}},
            ]
            async for doc in self.collection.aggregate(avg_pipeline):
                stats.today.avg_processing_ms = round(doc.get("avg_ms") or 0)

            topic_pipeline = [
                {"$group": {"_id": {"topic": "$topic", "status": "$status"}, "count": {"$sum": 1}}},
            ]
            async for doc in self.collection.aggregate(topic_pipeline):
                topic = doc["_id"]["topic"]
                status = doc["_id"]["status"]
                topic_stats = stats.by_topic.setdefault(topic, WebhookTopicStats())
                topic_stats.received += doc["count"]
                if status == WebhookStatus.COMPLETED.value:
                    topic_stats.processed += doc["count"]
                elif status == WebhookStatus.FAILED.value:
                    topic_stats.failed += doc["count"]
        except Exception as e:
            logger.error(f"Error getting webhook stats: {e}")
            return WebhookStats()

        if self._queue_stats is not None:
            try:
                stats.queue = await self._queue_stats()
            except Exception as e:
                logger.warning(f"Queue stats unavailable: {e}")

        return stats

    async def get_history(self, limit: int = 100) -> List[WebhookHistoryEntry]:
        try:
            cursor = self.collection.find({}).sort("received_at", -1).limit(limit)
            return [WebhookHistoryEntry(**{**doc, "_id": str(doc["_id"])}) async for doc in cursor]
        except Exception as e:
            logger.error(f"Error getting webhook history: {e}")
            return []

    async def clear(self) -> None:
        try:
            await self.collection.delete_many({})
        except Exception as e:
            logger.error(f"Error clearing webhook history: {e}")

    async def _prune(self):
        count = await self.collection.count_documents({})
        excess = count - self.max_entries
        if excess <= 0:
            return
        cursor = self.collection.find({}, {"_id": 1}).sort("received_at", 1).limit(excess)
        ids = [doc["_id"] async for doc in cursor]
        if ids:
            await self.collection.delete_many({"_id": {"$in": ids}})
