"""Durable webhook work queue with a worker pool, rate limiting and retries."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from shopify_sync.core.config import COLLECTIONS
from shopify_sync.core.database import Database
from shopify_sync.models import (
    WebhookHistoryEntry,
    WebhookJob,
    WebhookProcessResult,
    WebhookQueueStats,
    WebhookStatus,
)
from shopify_sync.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

SEEN_KEY_PREFIX = "webhook:seen"
RATE_LIMIT_KEY = "jobs"

# Jobs in these states were accepted but not finished
UNFINISHED_STATUSES = [
    WebhookStatus.PENDING.value,
    WebhookStatus.PROCESSING.value,
    WebhookStatus.RETRYING.value,
]
JOB_FIELDS = ("topic", "shop_domain", "payload", "received_at", "attempts")


class WebhookQueueService:
    """Queues verified webhooks and processes them in the background.

    Every accepted job is written to the ``webhook_jobs`` collection before
    the receiver acknowledges it, and unfinished jobs are loaded back into
    the in-process queue on ``start()``. Jobs are deduplicated on the
    Shopify webhook id through Redis, pass a shared sliding-window rate
    limit and are retried with exponential backoff. Jobs that exhaust their
    attempts stay in the collection with status ``failed`` (dead letters);
    completed jobs are removed, their outcome lives in the webhook history.
    """

    def __init__(
        self,
        redis_client,
        db: Database,
        processor,
        stats,
        concurrency: int = 5,
        rate_limit: int = 10,
        rate_window: float = 1.0,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        dedupe_ttl: int = 86400,
    ):
        self.redis_client = redis_client
        self.db = db
        self.processor = processor
        self.stats = stats
        self.concurrency = concurrency
        self.rate_limit = rate_limit
        self.rate_window = rate_window
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.dedupe_ttl = dedupe_ttl

        self.queue: asyncio.Queue = asyncio.Queue()
        self.rate_limiter = RateLimiter(redis_client, prefix="webhook_queue")

        self._workers: List[asyncio.Task] = []
        self._retry_tasks: Set[asyncio.Task] = set()
        self._active = 0
        self._shutdown = False

    @property
    def collection(self):
        return self.db.get_collection(COLLECTIONS["webhook_jobs"])

    async def is_duplicate(self, webhook_id: str) -> bool:
        """Mark a webhook id as seen; True when it had been seen before."""
        try:
            created = await self.redis_client.set(
                f"{SEEN_KEY_PREFIX}:{webhook_id}", "1", ex=self.dedupe_ttl, nx=True
            )
        except Exception as e:
            logger.warning(f"Idempotency check unavailable for webhook {webhook_id}: {e}")
            return False
        return not created

    async def forget(self, webhook_id: str):
        """Drop the seen marker so a redelivery of this id is accepted."""
        try:
            await self.redis_client.delete(f"{SEEN_KEY_PREFIX}:{webhook_id}")
        except Exception as e:
            logger.warning(f"Could not clear seen marker for webhook {webhook_id}: {e}")

    async def receive(self, job: WebhookJob) -> bool:
        """Deduplicate, persist and enqueue; returns False for duplicates.

        Raises when the job cannot be persisted so the sender gets an error
        and redelivers.
        """
        if await self.is_duplicate(job.id):
            logger.info(f"Duplicate webhook {job.id} ({job.topic}) dropped")
            return False

        try:
            await self._save_job(job, WebhookStatus.PENDING)
        except Exception as e:
            logger.error(f"Failed to persist webhook {job.id}: {e}")
            await self.forget(job.id)
            raise

        await self.enqueue(job)
        return True

    async def enqueue(self, job: WebhookJob):
        await self.queue.put(job)
        logger.debug(f"Queued webhook {job.id} ({job.topic})")

    async def restore_pending(self) -> int:
        """Load jobs accepted before a restart back into the queue."""
        cursor = self.collection.find({"status": {"$in": UNFINISHED_STATUSES}}).sort("received_at", 1)
        restored = 0
        async for doc in cursor:
            await self.queue.put(self._job_from_document(doc))
            restored += 1
        if restored:
            logger.info(f"Restored {restored} unfinished webhooks")
        return restored

    async def start(self):
        if self._workers:
            return
        self._shutdown = False
        await self.restore_pending()
        for i in range(self.concurrency):
            self._workers.append(asyncio.create_task(self._process_jobs(f"worker_{i}")))
        logger.info(f"Webhook queue started with {self.concurrency} workers")

    async def stop(self):
        logger.info("Stopping webhook queue...")
        self._shutdown = True

        tasks = self._workers + list(self._retry_tasks)
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        if not self.queue.empty():
            logger.info(f"{self.queue.qsize()} webhooks still queued at shutdown, they resume on next start")
        self._workers = []
        self._retry_tasks.clear()

    def is_available(self) -> bool:
        return bool(self._workers) and not self._shutdown

    async def get_queue_stats(self) -> WebhookQueueStats:
        return WebhookQueueStats(
            waiting=self.queue.qsize(),
            active=self._active,
            delayed=len(self._retry_tasks),
            failed=await self.collection.count_documents({"status": WebhookStatus.FAILED.value}),
        )

    async def get_dead_letters(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Jobs that exhausted their attempts, newest first."""
        cursor = self.collection.find({"status": WebhookStatus.FAILED.value}).sort("updated_at", -1).limit(limit)
        return [
            {
                "webhook_id": doc["_id"],
                "topic": doc.get("topic"),
                "shop_domain": doc.get("shop_domain"),
                "attempts": doc.get("attempts", 0),
                "error": doc.get("error"),
                "received_at": doc.get("received_at"),
                "failed_at": doc.get("updated_at"),
            }
            async for doc in cursor
        ]

    async def retry_dead_letter(self, webhook_id: str) -> bool:
        """Put a dead-lettered job back on the queue with a fresh attempt budget."""
        doc = await self.collection.find_one({"_id": webhook_id, "status": WebhookStatus.FAILED.value})
        if doc is None:
            return False
        job = self._job_from_document(doc)
        job.attempts = 0
        await self._save_job(job, WebhookStatus.PENDING)
        await self.enqueue(job)
        logger.info(f"Dead-lettered webhook {webhook_id} requeued")
        return True

    async def _process_jobs(self, worker_name: str):
        logger.info(f"Webhook worker {worker_name} started")

        while not self._shutdown:
            try:
                job = await asyncio.wait_for(self.queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            try:
                await self._throttle()
                await self.process_job(job)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Worker {worker_name} error: {e}")
                await asyncio.sleep(1)
            finally:
                self.queue.task_done()

        logger.info(f"Webhook worker {worker_name} stopped")

    async def _throttle(self):
        try:
            await self.rate_limiter.acquire(RATE_LIMIT_KEY, self.rate_limit, self.rate_window)
        except Exception as e:
            logger.warning(f"Webhook rate limiter unavailable: {e}")

    async def process_job(self, job: WebhookJob) -> Optional[WebhookProcessResult]:
        """Process one job, scheduling a retry or dead-lettering it on failure."""
        job.attempts += 1
        await self._update_job_status(job.id, WebhookStatus.PROCESSING, attempts=job.attempts)
        self._active += 1
        start = time.perf_counter()
        result: Optional[WebhookProcessResult] = None
        error: Optional[str] = None

        try:
            result = await self.processor.process(job)
            if not result.success:
                error = "; ".join(result.errors) or "Webhook processing failed"
        except Exception as e:
            logger.error(f"Failed to process webhook {job.id}: {e}")
            error = str(e)
        finally:
            self._active -= 1

        processing_ms = int((time.perf_counter() - start) * 1000)

        if error is not None and job.attempts < self.max_attempts:
            delay = self.retry_base_delay * (2 ** (job.attempts - 1))
            logger.warning(f"Webhook {job.id} attempt {job.attempts} failed, retrying in {delay:g}s: {error}")
            await self._update_job_status(job.id, WebhookStatus.RETRYING, attempts=job.attempts, error=error)
            task = asyncio.create_task(self._retry_later(job, delay))
            self._retry_tasks.add(task)
            task.add_done_callback(self._retry_tasks.discard)
            return result

        if error is not None:
            logger.error(f"Webhook {job.id} failed after {job.attempts} attempts, moved to dead letter queue")
            await self._update_job_status(job.id, WebhookStatus.FAILED, attempts=job.attempts, error=error)
            status = WebhookStatus.FAILED
        else:
            await self._delete_job(job.id)
            if result is not None and not result.mappings_processed:
                status = WebhookStatus.SKIPPED
            else:
                status = WebhookStatus.COMPLETED

        await self.stats.record_webhook(
            WebhookHistoryEntry(
                webhook_id=job.id,
                topic=job.topic,
                shop_domain=job.shop_domain,
                received_at=job.received_at,
                processed_at=datetime.utcnow(),
                status=status,
                mappings_processed=result.mappings_processed if result else [],
                records_written=result.records_written if result else 0,
                processing_ms=processing_ms,
                attempts=job.attempts,
                error=error,
            )
        )
        return result

    async def _retry_later(self, job: WebhookJob, delay: float):
        await asyncio.sleep(delay)
        await self.queue.put(job)

    async def _save_job(self, job: WebhookJob, status: WebhookStatus):
        doc = job.model_dump(include=set(JOB_FIELDS))
        doc.update({
            "_id": job.id,
            "status": status.value,
            "error": None,
            "updated_at": datetime.utcnow(),
        })
        await self.collection.replace_one({"_id": job.id}, doc, upsert=True)

    async def _update_job_status(self, job_id: str, status: WebhookStatus, **kwargs):
        update_data = {"status": status.value, "updated_at": datetime.utcnow()}
        update_data.update(kwargs)
        try:
            await self.collection.update_one({"_id": job_id}, {"$set": update_data})
        except Exception as e:
            logger.error(f"Failed to mark webhook {job_id} as {status.value}: {e}")

    async def _delete_job(self, job_id: str):
        try:
            await self.collection.delete_one({"_id": job_id})
        except Exception as e:
            logger.error(f"Failed to remove finished webhook {job_id}: {e}")

    @staticmethod
    def _job_from_document(doc: Dict[str, Any]) -> WebhookJob:
        return WebhookJob(id=doc["_id"], **{k: doc[k] for k in JOB_FIELDS if k in doc})
