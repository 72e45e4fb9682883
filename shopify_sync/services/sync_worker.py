"""Runs scheduled sync jobs one at a time."""

import asyncio
import logging
from typing import Optional

from shopify_sync.core.exceptions import SyncAlreadyRunningError
from shopify_sync.models import ScheduleJob, ScheduleType, SyncResult

logger = logging.getLogger(__name__)


class SyncWorker:
    """Consumes the scheduler's job queue and dispatches syncs serially."""

    def __init__(self, scheduler, sync_engine):
        self.scheduler = scheduler
        self.sync_engine = sync_engine
        self._task: Optional[asyncio.Task] = None
        self._shutdown = False

    async def start(self):
        if self._task is not None:
            return
        self._shutdown = False
        self._task = asyncio.create_task(self._process_jobs())
        logger.info("Sync worker started")

    async def stop(self):
        self._shutdown = True
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Sync worker stopped")

    def is_available(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _process_jobs(self):
        queue = self.scheduler.jobs
        while not self._shutdown:
            try:
                job = await asyncio.wait_for(queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            try:
                await self.process_job(job)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Sync worker error for job {job.name}: {e}")
            finally:
                queue.task_done()

    async def process_job(self, job: ScheduleJob) -> Optional[SyncResult]:
        """Run one job; returns None when it was skipped."""
        if self.sync_engine.is_running(job.mapping_id):
            logger.info(f"Skipping {job.name}: sync already running for mapping {job.mapping_id}")
            return None

        logger.info(f"Processing {job.scheduled_by.value} {job.type.value} sync for mapping {job.mapping_id}")
        try:
            if job.type == ScheduleType.FULL:
                result = await self.sync_engine.full_sync(
                    job.mapping_id,
                    dry_run=False,
                    delete_stale=job.delete_stale,
                    triggered_by=job.scheduled_by.value,
                )
            else:
                result = await self.sync_engine.incremental_sync(
                    job.mapping_id,
                    dry_run=False,
                    lookback_minutes=job.lookback_minutes,
                    triggered_by=job.scheduled_by.value,
                )
        except SyncAlreadyRunningError:
            logger.info(f"Skipping {job.name}: sync started concurrently for mapping {job.mapping_id}")
            return None
        except Exception as e:
            logger.error(f"Scheduled sync failed for mapping {job.mapping_id}: {e}")
            await self.scheduler.record_failure(job.mapping_id)
            raise

        if result.success:
            await self.scheduler.reset_failures(job.mapping_id)
            logger.info(
                f"Scheduled sync completed for mapping {job.mapping_id}: "
                f"{result.stats.inserted} inserted, {result.stats.updated} updated"
            )
        else:
            await self.scheduler.record_failure(job.mapping_id)
            logger.warning(
                f"Scheduled sync {result.status.value} for mapping {job.mapping_id}: "
                f"{result.errors[0] if result.errors else 'no details'}"
            )
        return result
