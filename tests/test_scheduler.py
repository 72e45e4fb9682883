"""Tests for cron scheduling and the sync worker."""

import logging
from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock, Mock

from shopify_sync.core.exceptions import ScheduleValidationError, SyncAlreadyRunningError
from shopify_sync.models import (
    ScheduleConfig,
    ScheduleDefinition,
    ScheduleJob,
    ScheduleOptions,
    ScheduleTrigger,
    ScheduleType,
    SyncResult,
    SyncStatus,
    SyncType,
)
from shopify_sync.services.scheduler_service import (
    DEFINITIONS_KEY,
    SchedulerService,
    get_next_runs,
    normalize_day_of_week,
    pattern_to_human,
)
from shopify_sync.services.sync_worker import SyncWorker


def incremental(pattern="*/15 * * * *", **kwargs):
    return ScheduleConfig(type=ScheduleType.INCREMENTAL, pattern=pattern, **kwargs)


@pytest.fixture
def apscheduler():
    scheduler = MagicMock()
    scheduler.running = False
    return scheduler


@pytest.fixture
def service(fake_redis, apscheduler):
    return SchedulerService(fake_redis, scheduler=apscheduler)


class TestCronHelpers:
    """Test pattern parsing helpers."""

    def test_next_runs(self):
        now = datetime(2024, 1, 1, 0, 2, tzinfo=timezone.utc)
        runs = get_next_runs("*/15 * * * *", count=3, now=now)
        assert runs == [
            datetime(2024, 1, 1, 0, 15, tzinfo=timezone.utc),
            datetime(2024, 1, 1, 0, 30, tzinfo=timezone.utc),
            datetime(2024, 1, 1, 0, 45, tzinfo=timezone.utc),
        ]

    def test_next_runs_in_timezone(self):
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        runs = get_next_runs("0 3 * * *", tz="America/Toronto", count=1, now=now)
        assert runs == [datetime(2024, 1, 2, 8, 0, tzinfo=timezone.utc)]

    def test_invalid_pattern_has_no_runs(self):
        assert get_next_runs("not a cron") == []
        assert get_next_runs("61 * * * *") == []

    def test_numeric_weekdays(self):
        assert normalize_day_of_week("1-5") == "mon-fri"
        assert normalize_day_of_week("0,6") == "sun,sat"
        assert normalize_day_of_week("7") == "sun"
        assert normalize_day_of_week("*/2") == "*/2"

    def test_weekly_pattern_uses_cron_weekdays(self):
        # 2024-01-01 is a Monday
        now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        assert get_next_runs("0 2 * * 0", count=1, now=now) == [datetime(2024, 1, 7, 2, 0, tzinfo=timezone.utc)]

    def test_pattern_to_human(self):
        assert pattern_to_human("*/15 * * * *") == "Every 15 minutes"
        assert pattern_to_human("*/20 * * * *") == "Every 20 minutes"
        assert pattern_to_human("0 */3 * * *") == "Every 3 hours"
        assert pattern_to_human("30 * * * *") == "Every hour at :30"
        assert pattern_to_human("5 14 * * *") == "Daily at 14:05"
        assert pattern_to_human("0 0 * * 1") == "0 0 * * 1"


class TestValidation:
    """Test minimum interval enforcement."""

    def test_incremental_minimum(self, service):
        with pytest.raises(ScheduleValidationError) as exc:
            service.validate_pattern(ScheduleType.INCREMENTAL, "*/2 * * * *")
        assert str(exc.value) == (
            "Incremental sync cannot run more often than every 5 minutes. Pattern interval: 2 minutes"
        )
        service.validate_pattern(ScheduleType.INCREMENTAL, "*/5 * * * *")

    def test_full_minimum(self, service):
        with pytest.raises(ScheduleValidationError) as exc:
            service.validate_pattern(ScheduleType.FULL, "0 * * * *")
        assert str(exc.value) == "Full sync cannot run more often than every 6 hours. Pattern interval: 60 minutes"
        service.validate_pattern(ScheduleType.FULL, "0 */6 * * *")

    def test_malformed(self, service):
        with pytest.raises(ScheduleValidationError, match="expected 5 fields, got 3"):
            service.validate_pattern(ScheduleType.INCREMENTAL, "* * *")
        with pytest.raises(ScheduleValidationError, match="Invalid timezone"):
            service.validate_pattern(ScheduleType.INCREMENTAL, "*/15 * * * *", "Mars/Base")


class TestSchedulerService:
    """Test schedule registration and persistence."""

    @pytest.mark.asyncio
    async def test_upsert_registers_and_persists(self, service, apscheduler, fake_redis):
        info = await service.upsert_schedule(incremental(), "mapping-1")

        assert info.scheduler_id == "sync-schedule-mapping-1"
        assert info.description == "Every 15 minutes"
        assert info.next_run is not None
        assert info.consecutive_failures == 0

        kwargs = apscheduler.add_job.call_args.kwargs
        assert kwargs["id"] == "sync-schedule-mapping-1"
        assert kwargs["name"] == "sync-incremental-mapping-1"
        assert kwargs["replace_existing"] is True
        assert "mapping-1" in await fake_redis.hgetall(DEFINITIONS_KEY)

    @pytest.mark.asyncio
    async def test_disabled_schedule_is_unregistered(self, service, apscheduler):
        info = await service.upsert_schedule(incremental(enabled=False), "mapping-1")
        assert info.enabled is False
        apscheduler.add_job.assert_not_called()
        apscheduler.remove_job.assert_called_with("sync-schedule-mapping-1")

    @pytest.mark.asyncio
    async def test_invalid_upsert_is_rejected(self, service, apscheduler):
        with pytest.raises(ScheduleValidationError):
            await service.upsert_schedule(incremental("* * * * *"), "mapping-1")
        assert await service.get_schedule("mapping-1") is None

    @pytest.mark.asyncio
    async def test_start_restores_persisted_schedules(self, service, fake_redis, apscheduler):
        await service.upsert_schedule(incremental(), "mapping-1")
        await fake_redis.hset(DEFINITIONS_KEY, "broken", "{not json")

        restarted = SchedulerService(fake_redis, scheduler=apscheduler)
        apscheduler.add_job.reset_mock()
        await restarted.start()

        assert [s.mapping_id for s in await restarted.list_schedules()] == ["mapping-1"]
        apscheduler.add_job.assert_called_once()
        apscheduler.start.assert_called_once()

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, service, apscheduler):
        await service.upsert_schedule(incremental(), "mapping-1")

        assert await service.pause_schedule("mapping-1") is True
        info = await service.get_schedule("mapping-1")
        assert info.paused is True
        assert info.next_run is None

        # Paused state survives an update of the pattern
        info = await service.upsert_schedule(incremental("*/30 * * * *"), "mapping-1")
        assert info.paused is True

        assert await service.resume_schedule("mapping-1") is True
        info = await service.get_schedule("mapping-1")
        assert info.paused is False
        assert info.next_run is not None
        assert await service.pause_schedule("missing") is False

    @pytest.mark.asyncio
    async def test_remove(self, service, fake_redis):
        await service.upsert_schedule(incremental(), "mapping-1")
        assert await service.remove_schedule("mapping-1") is True
        assert await service.remove_schedule("mapping-1") is False
        assert await fake_redis.hgetall(DEFINITIONS_KEY) == {}

    @pytest.mark.asyncio
    async def test_run_now_uses_schedule_options(self, service):
        await service.upsert_schedule(incremental(options=ScheduleOptions(lookback_minutes=20)), "mapping-1")

        job = await service.run_now("mapping-1")

        assert job.name == "sync-incremental-mapping-1-manual"
        assert job.lookback_minutes == 20
        assert job.scheduled_by == ScheduleTrigger.MANUAL
        assert service.jobs.qsize() == 1

        full = await service.run_now("mapping-2", schedule_type=ScheduleType.FULL, delete_stale=True)
        assert full.name == "sync-full-mapping-2-manual"
        assert full.delete_stale is True

    @pytest.mark.asyncio
    async def test_fire_queues_scheduler_job(self, service):
        await service.upsert_schedule(incremental(), "mapping-1")
        await service._fire("mapping-1")

        job = service.jobs.get_nowait()
        assert job.scheduled_by == ScheduleTrigger.SCHEDULER
        assert job.name == "sync-incremental-mapping-1"

    @pytest.mark.asyncio
    async def test_recover_missed_jobs(self, fake_redis, apscheduler):
        definition = ScheduleDefinition(
            mapping_id="mapping-1",
            config=incremental(),
            next_run=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        future = ScheduleDefinition(
            mapping_id="mapping-2",
            config=incremental(),
            next_run=datetime(2999, 1, 1, tzinfo=timezone.utc),
        )
        await fake_redis.hset(DEFINITIONS_KEY, "mapping-1", definition.model_dump_json())
        await fake_redis.hset(DEFINITIONS_KEY, "mapping-2", future.model_dump_json())

        service = SchedulerService(fake_redis, scheduler=apscheduler)
        await service.start()

        assert await service.recover_missed_jobs() == 1
        job = service.jobs.get_nowait()
        assert job.mapping_id == "mapping-1"
        assert job.scheduled_by == ScheduleTrigger.SCHEDULER
        assert await service.recover_missed_jobs() == 0

    @pytest.mark.asyncio
    async def test_recovered_run_is_not_repeated_after_restart(self, fake_redis, apscheduler):
        missed = ScheduleDefinition(
            mapping_id="mapping-1",
            config=incremental(),
            next_run=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
        await fake_redis.hset(DEFINITIONS_KEY, "mapping-1", missed.model_dump_json())

        first = SchedulerService(fake_redis, scheduler=apscheduler)
        await first.start()
        assert await first.recover_missed_jobs() == 1

        stored = ScheduleDefinition.model_validate_json(await fake_redis.hget(DEFINITIONS_KEY, "mapping-1"))
        assert stored.next_run > datetime(2024, 1, 1, tzinfo=timezone.utc)

        second = SchedulerService(fake_redis, scheduler=apscheduler)
        await second.start()
        assert await second.recover_missed_jobs() == 0
        assert second.jobs.empty()

    @pytest.mark.asyncio
    async def test_failure_alert(self, service, caplog):
        with caplog.at_level(logging.CRITICAL):
            counts = [await service.record_failure("mapping-1") for _ in range(3)]

        assert counts == [1, 2, 3]
        assert "ALERT: Mapping mapping-1 failed 3 consecutive times" in caplog.text
        assert await service.get_consecutive_failures("mapping-1") == 3

        await service.reset_failures("mapping-1")
        assert await service.get_consecutive_failures("mapping-1") == 0


def sync_result(success=True):
    now = datetime.utcnow()
    return SyncResult(
        success=success,
        mapping_id="mapping-1",
        type=SyncType.INCREMENTAL,
        status=SyncStatus.COMPLETED if success else SyncStatus.FAILED,
        errors=[] if success else ["boom"],
        started_at=now,
        completed_at=now,
    )


@pytest.fixture
def scheduler_mock():
    scheduler = Mock()
    scheduler.record_failure = AsyncMock(return_value=1)
    scheduler.reset_failures = AsyncMock()
    return scheduler


@pytest.fixture
def engine_mock():
    engine = Mock()
    engine.is_running = Mock(return_value=False)
    engine.full_sync = AsyncMock(return_value=sync_result())
    engine.incremental_sync = AsyncMock(return_value=sync_result())
    return engine


class TestSyncWorker:
    """Test dispatching of scheduled jobs."""

    @pytest.mark.asyncio
    async def test_incremental_job(self, scheduler_mock, engine_mock):
        worker = SyncWorker(scheduler_mock, engine_mock)
        job = ScheduleJob(name="sync-incremental-mapping-1", mapping_id="mapping-1", type=ScheduleType.INCREMENTAL, lookback_minutes=20)

        result = await worker.process_job(job)

        assert result.success is True
        engine_mock.incremental_sync.assert_awaited_once_with(
            "mapping-1", dry_run=False, lookback_minutes=20, triggered_by="scheduler"
        )
        scheduler_mock.reset_failures.assert_awaited_once_with("mapping-1")

    @pytest.mark.asyncio
    async def test_full_job(self, scheduler_mock, engine_mock):
        worker = SyncWorker(scheduler_mock, engine_mock)
        job = ScheduleJob(
            name="sync-full-mapping-1-manual",
            mapping_id="mapping-1",
            type=ScheduleType.FULL,
            delete_stale=True,
            scheduled_by=ScheduleTrigger.MANUAL,
        )
        await worker.process_job(job)
        engine_mock.full_sync.assert_awaited_once_with(
            "mapping-1", dry_run=False, delete_stale=True, triggered_by="manual"
        )

    @pytest.mark.asyncio
    async def test_failed_result_counts_failure(self, scheduler_mock, engine_mock):
        engine_mock.incremental_sync.return_value = sync_result(success=False)
        worker = SyncWorker(scheduler_mock, engine_mock)

        await worker.process_job(ScheduleJob(name="j", mapping_id="mapping-1", type=ScheduleType.INCREMENTAL))

        scheduler_mock.record_failure.assert_awaited_once_with("mapping-1")
        scheduler_mock.reset_failures.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_exception_counts_failure_and_propagates(self, scheduler_mock, engine_mock):
        engine_mock.incremental_sync.side_effect = RuntimeError("mongo unavailable")
        worker = SyncWorker(scheduler_mock, engine_mock)

        with pytest.raises(RuntimeError):
            await worker.process_job(ScheduleJob(name="j", mapping_id="mapping-1", type=ScheduleType.INCREMENTAL))
        scheduler_mock.record_failure.assert_awaited_once_with("mapping-1")

    @pytest.mark.asyncio
    async def test_skips_when_running(self, scheduler_mock, engine_mock):
        engine_mock.is_running.return_value = True
        worker = SyncWorker(scheduler_mock, engine_mock)

        assert await worker.process_job(ScheduleJob(name="j", mapping_id="mapping-1", type=ScheduleType.FULL)) is None
        engine_mock.full_sync.assert_not_awaited()

        engine_mock.is_running.return_value = False
        engine_mock.full_sync.side_effect = SyncAlreadyRunningError("mapping-1")
        assert await worker.process_job(ScheduleJob(name="j", mapping_id="mapping-1", type=ScheduleType.FULL)) is None
        scheduler_mock.record_failure.assert_not_awaited()
