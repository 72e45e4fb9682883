"""Cron schedules for mapping syncs.

Schedules are registered with APScheduler and persisted in a Redis hash so
they survive restarts. A fired schedule does not run the sync itself; it
puts a ``ScheduleJob`` on ``jobs`` for the sync worker.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from shopify_sync.core.exceptions import ScheduleValidationError
from shopify_sync.models import (
    ScheduleConfig,
    ScheduleDefinition,
    ScheduleJob,
    SchedulerInfo,
    ScheduleTrigger,
    ScheduleType,
)

logger = logging.getLogger(__name__)

DEFINITIONS_KEY = "scheduler:definitions"
FAILURES_KEY_PREFIX = "scheduler:failures"

PATTERN_PRESETS = {
    "*/5 * * * *": "Every 5 minutes",
    "*/10 * * * *": "Every 10 minutes",
    "*/15 * * * *": "Every 15 minutes",
    "*/30 * * * *": "Every 30 minutes",
    "0 * * * *": "Every hour",
    "0 */2 * * *": "Every 2 hours",
    "0 */4 * * *": "Every 4 hours",
    "0 */6 * * *": "Every 6 hours",
    "0 */12 * * *": "Every 12 hours",
    "0 0 * * *": "Daily at midnight",
    "0 3 * * *": "Daily at 3 AM",
    "0 0 * * 0": "Weekly on Sunday at midnight",
    "0 2 * * 0": "Weekly on Sunday at 2 AM",
    "0 0 1 * *": "Monthly on the 1st at midnight",
}

# Cron counts weekdays from Sunday = 0 (7 is also Sunday); APScheduler from Monday = 0.
_WEEKDAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat", "sun"]


def scheduler_id_for(mapping_id: str) -> str:
    return f"sync-schedule-{mapping_id}"


def _weekday_token(token: str) -> str:
    if token.isdigit():
        index = int(token)
        if index > 7:
            raise ValueError(f"Invalid day of week: {token}")
        return _WEEKDAY_NAMES[index]
    return token


def normalize_day_of_week(field: str) -> str:
    """Rewrite numeric cron weekdays as names (``1-5`` -> ``mon-fri``)."""
    parts = []
    for part in field.split(","):
        body, slash, step = part.partition("/")
        if "-" in body:
            start, _, end = body.partition("-")
            body = f"{_weekday_token(start)}-{_weekday_token(end)}"
        else:
            body = _weekday_token(body)
        parts.append(f"{body}{slash}{step}")
    return ",".join(parts)


def build_trigger(pattern: str, tz: str = "UTC") -> CronTrigger:
    """CronTrigger for a standard five field cron expression."""
    try:
        zone = ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleValidationError(f"Invalid timezone: {tz}") from e

    fields = pattern.split()
    if len(fields) != 5:
        raise ScheduleValidationError(
            f"Invalid cron expression: expected 5 fields, got {len(fields)}"
        )
    minute, hour, day, month, day_of_week = fields
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=normalize_day_of_week(day_of_week),
            timezone=zone,
        )
    except ValueError as e:
        raise ScheduleValidationError(f"Invalid cron expression: {e}") from e


def get_next_runs(pattern: str, tz: str = "UTC", count: int = 5, now: Optional[datetime] = None) -> List[datetime]:
    """Next ``count`` fire times; empty for an invalid pattern."""
    try:
        trigger = build_trigger(pattern, tz)
    except ScheduleValidationError:
        return []

    current = now or datetime.now(timezone.utc)
    runs: List[datetime] = []
    previous: Optional[datetime] = None
    for _ in range(count):
        fire_time = trigger.get_next_fire_time(previous, previous or current)
        if fire_time is None:
            break
        runs.append(fire_time)
        previous = fire_time
    return runs


def pattern_to_human(pattern: str) -> str:
    if pattern in PATTERN_PRESETS:
        return PATTERN_PRESETS[pattern]

    parts = pattern.split()
    if len(parts) != 5:
        return pattern
    minute, hour, day, month, day_of_week = parts
    rest_any = day == "*" and month == "*" and day_of_week == "*"

    if minute.startswith("*/") and hour == "*" and rest_any:
        return f"Every {minute[2:]} minutes"
    if minute == "0" and hour.startswith("*/") and rest_any:
        return f"Every {hour[2:]} hours"
    if minute != "*" and hour == "*" and rest_any:
        return f"Every hour at :{minute.zfill(2)}"
    if minute != "*" and hour != "*" and "/" not in hour and rest_any:
        return f"Daily at {hour}:{minute.zfill(2)}"
    return pattern


class SchedulerService:
    """Maintains one cron schedule per mapping."""

    def __init__(
        self,
        redis_client,
        scheduler: Optional[AsyncIOScheduler] = None,
        min_incremental_interval: int = 300,
        min_full_interval: int = 21600,
        failure_ttl: int = 86400,
        alert_threshold: int = 3,
    ):
        self.redis_client = redis_client
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.min_incremental_interval = min_incremental_interval
        self.min_full_interval = min_full_interval
        self.failure_ttl = failure_ttl
        self.alert_threshold = alert_threshold

        self.jobs: asyncio.Queue = asyncio.Queue()
        self._definitions: Dict[str, ScheduleDefinition] = {}
        self._stored_next_runs: Dict[str, Optional[datetime]] = {}

    # Validation

    def validate_pattern(self, schedule_type: ScheduleType, pattern: str, tz: str = "UTC") -> None:
        """Raise ``ScheduleValidationError`` for bad or too frequent patterns."""
        runs = get_next_runs(pattern, tz, count=2)
        if not runs:
            build_trigger(pattern, tz)  # raises with the parse error
            raise ScheduleValidationError(f"Invalid cron expression: {pattern} never fires")
        if len(runs) < 2:
            return

        interval = (runs[1] - runs[0]).total_seconds()
        minutes = round(interval / 60)
        if schedule_type == ScheduleType.FULL and interval < self.min_full_interval:
            raise ScheduleValidationError(
                f"Full sync cannot run more often than every {self.min_full_interval // 3600} hours. "
                f"Pattern interval: {minutes} minutes"
            )
        if schedule_type == ScheduleType.INCREMENTAL and interval < self.min_incremental_interval:
            raise ScheduleValidationError(
                f"Incremental sync cannot run more often than every {self.min_incremental_interval // 60} minutes. "
                f"Pattern interval: {minutes} minutes"
            )

    # Lifecycle

    async def start(self):
        """Load persisted schedules, register them and start firing."""
        stored = await self.redis_client.hgetall(DEFINITIONS_KEY)
        for mapping_id, raw in (stored or {}).items():
            try:
                definition = ScheduleDefinition.model_validate_json(raw)
            except ValueError as e:
                logger.error(f"Discarding invalid schedule definition for {mapping_id}: {e}")
                continue
            self._definitions[definition.mapping_id] = definition
            self._stored_next_runs[definition.mapping_id] = definition.next_run
            if definition.config.enabled and not definition.paused:
                self._register(definition)

        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(f"Scheduler started with {len(self._definitions)} schedules")

    async def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    # Schedule management

    async def upsert_schedule(self, config: ScheduleConfig, mapping_id: str) -> SchedulerInfo:
        self.validate_pattern(config.type, config.pattern, config.timezone)

        existing = self._definitions.get(mapping_id)
        definition = ScheduleDefinition(
            mapping_id=mapping_id,
            config=config,
            paused=existing.paused if existing else False,
        )
        self._definitions[mapping_id] = definition

        if config.enabled and not definition.paused:
            self._register(definition)
            logger.info(
                f"Schedule {scheduler_id_for(mapping_id)} set: {config.pattern} ({config.timezone})"
            )
        else:
            self._unregister(mapping_id)
            logger.info(f"Schedule {scheduler_id_for(mapping_id)} disabled")

        await self._persist(definition)
        return await self._info(definition)

    async def remove_schedule(self, mapping_id: str) -> bool:
        self._unregister(mapping_id)
        definition = self._definitions.pop(mapping_id, None)
        removed = await self.redis_client.hdel(DEFINITIONS_KEY, mapping_id)
        if definition is not None or removed:
            logger.info(f"Removed schedule {scheduler_id_for(mapping_id)}")
            return True
        return False

    async def get_schedule(self, mapping_id: str) -> Optional[SchedulerInfo]:
        definition = self._definitions.get(mapping_id)
        return await self._info(definition) if definition else None

    async def list_schedules(self) -> List[SchedulerInfo]:
        return [await self._info(d) for d in self._definitions.values()]

    async def pause_schedule(self, mapping_id: str) -> bool:
        definition = self._definitions.get(mapping_id)
        if definition is None:
            return False
        definition.paused = True
        definition.next_run = None
        self._unregister(mapping_id)
        await self._persist(definition)
        logger.info(f"Paused schedule {scheduler_id_for(mapping_id)}")
        return True

    async def resume_schedule(self, mapping_id: str) -> bool:
        definition = self._definitions.get(mapping_id)
        if definition is None:
            return False
        definition.paused = False
        if definition.config.enabled:
            self._register(definition)
        await self._persist(definition)
        logger.info(f"Resumed schedule {scheduler_id_for(mapping_id)}")
        return True

    async def run_now(
        self,
        mapping_id: str,
        schedule_type: Optional[ScheduleType] = None,
        lookback_minutes: Optional[int] = None,
        delete_stale: Optional[bool] = None,
        trigger: ScheduleTrigger = ScheduleTrigger.MANUAL,
    ) -> ScheduleJob:
        """Queue an immediate run, defaulting to the mapping's schedule options."""
        definition = self._definitions.get(mapping_id)
        config = definition.config if definition else None
        job_type = schedule_type or (config.type if config else ScheduleType.INCREMENTAL)

        job = ScheduleJob(
            name=f"sync-{job_type.value}-{mapping_id}" + ("-manual" if trigger == ScheduleTrigger.MANUAL else ""),
            mapping_id=mapping_id,
            type=job_type,
            lookback_minutes=lookback_minutes if lookback_minutes is not None else (
                config.options.lookback_minutes if config else None
            ),
            delete_stale=delete_stale if delete_stale is not None else (
                config.options.delete_stale if config else False
            ),
            scheduled_by=trigger,
        )
        await self.jobs.put(job)
        logger.info(f"Queued {trigger.value} {job_type.value} sync for mapping {mapping_id}")
        return job

    async def recover_missed_jobs(self, now: Optional[datetime] = None) -> int:
        """Queue one run for each schedule whose stored next run passed while the service was down."""
        current = now or datetime.now(timezone.utc)
        recovered = 0
        for mapping_id, next_run in list(self._stored_next_runs.items()):
            definition = self._definitions.get(mapping_id)
            if definition is None or not definition.config.enabled or definition.paused:
                continue
            if next_run is not None and next_run < current:
                logger.info(f"Missed scheduled run detected for {mapping_id}, triggering now")
                await self.run_now(mapping_id, trigger=ScheduleTrigger.SCHEDULER)
                recovered += 1
                runs = get_next_runs(definition.config.pattern, definition.config.timezone, count=1, now=current)
                definition.next_run = runs[0] if runs else None
                try:
                    await self._persist(definition)
                except Exception as e:
                    logger.warning(f"Failed to persist next run for {mapping_id}: {e}")
        self._stored_next_runs.clear()
        return recovered

    # Failure tracking

    async def record_failure(self, mapping_id: str) -> int:
        key = f"{FAILURES_KEY_PREFIX}:{mapping_id}"
        failures = int(await self.redis_client.incr(key))
        await self.redis_client.expire(key, self.failure_ttl)
        if failures >= self.alert_threshold:
            logger.critical(f"ALERT: Mapping {mapping_id} failed {failures} consecutive times")
        return failures

    async def reset_failures(self, mapping_id: str):
        await self.redis_client.delete(f"{FAILURES_KEY_PREFIX}:{mapping_id}")

    async def get_consecutive_failures(self, mapping_id: str) -> int:
        value = await self.redis_client.get(f"{FAILURES_KEY_PREFIX}:{mapping_id}")
        return int(value) if value else 0

    # Internals

    def _register(self, definition: ScheduleDefinition):
        config = definition.config
        trigger = build_trigger(config.pattern, config.timezone)
        self.scheduler.add_job(
            self._fire,
            trigger=trigger,
            args=[definition.mapping_id],
            id=scheduler_id_for(definition.mapping_id),
            name=f"sync-{config.type.value}-{definition.mapping_id}",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        runs = get_next_runs(config.pattern, config.timezone, count=1)
        definition.next_run = runs[0] if runs else None

    def _unregister(self, mapping_id: str):
        try:
            self.scheduler.remove_job(scheduler_id_for(mapping_id))
        except JobLookupError:
            pass

    async def _persist(self, definition: ScheduleDefinition):
        definition.updated_at = datetime.utcnow()
        await self.redis_client.hset(DEFINITIONS_KEY, definition.mapping_id, definition.model_dump_json())

    async def _fire(self, mapping_id: str):
        definition = self._definitions.get(mapping_id)
        if definition is None:
            return
        await self.run_now(mapping_id, trigger=ScheduleTrigger.SCHEDULER)
        runs = get_next_runs(definition.config.pattern, definition.config.timezone, count=1)
        definition.next_run = runs[0] if runs else None
        try:
            await self._persist(definition)
        except Exception as e:
            logger.warning(f"Failed to persist next run for {mapping_id}: {e}")

    async def _info(self, definition: ScheduleDefinition) -> SchedulerInfo:
        config = definition.config
        return SchedulerInfo(
            scheduler_id=scheduler_id_for(definition.mapping_id),
            mapping_id=definition.mapping_id,
            type=config.type,
            pattern=config.pattern,
            timezone=config.timezone,
            description=pattern_to_human(config.pattern),
            enabled=config.enabled,
            paused=definition.paused,
            next_run=definition.next_run,
            consecutive_failures=await self.get_consecutive_failures(definition.mapping_id),
        )
