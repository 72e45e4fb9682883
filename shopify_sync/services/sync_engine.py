"""Sync orchestration.

A run moves through ``starting -> fetching -> transforming -> writing ->
(cleanup) -> completed``; any failure ends it as ``failed`` and an explicit
cancel as ``cancelled``. At most one run per mapping is active at a time.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

from shopify_sync.core.cancellation import CancellationToken
from shopify_sync.core.exceptions import (
    MappingNotFoundError,
    SyncAlreadyRunningError,
    SyncCancelledError,
)
from shopify_sync.models import (
    HookContext,
    HookPhase,
    HookStats,
    MappingConfig,
    RunningSyncInfo,
    SyncDuration,
    SyncHistoryEntry,
    SyncPhase,
    SyncProgress,
    SyncResult,
    SyncStats,
    SyncStatus,
    SyncType,
    TransformStatus,
)
from shopify_sync.services.filters import passes_filters
from shopify_sync.services.shopify_fetcher import build_bulk_query
from shopify_sync.utils.records import get_nested_value

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[SyncProgress], Any]
RecordSource = Callable[[List[str], CancellationToken], AsyncIterator[Dict[str, Any]]]


def get_required_fields(mapping: MappingConfig) -> List[str]:
    """Source fields a run has to fetch: key, enabled mapping sources, filter fields."""
    fields: List[str] = []

    def _add(name: str):
        if name and name not in fields:
            fields.append(name)

    if mapping.key_mapping:
        _add(mapping.key_mapping.source_field)
    for field_mapping in mapping.enabled_mappings:
        source = field_mapping.source
        if source.type == "single":
            _add(source.field)
        else:
            for source_field in source.fields:
                _add(source_field.field)
    for mapping_filter in mapping.filters:
        _add(mapping_filter.field)
    return fields


@dataclass
class RunningSync:
    id: str
    mapping_id: str
    type: SyncType
    token: CancellationToken
    started_at: datetime = field(default_factory=datetime.utcnow)
    progress: SyncProgress = field(default_factory=lambda: SyncProgress(phase=SyncPhase.STARTING))

    def info(self) -> RunningSyncInfo:
        return RunningSyncInfo(
            id=self.id,
            mapping_id=self.mapping_id,
            type=self.type,
            started_at=self.started_at,
            progress=self.progress,
        )


class SyncEngine:
    """Runs full and incremental syncs for mappings."""

    def __init__(
        self,
        fetcher,
        transform_engine,
        writer,
        history,
        mappings,
        hooks,
        bulk_timeout: float = 600.0,
        lookback_minutes: int = 15,
        progress_interval_full: int = 100,
        progress_interval_incremental: int = 50,
        max_errors: int = 50,
    ):
        self.fetcher = fetcher
        self.transform_engine = transform_engine
        self.writer = writer
        self.history = history
        self.mappings = mappings
        self.hooks = hooks
        self.bulk_timeout = bulk_timeout
        self.lookback_minutes = lookback_minutes
        self.progress_interval_full = progress_interval_full
        self.progress_interval_incremental = progress_interval_incremental
        self.max_errors = max_errors

        self._running: Dict[str, RunningSync] = {}

    # Running sync registry

    def is_running(self, mapping_id: str) -> bool:
        return mapping_id in self._running

    def get_running_sync(self, mapping_id: str) -> Optional[RunningSyncInfo]:
        run = self._running.get(mapping_id)
        return run.info() if run else None

    def list_running_syncs(self) -> List[RunningSyncInfo]:
        return [run.info() for run in self._running.values()]

    def cancel(self, mapping_id: str, reason: Optional[str] = None) -> bool:
        run = self._running.get(mapping_id)
        if run is None:
            return False
        run.token.cancel(reason)
        logger.info(f"Cancellation requested for sync of mapping {mapping_id}")
        return True

    def _reserve(self, mapping_id: str, sync_type: SyncType) -> RunningSync:
        # No await between the check and the insert
        if mapping_id in self._running:
            raise SyncAlreadyRunningError(mapping_id)
        run = RunningSync(id=str(uuid.uuid4()), mapping_id=mapping_id, type=sync_type, token=CancellationToken())
        self._running[mapping_id] = run
        return run

    def _release(self, run: RunningSync):
        if self._running.get(run.mapping_id) is run:
            del self._running[run.mapping_id]

    async def _load_mapping(self, run: RunningSync) -> MappingConfig:
        try:
            mapping = await self.mappings.get_by_id(run.mapping_id)
        except Exception:
            self._release(run)
            raise
        if mapping is None:
            self._release(run)
            raise MappingNotFoundError(run.mapping_id)
        return mapping

    # Public API

    async def full_sync(
        self,
        mapping_id: str,
        dry_run: bool = False,
        delete_stale: bool = False,
        bulk_timeout: Optional[float] = None,
        on_progress: Optional[ProgressCallback] = None,
        triggered_by: str = "manual",
    ) -> SyncResult:
        """Fetch every record through a bulk operation and write it."""
        run = self._reserve(mapping_id, SyncType.FULL)
        mapping = await self._load_mapping(run)
        timeout = bulk_timeout or self.bulk_timeout

        def source(fields: List[str], token: CancellationToken) -> AsyncIterator[Dict[str, Any]]:
            query = build_bulk_query(mapping.source_resource, fields)
            return self.fetcher.run_bulk_query(query, timeout=timeout, token=token, fields=fields)

        return await self._execute(
            run,
            mapping,
            source,
            dry_run=dry_run,
            delete_stale=delete_stale,
            on_progress=on_progress,
            triggered_by=triggered_by,
            progress_interval=self.progress_interval_full,
            start_message="Starting full sync...",
        )

    async def incremental_sync(
        self,
        mapping_id: str,
        dry_run: bool = False,
        since: Optional[datetime] = None,
        lookback_minutes: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        triggered_by: str = "manual",
    ) -> SyncResult:
        """Fetch records updated since ``since`` (default now minus lookback) and write them."""
        run = self._reserve(mapping_id, SyncType.INCREMENTAL)
        mapping = await self._load_mapping(run)
        if since is None:
            minutes = lookback_minutes if lookback_minutes is not None else self.lookback_minutes
            since = datetime.utcnow() - timedelta(minutes=minutes)

        def source(fields: List[str], token: CancellationToken) -> AsyncIterator[Dict[str, Any]]:
            return self.fetcher.fetch_incremental(mapping.source_resource, fields, since, token=token)

        return await self._execute(
            run,
            mapping,
            source,
            dry_run=dry_run,
            delete_stale=False,
            on_progress=on_progress,
            triggered_by=triggered_by,
            progress_interval=self.progress_interval_incremental,
            start_message=f"Starting incremental sync since {since.isoformat()}...",
        )

    # Run execution

    async def _execute(
        self,
        run: RunningSync,
        mapping: MappingConfig,
        source: RecordSource,
        dry_run: bool,
        delete_stale: bool,
        on_progress: Optional[ProgressCallback],
        triggered_by: str,
        progress_interval: int,
        start_message: str,
    ) -> SyncResult:
        start = time.perf_counter()
        started_at = run.started_at
        stats = SyncStats()
        duration = SyncDuration()
        errors: List[str] = []

        def elapsed_ms() -> int:
            return int((time.perf_counter() - start) * 1000)

        def progress(phase: SyncPhase, message: str, transformed: int = 0, written: int = 0):
            run.progress = SyncProgress(
                phase=phase,
                records_fetched=stats.fetched,
                records_transformed=transformed,
                records_written=written,
                records_skipped=stats.skipped,
                errors=stats.failed,
                elapsed_ms=elapsed_ms(),
                message=message,
            )
            self._emit(on_progress, run.progress)

        try:
            await self.history.create(
                SyncHistoryEntry(
                    id=run.id,
                    mapping_id=mapping.id,
                    mapping_name=mapping.name,
                    type=run.type,
                    status=SyncStatus.RUNNING,
                    triggered_by=triggered_by,
                    dry_run=dry_run,
                    started_at=started_at,
                )
            )
            progress(SyncPhase.STARTING, start_message)

            await self._run_pipeline(
                run, mapping, source, dry_run, delete_stale, stats, duration, errors, progress, progress_interval
            )
        except SyncCancelledError as e:
            logger.info(f"Sync {run.id} for mapping {mapping.id} cancelled: {e}")
            errors.append(str(e))
            return await self._finish(run, mapping, SyncStatus.CANCELLED, dry_run, stats, duration, errors, started_at, elapsed_ms(), progress)
        except asyncio.CancelledError:
            errors.append("Sync task cancelled")
            await self._finish(run, mapping, SyncStatus.CANCELLED, dry_run, stats, duration, errors, started_at, elapsed_ms(), progress)
            raise
        except Exception as e:
            logger.error(f"Sync {run.id} for mapping {mapping.id} failed: {e}", exc_info=True)
            errors.append(str(e))
            return await self._finish(run, mapping, SyncStatus.FAILED, dry_run, stats, duration, errors, started_at, elapsed_ms(), progress)
        finally:
            self._release(run)

        result = await self._finish(
            run, mapping, SyncStatus.COMPLETED, dry_run, stats, duration, errors, started_at, elapsed_ms(), progress
        )
        await self.hooks.run(
            HookPhase.POST_SYNC,
            self._hook_context(run, mapping, dry_run, stats=self._hook_stats(stats), errors=list(errors)),
        )
        return result

    async def _run_pipeline(
        self,
        run: RunningSync,
        mapping: MappingConfig,
        source: RecordSource,
        dry_run: bool,
        delete_stale: bool,
        stats: SyncStats,
        duration: SyncDuration,
        errors: List[str],
        progress: Callable[..., None],
        progress_interval: int,
    ):
        token = run.token
        await self.hooks.run(HookPhase.PRE_SYNC, self._hook_context(run, mapping, dry_run))

        fields = get_required_fields(mapping)
        progress(SyncPhase.FETCHING, "Fetching records from Shopify...")
        phase_start = time.perf_counter()
        records: List[Dict[str, Any]] = []
        async for record in source(fields, token):
            token.raise_if_cancelled()
            stats.fetched += 1
            records.append(record)
            if stats.fetched % progress_interval == 0:
                progress(SyncPhase.FETCHING, f"Fetched {stats.fetched} records...")
        duration.fetch_ms = int((time.perf_counter() - phase_start) * 1000)

        await self.hooks.run(HookPhase.POST_FETCH, self._hook_context(run, mapping, dry_run, records=records))

        filtered = [record for record in records if passes_filters(record, mapping.filters)]
        stats.filtered = len(filtered)
        stats.skipped = len(records) - len(filtered)
        token.raise_if_cancelled()

        progress(SyncPhase.TRANSFORMING, f"Transforming {len(filtered)} records...")
        phase_start = time.perf_counter()
        batch = await self.transform_engine.transform_batch(mapping, filtered, dry_run=dry_run)

        key_column = mapping.key_mapping.target_column if mapping.key_mapping else None
        rows: List[Dict[str, Any]] = []
        valid_keys: Set[str] = set()
        for record, result in zip(filtered, batch.results):
            for error in result.errors:
                errors.append(f"{result.source_id}: {error.field}: {error.message}")
            if result.status == TransformStatus.ERROR:
                stats.failed += 1
                continue

            row = result.target_row
            if key_column is not None:
                if row.get(key_column) is None:
                    key_value = get_nested_value(record, mapping.key_mapping.source_field)
                    if key_value is not None:
                        row[key_column] = key_value
                if row.get(key_column) is not None:
                    valid_keys.add(str(row[key_column]))
            rows.append(row)
        duration.transform_ms = int((time.perf_counter() - phase_start) * 1000)
        transformed = len(batch.results)

        await self.hooks.run(HookPhase.POST_TRANSFORM, self._hook_context(run, mapping, dry_run, transformed_rows=rows))

        if dry_run or not rows:
            return
        if key_column is None:
            logger.warning(f"Mapping {mapping.id} has no key mapping; skipping write of {len(rows)} rows")
            return

        token.raise_if_cancelled()
        progress(SyncPhase.WRITING, f"Writing {len(rows)} records to database...", transformed=transformed)
        phase_start = time.perf_counter()
        write = await self.writer.upsert(mapping.target_table, key_column, rows, on_conflict="update")
        stats.inserted = write.inserted
        stats.updated = write.updated
        stats.failed += len(write.errors)
        errors.extend(f"Row {e['row']}: {e['error']}" for e in write.errors)
        duration.write_ms = int((time.perf_counter() - phase_start) * 1000)

        await self.hooks.run(
            HookPhase.POST_WRITE,
            self._hook_context(run, mapping, dry_run, stats=self._hook_stats(stats)),
        )

        if delete_stale:
            progress(
                SyncPhase.CLEANUP,
                "Cleaning up stale records...",
                transformed=transformed,
                written=stats.inserted + stats.updated,
            )
            stats.deleted = await self.writer.delete_stale(mapping.target_table, key_column, valid_keys)

    async def _finish(
        self,
        run: RunningSync,
        mapping: MappingConfig,
        status: SyncStatus,
        dry_run: bool,
        stats: SyncStats,
        duration: SyncDuration,
        errors: List[str],
        started_at: datetime,
        total_ms: int,
        progress: Callable[..., None],
    ) -> SyncResult:
        duration.total_ms = total_ms
        completed_at = datetime.utcnow()

        try:
            await self.history.update(
                run.id,
                status=status,
                completed_at=completed_at,
                stats=stats,
                duration=duration,
                errors=errors[: self.max_errors],
            )
        except Exception as e:
            logger.error(f"Failed to record sync {run.id} outcome: {e}")

        written = stats.inserted + stats.updated
        if status == SyncStatus.COMPLETED:
            progress(SyncPhase.COMPLETED, f"{run.type.value.capitalize()} sync completed successfully", written=written)
        else:
            progress(SyncPhase.FAILED, errors[-1] if errors else status.value, written=written)

        logger.info(
            f"Sync {run.id} ({run.type.value}) for mapping {mapping.id} {status.value}: "
            f"fetched={stats.fetched} inserted={stats.inserted} updated={stats.updated} "
            f"skipped={stats.skipped} failed={stats.failed} deleted={stats.deleted} in {total_ms}ms"
        )

        return SyncResult(
            success=status == SyncStatus.COMPLETED,
            mapping_id=mapping.id,
            mapping_name=mapping.name,
            type=run.type,
            status=status,
            dry_run=dry_run,
            stats=stats,
            duration=duration,
            errors=errors,
            started_at=started_at,
            completed_at=completed_at,
            history_id=run.id,
        )

    def _hook_context(self, run: RunningSync, mapping: MappingConfig, dry_run: bool, **extra: Any) -> HookContext:
        return HookContext(
            mapping_id=mapping.id,
            mapping_config=mapping,
            sync_type=run.type,
            dry_run=dry_run,
            run_id=run.id,
            **extra,
        )

    @staticmethod
    def _hook_stats(stats: SyncStats) -> HookStats:
        return HookStats(
            fetched=stats.fetched,
            inserted=stats.inserted,
            updated=stats.updated,
            skipped=stats.skipped,
            failed=stats.failed,
        )

    @staticmethod
    def _emit(callback: Optional[ProgressCallback], event: SyncProgress):
        if callback is None:
            return
        try:
            callback(event)
        except Exception as e:
            logger.error(f"Progress callback error: {e}")
