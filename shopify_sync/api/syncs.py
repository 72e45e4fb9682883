"""Sync management API endpoints."""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from typing import List, Optional
import logging

from shopify_sync.api.dependencies import (
    get_container,
    get_delta_service,
    get_mapping_service,
    get_preview_service,
    get_sync_engine,
    get_sync_history,
)
from shopify_sync.core.container import ServiceContainer
from shopify_sync.core.exceptions import (
    MappingNotFoundError,
    SyncAlreadyRunningError,
    SyncServiceError,
)
from shopify_sync.models import (
    DeltaResult,
    PreviewResult,
    RunningSyncInfo,
    SyncHistoryEntry,
    SyncHistoryList,
    SyncStatus,
)
from shopify_sync.schemas.sync import (
    CancelSyncRequest,
    FullSyncRequest,
    IncrementalSyncRequest,
    PreviewRequest,
    SyncStatsResponse,
)
from shopify_sync.services.delta_service import DeltaService
from shopify_sync.services.mapping_service import MappingService
from shopify_sync.services.preview_service import PreviewService
from shopify_sync.services.sync_engine import SyncEngine
from shopify_sync.services.sync_history import SyncHistoryService

logger = logging.getLogger(__name__)
router = APIRouter()


async def _ensure_startable(mapping_id: str, engine: SyncEngine, mappings: MappingService):
    if await mappings.get_by_id(mapping_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Mapping not found: {mapping_id}"
        )
    running = engine.get_running_sync(mapping_id)
    if running is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"A {running.type.value} sync is already running for this mapping"
        )


async def _run_in_background(coro, mapping_id: str):
    try:
        result = await coro
        logger.info(
            f"Background sync for mapping {mapping_id} {result.status.value}: "
            f"{result.stats.inserted} inserted, {result.stats.updated} updated"
        )
    except SyncServiceError as e:
        logger.warning(f"Background sync for mapping {mapping_id} not run: {e}")


async def _run_now(coro):
    try:
        return await coro
    except MappingNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.post("/{mapping_id}/full")
async def start_full_sync(
    mapping_id: str,
    background_tasks: BackgroundTasks,
    body: FullSyncRequest = FullSyncRequest(),
    wait: bool = Query(False, description="Wait for the run and return its result"),
    engine: SyncEngine = Depends(get_sync_engine),
    mappings: MappingService = Depends(get_mapping_service),
):
    """Start a full sync (bulk export) for a mapping."""
    await _ensure_startable(mapping_id, engine, mappings)
    logger.info(f"Starting full sync for mapping {mapping_id} (dry_run: {body.dry_run})")

    coro = engine.full_sync(
        mapping_id,
        dry_run=body.dry_run,
        delete_stale=body.delete_stale,
        bulk_timeout=body.bulk_timeout,
        triggered_by="api",
    )
    if wait:
        return await _run_now(coro)

    background_tasks.add_task(_run_in_background, coro, mapping_id)
    return {"status": "accepted", "mapping_id": mapping_id, "type": "full"}


@router.post("/{mapping_id}/incremental")
async def start_incremental_sync(
    mapping_id: str,
    background_tasks: BackgroundTasks,
    body: IncrementalSyncRequest = IncrementalSyncRequest(),
    wait: bool = Query(False, description="Wait for the run and return its result"),
    engine: SyncEngine = Depends(get_sync_engine),
    mappings: MappingService = Depends(get_mapping_service),
):
    """Start an incremental sync for records updated since a point in time."""
    await _ensure_startable(mapping_id, engine, mappings)
    logger.info(f"Starting incremental sync for mapping {mapping_id} (dry_run: {body.dry_run})")

    coro = engine.incremental_sync(
        mapping_id,
        dry_run=body.dry_run,
        since=body.since,
        lookback_minutes=body.lookback_minutes,
        triggered_by="api",
    )
    if wait:
        return await _run_now(coro)

    background_tasks.add_task(_run_in_background, coro, mapping_id)
    return {"status": "accepted", "mapping_id": mapping_id, "type": "incremental"}


@router.post("/{mapping_id}/cancel")
async def cancel_sync(
    mapping_id: str,
    body: CancelSyncRequest = CancelSyncRequest(),
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Request cancellation of the running sync for a mapping."""
    if not engine.cancel(mapping_id, body.reason or "Cancelled by user"):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No running sync for mapping: {mapping_id}"
        )
    return {"success": True, "message": "Cancellation requested"}


@router.get("/running", response_model=List[RunningSyncInfo])
async def list_running_syncs(engine: SyncEngine = Depends(get_sync_engine)):
    return engine.list_running_syncs()


@router.get("/running/{mapping_id}", response_model=RunningSyncInfo)
async def get_running_sync(mapping_id: str, engine: SyncEngine = Depends(get_sync_engine)):
    running = engine.get_running_sync(mapping_id)
    if running is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No running sync for mapping: {mapping_id}"
        )
    return running


@router.get("/history", response_model=SyncHistoryList)
async def get_sync_history(
    mapping_id: Optional[str] = None,
    status_filter: Optional[SyncStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    history: SyncHistoryService = Depends(get_sync_history),
):
    """Most recent runs, optionally for one mapping or in one status."""
    if status_filter is not None:
        entries = await history.get_by_status(status_filter, limit=limit)
        return SyncHistoryList(entries=entries, total=len(entries), has_more=len(entries) == limit)
    return await history.get_recent(limit=limit, mapping_id=mapping_id)


@router.get("/history/{entry_id}", response_model=SyncHistoryEntry)
async def get_sync_history_entry(entry_id: str, history: SyncHistoryService = Depends(get_sync_history)):
    entry = await history.get(entry_id)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Sync run not found: {entry_id}"
        )
    return entry


@router.get("/stats", response_model=SyncStatsResponse)
async def get_sync_stats(history: SyncHistoryService = Depends(get_sync_history)):
    return await history.get_stats()


@router.post("/preview", response_model=PreviewResult)
async def preview_mapping(
    body: PreviewRequest,
    service: PreviewService = Depends(get_preview_service),
):
    """Transform a few live records without writing them."""
    target = body.mapping or body.mapping_id
    if target is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Either mapping_id or mapping is required"
        )
    try:
        return await service.preview(target, limit=body.limit)
    except MappingNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/{mapping_id}/delta", response_model=DeltaResult)
async def get_delta(mapping_id: str, service: DeltaService = Depends(get_delta_service)):
    """Compare key values between Shopify and the target table."""
    try:
        return await service.calculate_delta(mapping_id)
    except MappingNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/target-schema")
async def get_target_schema(container: ServiceContainer = Depends(get_container)):
    """Tables and columns of the target database, for building mappings."""
    try:
        return await container.sql.introspect_schema()
    except Exception as e:
        logger.error(f"Schema introspection failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Could not read target schema: {e}"
        )
