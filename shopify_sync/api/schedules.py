"""Sync schedule API endpoints."""

from fastapi import APIRouter, Depends, HTTPException, status
from typing import List
import logging

from shopify_sync.api.dependencies import get_mapping_service, get_scheduler
from shopify_sync.core.exceptions import ScheduleValidationError
from shopify_sync.models import ScheduleConfig, ScheduleJob, SchedulerInfo
from shopify_sync.schemas.sync import RunNowRequest, ScheduleResponse, ScheduleUpsertRequest
from shopify_sync.services.mapping_service import MappingService
from shopify_sync.services.scheduler_service import SchedulerService, get_next_runs, pattern_to_human

logger = logging.getLogger(__name__)
router = APIRouter()


async def _require_mapping(mapping_id: str, mappings: MappingService):
    mapping = await mappings.get_by_id(mapping_id)
    if mapping is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Mapping not found: {mapping_id}"
        )
    return mapping


def _not_found(mapping_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"No schedule for mapping: {mapping_id}"
    )


@router.get("/", response_model=List[SchedulerInfo])
async def list_schedules(scheduler: SchedulerService = Depends(get_scheduler)):
    return await scheduler.list_schedules()


@router.put("/{mapping_id}", response_model=ScheduleResponse)
async def upsert_schedule(
    mapping_id: str,
    body: ScheduleUpsertRequest,
    scheduler: SchedulerService = Depends(get_scheduler),
    mappings: MappingService = Depends(get_mapping_service),
):
    """Create, replace or disable the schedule of a mapping."""
    mapping = await _require_mapping(mapping_id, mappings)
    config = ScheduleConfig(**body.model_dump())

    try:
        info = await scheduler.upsert_schedule(config, mapping_id)
    except ScheduleValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    # Keep the mapping document in step with the live schedule
    mapping.schedule = config
    await mappings.save(mapping)

    if config.enabled:
        message = f"Schedule set: {pattern_to_human(config.pattern)} ({config.timezone})"
        next_runs = get_next_runs(config.pattern, config.timezone)
    else:
        message = "Schedule disabled"
        next_runs = []
    return ScheduleResponse(success=True, message=message, schedule=info, next_runs=next_runs)


@router.get("/{mapping_id}", response_model=ScheduleResponse)
async def get_schedule(mapping_id: str, scheduler: SchedulerService = Depends(get_scheduler)):
    info = await scheduler.get_schedule(mapping_id)
    if info is None:
        raise _not_found(mapping_id)
    next_runs = get_next_runs(info.pattern, info.timezone) if info.enabled and not info.paused else []
    return ScheduleResponse(success=True, message=info.description, schedule=info, next_runs=next_runs)


@router.delete("/{mapping_id}")
async def delete_schedule(
    mapping_id: str,
    scheduler: SchedulerService = Depends(get_scheduler),
    mappings: MappingService = Depends(get_mapping_service),
):
    if not await scheduler.remove_schedule(mapping_id):
        raise _not_found(mapping_id)

    mapping = await mappings.get_by_id(mapping_id)
    if mapping is not None and mapping.schedule is not None:
        mapping.schedule = None
        await mappings.save(mapping)
    return {"success": True, "message": "Schedule removed"}


@router.post("/{mapping_id}/run", response_model=ScheduleJob)
async def run_now(
    mapping_id: str,
    body: RunNowRequest = RunNowRequest(),
    scheduler: SchedulerService = Depends(get_scheduler),
    mappings: MappingService = Depends(get_mapping_service),
):
    """Queue an immediate run through the scheduler's worker."""
    await _require_mapping(mapping_id, mappings)
    return await scheduler.run_now(
        mapping_id,
        schedule_type=body.type,
        lookback_minutes=body.lookback_minutes,
        delete_stale=body.delete_stale,
    )


@router.post("/{mapping_id}/pause")
async def pause_schedule(mapping_id: str, scheduler: SchedulerService = Depends(get_scheduler)):
    if not await scheduler.pause_schedule(mapping_id):
        raise _not_found(mapping_id)
    return {"success": True, "message": "Schedule paused"}


@router.post("/{mapping_id}/resume")
async def resume_schedule(mapping_id: str, scheduler: SchedulerService = Depends(get_scheduler)):
    if not await scheduler.resume_schedule(mapping_id):
        raise _not_found(mapping_id)
    return {"success": True, "message": "Schedule resumed"}
