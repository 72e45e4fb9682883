"""Mapping management API endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List, Optional
import logging

from shopify_sync.api.dependencies import (
    get_mapping_service,
    get_mapping_validator,
    get_scheduler,
    get_sync_engine,
)
from shopify_sync.models import MappingConfig, ValidationResult
from shopify_sync.schemas.mapping import MappingDeleteResponse, MappingSaveResponse
from shopify_sync.services.mapping_service import MappingService
from shopify_sync.services.mapping_validator import MappingValidator
from shopify_sync.services.scheduler_service import SchedulerService
from shopify_sync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)
router = APIRouter()


async def _require_mapping(mapping_id: str, mappings: MappingService) -> MappingConfig:
    mapping = await mappings.get_by_id(mapping_id)
    if mapping is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Mapping not found: {mapping_id}"
        )
    return mapping


async def _validated(
    config: MappingConfig,
    validator: MappingValidator,
    skip_validation: bool,
) -> Optional[ValidationResult]:
    if skip_validation:
        logger.warning(f"Saving mapping {config.id} without schema validation")
        return None

    validation = await validator.validate(config)
    if not validation.valid:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=validation.model_dump(mode="json"),
        )
    return validation


@router.get("/", response_model=List[MappingConfig])
async def list_mappings(mappings: MappingService = Depends(get_mapping_service)):
    return await mappings.get_all()


@router.post("/", response_model=MappingSaveResponse, status_code=status.HTTP_201_CREATED)
async def create_mapping(
    config: MappingConfig,
    skip_validation: bool = Query(False),
    mappings: MappingService = Depends(get_mapping_service),
    validator: MappingValidator = Depends(get_mapping_validator),
):
    """Validate and store a new mapping."""
    if await mappings.get_by_id(config.id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Mapping already exists: {config.id}"
        )

    validation = await _validated(config, validator, skip_validation)
    saved = await mappings.save(config)
    return MappingSaveResponse(success=True, mapping=saved, validation=validation)


@router.post("/validate", response_model=ValidationResult)
async def validate_mapping(
    config: MappingConfig,
    validator: MappingValidator = Depends(get_mapping_validator),
):
    """Check an unsaved mapping against the target schema."""
    return await validator.validate(config)


@router.get("/{mapping_id}", response_model=MappingConfig)
async def get_mapping(
    mapping_id: str,
    mappings: MappingService = Depends(get_mapping_service),
):
    return await _require_mapping(mapping_id, mappings)


@router.put("/{mapping_id}", response_model=MappingSaveResponse)
async def update_mapping(
    mapping_id: str,
    config: MappingConfig,
    skip_validation: bool = Query(False),
    mappings: MappingService = Depends(get_mapping_service),
    validator: MappingValidator = Depends(get_mapping_validator),
):
    """Validate and replace a stored mapping."""
    if config.id != mapping_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Mapping id in the body does not match the URL"
        )
    existing = await _require_mapping(mapping_id, mappings)

    validation = await _validated(config, validator, skip_validation)
    config.created_at = existing.created_at
    # The live schedule is managed through the schedules API
    config.schedule = existing.schedule
    saved = await mappings.save(config)
    return MappingSaveResponse(success=True, mapping=saved, validation=validation)


@router.post("/{mapping_id}/validate", response_model=ValidationResult)
async def validate_saved_mapping(
    mapping_id: str,
    mappings: MappingService = Depends(get_mapping_service),
    validator: MappingValidator = Depends(get_mapping_validator),
):
    """Re-check a stored mapping, e.g. after the target schema changed."""
    mapping = await _require_mapping(mapping_id, mappings)
    return await validator.validate(mapping)


@router.delete("/{mapping_id}", response_model=MappingDeleteResponse)
async def delete_mapping(
    mapping_id: str,
    mappings: MappingService = Depends(get_mapping_service),
    scheduler: SchedulerService = Depends(get_scheduler),
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Delete a mapping together with its schedule."""
    await _require_mapping(mapping_id, mappings)
    if engine.is_running(mapping_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Cannot delete a mapping while it is syncing"
        )

    schedule_removed = await scheduler.remove_schedule(mapping_id)
    await mappings.delete(mapping_id)
    return MappingDeleteResponse(
        success=True,
        message=f"Mapping {mapping_id} deleted",
        schedule_removed=schedule_removed,
    )
