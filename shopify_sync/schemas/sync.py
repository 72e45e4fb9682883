"""Sync and schedule API schemas."""

from datetime import datetime
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, Field

from shopify_sync.models import MappingConfig, ScheduleOptions, ScheduleType, SchedulerInfo


class FullSyncRequest(BaseModel):
    """Schema for starting a full sync."""
    dry_run: bool = False
    delete_stale: bool = False
    bulk_timeout: Optional[float] = Field(default=None, gt=0)


class IncrementalSyncRequest(BaseModel):
    """Schema for starting an incremental sync."""
    dry_run: bool = False
    since: Optional[datetime] = None
    lookback_minutes: Optional[int] = Field(default=None, ge=1)


class CancelSyncRequest(BaseModel):
    reason: Optional[str] = None


class PreviewRequest(BaseModel):
    """Preview a saved mapping by id or an unsaved configuration."""
    mapping_id: Optional[str] = None
    mapping: Optional[MappingConfig] = None
    limit: int = Field(default=10, ge=1, le=50)


class ScheduleUpsertRequest(BaseModel):
    """Schema for creating or replacing a mapping's schedule."""
    type: ScheduleType
    pattern: str
    timezone: str = "UTC"
    enabled: bool = True
    options: ScheduleOptions = Field(default_factory=ScheduleOptions)


class ScheduleResponse(BaseModel):
    success: bool
    message: str
    schedule: Optional[SchedulerInfo] = None
    next_runs: List[datetime] = Field(default_factory=list)


class RunNowRequest(BaseModel):
    type: Optional[ScheduleType] = None
    lookback_minutes: Optional[int] = Field(default=None, ge=1)
    delete_stale: Optional[bool] = None


class SyncStatsResponse(BaseModel):
    total_syncs: int
    last_24_hours: Dict[str, int]
    by_mapping: List[Dict[str, Any]]
