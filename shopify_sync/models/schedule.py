"""Scheduler models."""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field
from enum import Enum

from shopify_sync.models.mapping import ScheduleConfig, ScheduleType


class ScheduleTrigger(str, Enum):
    SCHEDULER = "scheduler"
    MANUAL = "manual"


class ScheduleJob(BaseModel):
    """A sync request produced by the scheduler."""
    name: str
    mapping_id: str
    type: ScheduleType
    lookback_minutes: Optional[int] = None
    delete_stale: bool = False
    scheduled_by: ScheduleTrigger = ScheduleTrigger.SCHEDULER
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ScheduleDefinition(BaseModel):
    """Persisted schedule, keyed by mapping id."""
    mapping_id: str
    config: ScheduleConfig
    paused: bool = False
    next_run: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class SchedulerInfo(BaseModel):
    scheduler_id: str
    mapping_id: str
    type: ScheduleType
    pattern: str
    timezone: str
    description: str
    enabled: bool
    paused: bool = False
    next_run: Optional[datetime] = None
    consecutive_failures: int = 0
