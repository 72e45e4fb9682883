"""Sync run and history models."""

from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field
from enum import Enum


class SyncType(str, Enum):
    """Sync run type."""
    FULL = "full"
    INCREMENTAL = "incremental"
    WEBHOOK = "webhook"


class SyncStatus(str, Enum):
    """Sync run status."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class SyncPhase(str, Enum):
    """Phase reported in progress events."""
    INITIALIZING = "initializing"
    STARTING = "starting"
    FETCHING = "fetching"
    TRANSFORMING = "transforming"
    WRITING = "writing"
    CLEANUP = "cleanup"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncStats(BaseModel):
    """Record counters for a run."""
    fetched: int = 0
    filtered: int = 0
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    failed: int = 0


class SyncDuration(BaseModel):
    fetch_ms: int = 0
    transform_ms: int = 0
    write_ms: int = 0
    total_ms: int = 0


class SyncProgress(BaseModel):
    """Progress snapshot passed to progress callbacks."""
    phase: SyncPhase
    records_fetched: int = 0
    records_transformed: int = 0
    records_written: int = 0
    records_skipped: int = 0
    errors: int = 0
    elapsed_ms: int = 0
    message: Optional[str] = None


class SyncResult(BaseModel):
    """Outcome of a full or incremental run."""
    success: bool
    mapping_id: str
    mapping_name: Optional[str] = None
    type: SyncType
    status: SyncStatus
    dry_run: bool = False
    stats: SyncStats = Field(default_factory=SyncStats)
    duration: SyncDuration = Field(default_factory=SyncDuration)
    errors: List[str] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime
    history_id: Optional[str] = None

    class Config:
        json_encoders = {
            datetime: lambda v: v.isoformat()
        }


class SyncHistoryEntry(BaseModel):
    """Persisted record of one run."""
    id: str = Field(alias="_id")
    mapping_id: str
    mapping_name: Optional[str] = None
    type: SyncType
    status: SyncStatus
    triggered_by: Optional[str] = None  # manual, scheduler, webhook, api
    dry_run: bool = False
    stats: SyncStats = Field(default_factory=SyncStats)
    duration: Optional[SyncDuration] = None
    errors: List[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
        json_encoders = {
            datetime: lambda v: v.isoformat()
        }


class SyncHistoryList(BaseModel):
    entries: List[SyncHistoryEntry]
    total: int
    has_more: bool


class RunningSyncInfo(BaseModel):
    """Snapshot of an in-flight run."""
    id: str
    mapping_id: str
    type: SyncType
    started_at: datetime
    progress: SyncProgress
