"""Sync hook models.

Hooks let custom code run at fixed points of a sync: backups before the run,
thumbnail generation after it, and so on.
"""

import logging
from typing import Optional, Any, Awaitable, Callable, Dict, List
from pydantic import BaseModel, Field
from enum import Enum

from shopify_sync.models.mapping import MappingConfig
from shopify_sync.models.sync import SyncType


class HookPhase(str, Enum):
    PRE_SYNC = "pre-sync"  # before fetching
    POST_FETCH = "post-fetch"  # raw records available
    POST_TRANSFORM = "post-transform"  # rows ready, not yet written
    POST_WRITE = "post-write"  # rows written
    POST_SYNC = "post-sync"  # run completed


class HookStats(BaseModel):
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0


class HookContext(BaseModel):
    """Data handed to a hook. Fields are filled in as the run progresses."""
    mapping_id: str
    mapping_config: MappingConfig
    sync_type: SyncType
    dry_run: bool = False
    run_id: str
    logger: Optional[logging.Logger] = None

    records: Optional[List[Dict[str, Any]]] = None
    transformed_rows: Optional[List[Dict[str, Any]]] = None
    stats: Optional[HookStats] = None
    errors: Optional[List[str]] = None

    class Config:
        arbitrary_types_allowed = True


HookHandler = Callable[[HookContext], Awaitable[None]]


class SyncHook(BaseModel):
    id: str
    phase: HookPhase
    priority: int = 100  # lower runs first
    name: str
    description: Optional[str] = None
    handler: HookHandler
    enabled: bool = True
    only_for_mappings: Optional[List[str]] = None
    only_for_sync_types: Optional[List[SyncType]] = None


class HookResult(BaseModel):
    hook_id: str
    hook_name: str
    phase: HookPhase
    success: bool
    duration_ms: float = 0
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

