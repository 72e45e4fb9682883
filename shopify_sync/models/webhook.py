"""Webhook job and statistics models."""

from datetime import datetime
from typing import Optional, Any, Dict, List
from pydantic import BaseModel, Field
from enum import Enum


class WebhookStatus(str, Enum):
    """Webhook processing status."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRYING = "retrying"


class WebhookJob(BaseModel):
    """A verified webhook waiting to be processed."""
    id: str  # X-Shopify-Webhook-Id
    topic: str  # products/update
    shop_domain: str
    payload: Dict[str, Any]
    received_at: datetime = Field(default_factory=datetime.utcnow)
    attempts: int = 0


class WebhookProcessResult(BaseModel):
    webhook_id: str
    topic: str
    success: bool
    mappings_processed: List[str] = Field(default_factory=list)
    records_written: int = 0
    errors: List[str] = Field(default_factory=list)
    processing_ms: int = 0


class WebhookHistoryEntry(BaseModel):
    id: Optional[str] = Field(default=None, alias="_id")
    webhook_id: str
    topic: str
    shop_domain: str
    received_at: datetime
    processed_at: Optional[datetime] = None
    status: WebhookStatus
    mappings_processed: List[str] = Field(default_factory=list)
    records_written: int = 0
    processing_ms: int = 0
    attempts: int = 1
    error: Optional[str] = None

    class Config:
        populate_by_name = True
        json_encoders = {
            datetime: lambda v: v.isoformat()
        }


class WebhookDayStats(BaseModel):
    received: int = 0
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    avg_processing_ms: float = 0


class WebhookTopicStats(BaseModel):
    received: int = 0
    processed: int = 0
    failed: int = 0


class WebhookQueueStats(BaseModel):
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    failed: int = 0


class WebhookStats(BaseModel):
    today: WebhookDayStats = Field(default_factory=WebhookDayStats)
    by_topic: Dict[str, WebhookTopicStats] = Field(default_factory=dict)
    queue: WebhookQueueStats = Field(default_factory=WebhookQueueStats)
