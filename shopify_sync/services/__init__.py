"""Services module for the sync engine."""

from .database_writer import DatabaseWriter, WriteResult
from .delta_service import DeltaService
from .expression import ExpressionEvaluator
from .hook_registry import HookRegistry
from .mapping_service import MappingService
from .preview_service import PreviewService
from .scheduler_service import SchedulerService
from .shopify_fetcher import ShopifyFetcher
from .sync_engine import SyncEngine
from .sync_history import SyncHistoryService
from .sync_worker import SyncWorker
from .transform_engine import TransformEngine
from .webhook_processor import WebhookProcessor
from .webhook_queue import WebhookQueueService
from .webhook_stats import WebhookStatsService

__all__ = [
    "DatabaseWriter",
    "WriteResult",
    "DeltaService",
    "ExpressionEvaluator",
    "HookRegistry",
    "MappingService",
    "PreviewService",
    "SchedulerService",
    "ShopifyFetcher",
    "SyncEngine",
    "SyncHistoryService",
    "SyncWorker",
    "TransformEngine",
    "WebhookProcessor",
    "WebhookQueueService",
    "WebhookStatsService",
]
