"""API dependencies."""

from fastapi import Request

from shopify_sync.core.container import ServiceContainer
from shopify_sync.services.delta_service import DeltaService
from shopify_sync.services.mapping_service import MappingService
from shopify_sync.services.mapping_validator import MappingValidator
from shopify_sync.services.preview_service import PreviewService
from shopify_sync.services.scheduler_service import SchedulerService
from shopify_sync.services.sync_engine import SyncEngine
from shopify_sync.services.sync_history import SyncHistoryService
from shopify_sync.services.webhook_queue import WebhookQueueService
from shopify_sync.services.webhook_stats import WebhookStatsService


def get_container(request: Request) -> ServiceContainer:
    """Service container created by the application lifespan."""
    return request.app.state.container


# Service dependencies
def get_sync_engine(request: Request) -> SyncEngine:
    return get_container(request).sync_engine


def get_sync_history(request: Request) -> SyncHistoryService:
    return get_container(request).history


def get_mapping_service(request: Request) -> MappingService:
    return get_container(request).mappings


def get_mapping_validator(request: Request) -> MappingValidator:
    return get_container(request).validator


def get_scheduler(request: Request) -> SchedulerService:
    return get_container(request).scheduler


def get_webhook_queue(request: Request) -> WebhookQueueService:
    return get_container(request).webhook_queue


def get_webhook_stats(request: Request) -> WebhookStatsService:
    return get_container(request).webhook_stats


def get_preview_service(request: Request) -> PreviewService:
    return get_container(request).preview


def get_delta_service(request: Request) -> DeltaService:
    return get_container(request).delta
