"""Service wiring for the application."""

import logging
from dataclasses import dataclass

import redis.asyncio as redis

from shopify_sync.connectors.shopify import ShopifyClient, ShopifyClientPool
from shopify_sync.connectors.sql import SqlConnector
from shopify_sync.core.config import Settings
from shopify_sync.core.database import Database
from shopify_sync.services.database_writer import DatabaseWriter
from shopify_sync.services.delta_service import DeltaService
from shopify_sync.services.expression import ExpressionEvaluator
from shopify_sync.services.hook_registry import HookRegistry
from shopify_sync.services.mapping_service import MappingService
from shopify_sync.services.mapping_validator import MappingValidator
from shopify_sync.services.preview_service import PreviewService
from shopify_sync.services.scheduler_service import SchedulerService
from shopify_sync.services.shopify_fetcher import ShopifyFetcher
from shopify_sync.services.sync_engine import SyncEngine
from shopify_sync.services.sync_history import SyncHistoryService
from shopify_sync.services.sync_worker import SyncWorker
from shopify_sync.services.transform_engine import LookupResolver, TransformEngine
from shopify_sync.services.webhook_processor import WebhookProcessor
from shopify_sync.services.webhook_queue import WebhookQueueService
from shopify_sync.services.webhook_stats import WebhookStatsService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Every long-lived service, built once per application."""

    settings: Settings
    database: Database
    redis_client: "redis.Redis"
    shopify_pool: ShopifyClientPool
    shopify: ShopifyClient
    sql: SqlConnector
    mappings: MappingService
    validator: MappingValidator
    history: SyncHistoryService
    hooks: HookRegistry
    fetcher: ShopifyFetcher
    transform_engine: TransformEngine
    writer: DatabaseWriter
    sync_engine: SyncEngine
    webhook_stats: WebhookStatsService
    webhook_processor: WebhookProcessor
    webhook_queue: WebhookQueueService
    scheduler: SchedulerService
    sync_worker: SyncWorker
    preview: PreviewService
    delta: DeltaService

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServiceContainer":
        database = Database(settings.mongodb_url, settings.mongodb_db_name)
        redis_client = redis.from_url(settings.redis_url, decode_responses=True)

        shopify_pool = ShopifyClientPool(
            timeout=settings.shopify_request_timeout,
            max_retries=settings.shopify_max_retries,
            backoff_base=settings.shopify_backoff_base,
            backoff_max=settings.shopify_backoff_max,
        )
        shopify = shopify_pool.get(
            settings.shopify_store_domain,
            settings.shopify_access_token,
            api_version=settings.shopify_api_version,
        )
        sql = SqlConnector(settings.database_url)

        mappings = MappingService(database)
        history = SyncHistoryService(
            database,
            max_entries=settings.history_max_entries,
            max_errors=settings.history_max_errors,
        )
        hooks = HookRegistry()

        fetcher = ShopifyFetcher(
            shopify,
            poll_interval=settings.bulk_poll_interval,
            max_poll_interval=settings.bulk_poll_max_interval,
            poll_backoff=settings.bulk_poll_backoff,
            page_size=settings.incremental_page_size,
        )
        transform_engine = TransformEngine(
            sql,
            evaluator=ExpressionEvaluator(max_length=settings.expression_max_length),
            lookup_resolver=LookupResolver(
                sql,
                max_table_size=settings.lookup_max_rows,
                case_sensitive=settings.lookup_case_sensitive,
            ),
        )
        writer = DatabaseWriter(sql, chunk_size=settings.writer_chunk_size)
        validator = MappingValidator(sql, evaluator=transform_engine.evaluator)

        sync_engine = SyncEngine(
            fetcher,
            transform_engine,
            writer,
            history,
            mappings,
            hooks,
            bulk_timeout=settings.bulk_operation_timeout,
            lookback_minutes=settings.incremental_lookback_minutes,
            progress_interval_full=settings.progress_interval_full,
            progress_interval_incremental=settings.progress_interval_incremental,
            max_errors=settings.history_max_errors,
        )

        webhook_stats = WebhookStatsService(database, max_entries=settings.webhook_history_max_entries)
        webhook_processor = WebhookProcessor(mappings, transform_engine, writer, sync_engine)
        webhook_queue = WebhookQueueService(
            redis_client,
            database,
            webhook_processor,
            webhook_stats,
            concurrency=settings.webhook_concurrency,
            rate_limit=settings.webhook_rate_limit,
            rate_window=settings.webhook_rate_window,
            max_attempts=settings.webhook_max_attempts,
            retry_base_delay=settings.webhook_retry_base_delay,
            dedupe_ttl=settings.webhook_dedupe_ttl,
        )
        webhook_stats.set_queue_stats_getter(webhook_queue.get_queue_stats)

        scheduler = SchedulerService(
            redis_client,
            min_incremental_interval=settings.scheduler_min_incremental_interval,
            min_full_interval=settings.scheduler_min_full_interval,
            failure_ttl=settings.scheduler_failure_ttl,
            alert_threshold=settings.scheduler_failure_alert_threshold,
        )
        sync_worker = SyncWorker(scheduler, sync_engine)

        return cls(
            settings=settings,
            database=database,
            redis_client=redis_client,
            shopify_pool=shopify_pool,
            shopify=shopify,
            sql=sql,
            mappings=mappings,
            validator=validator,
            history=history,
            hooks=hooks,
            fetcher=fetcher,
            transform_engine=transform_engine,
            writer=writer,
            sync_engine=sync_engine,
            webhook_stats=webhook_stats,
            webhook_processor=webhook_processor,
            webhook_queue=webhook_queue,
            scheduler=scheduler,
            sync_worker=sync_worker,
            preview=PreviewService(fetcher, transform_engine, mappings, validator=validator),
            delta=DeltaService(fetcher, sql, mappings),
        )

    async def startup(self):
        """Connect stores and start background workers."""
        await self.database.connect()

        recovered = await self.history.recover_stale_syncs()
        if recovered:
            logger.warning(f"Marked {recovered} interrupted sync runs as failed")

        await self.webhook_queue.start()

        if self.settings.scheduler_enabled:
            await self.scheduler.start()
            await self.sync_worker.start()
            missed = await self.scheduler.recover_missed_jobs()
            if missed:
                logger.info(f"Queued {missed} missed scheduled syncs")

    async def shutdown(self):
        """Stop workers, then close connections."""
        if self.settings.scheduler_enabled:
            await self.sync_worker.stop()
            await self.scheduler.shutdown()

        await self.webhook_queue.stop()

        for running in self.sync_engine.list_running_syncs():
            self.sync_engine.cancel(running.mapping_id, "Service shutting down")

        await self.shopify_pool.close_all()
        await self.sql.close()
        await self.redis_client.aclose()
        await self.database.disconnect()
