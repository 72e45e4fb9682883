"""Configuration settings for the Shopify sync service."""

from typing import Optional
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings."""

    # Service Configuration
    service_name: str = "shopify-sync-service"
    port: int = 8000
    environment: str = "development"
    debug: bool = False

    # Shopify
    shopify_store_domain: str
    shopify_access_token: str
    shopify_api_version: str = "2024-01"
    shopify_webhook_secret: str
    shopify_request_timeout: float = 30.0
    shopify_max_retries: int = 3
    shopify_backoff_base: float = 1.0
    shopify_backoff_max: float = 30.0

    # Database
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "shopify_sync"
    database_url: str = "postgresql+asyncpg://localhost:5432/shopify"
    redis_url: str = "redis://localhost:6379"

    # Bulk operations
    bulk_operation_timeout: float = 600.0  # 10 minutes
    bulk_poll_interval: float = 3.0
    bulk_poll_max_interval: float = 30.0
    bulk_poll_backoff: float = 1.5

    # Incremental sync
    incremental_page_size: int = 250
    incremental_lookback_minutes: int = 15

    # Progress reporting (records between events)
    progress_interval_full: int = 100
    progress_interval_incremental: int = 50

    # Transform / write
    writer_chunk_size: int = 100
    lookup_max_rows: int = 10000
    lookup_case_sensitive: bool = False
    expression_max_length: int = 500

    # History
    history_max_entries: int = 1000
    history_max_errors: int = 50
    webhook_history_max_entries: int = 1000

    # Webhooks
    webhook_concurrency: int = 5
    webhook_rate_limit: int = 10
    webhook_rate_window: float = 1.0
    webhook_max_attempts: int = 3
    webhook_retry_base_delay: float = 1.0
    webhook_dedupe_ttl: int = 86400  # 24 hours

    # Scheduler
    scheduler_enabled: bool = True
    scheduler_min_incremental_interval: int = 300  # 5 minutes
    scheduler_min_full_interval: int = 21600  # 6 hours
    scheduler_failure_ttl: int = 86400
    scheduler_failure_alert_threshold: int = 3

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8080"]

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Mongo collection names
COLLECTIONS = {
    "mappings": "mappings",
    "sync_runs": "sync_runs",
    "webhook_history": "webhook_history",
    "webhook_jobs": "webhook_jobs",
}
