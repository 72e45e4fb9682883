"""Main FastAPI application."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Optional
import logging

from shopify_sync.core.config import Settings, get_settings
from shopify_sync.core.container import ServiceContainer
from shopify_sync.api import health, mappings, schedules, syncs, webhooks
from shopify_sync.utils.logging import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    settings: Settings = app.state.settings

    # Startup
    logger.info("Starting up shopify sync service...")
    logger.info(f"Service: {settings.service_name}")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Port: {settings.port}")

    container = ServiceContainer.from_settings(settings)
    app.state.container = container
    await container.startup()

    yield

    # Shutdown
    logger.info("Shutting down shopify sync service...")
    await container.shutdown()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title="Shopify Sync Service",
        description="Keeps relational tables in step with Shopify through bulk, incremental and webhook syncs",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, tags=["health"])
    app.include_router(
        webhooks.router,
        prefix="/api/v1/webhooks",
        tags=["webhooks"]
    )
    app.include_router(
        mappings.router,
        prefix="/api/v1/mappings",
        tags=["mappings"]
    )
    app.include_router(
        syncs.router,
        prefix="/api/v1/syncs",
        tags=["syncs"]
    )
    app.include_router(
        schedules.router,
        prefix="/api/v1/schedules",
        tags=["schedules"]
    )
    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "shopify_sync.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=settings.port,
        reload=settings.debug,
    )
