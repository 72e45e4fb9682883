"""Health check endpoints."""

from fastapi import APIRouter, Depends
from datetime import datetime

from shopify_sync.api.dependencies import get_container
from shopify_sync.core.container import ServiceContainer

router = APIRouter()


@router.get("/health")
async def health_check(container: ServiceContainer = Depends(get_container)):
    """Basic health check."""
    settings = container.settings
    return {
        "status": "healthy",
        "service": settings.service_name,
        "environment": settings.environment,
        "timestamp": datetime.utcnow().isoformat(),
    }


@router.get("/health/detailed")
async def detailed_health_check(container: ServiceContainer = Depends(get_container)):
    """Detailed health check covering every backing store and worker."""
    settings = container.settings
    health_status = {
        "status": "healthy",
        "service": settings.service_name,
        "environment": settings.environment,
        "timestamp": datetime.utcnow().isoformat(),
        "checks": {
            "database": {"status": "unknown"},
            "redis": {"status": "unknown"},
            "target_database": {"status": "unknown"},
            "webhook_queue": {"status": "unknown"},
            "scheduler": {"status": "unknown"},
        },
        "running_syncs": len(container.sync_engine.list_running_syncs()),
        "hooks": container.hooks.summary(),
    }
    checks = health_status["checks"]

    # MongoDB
    try:
        if await container.database.ping():
            checks["database"]["status"] = "healthy"
        else:
            checks["database"]["status"] = "disconnected"
            health_status["status"] = "degraded"
    except Exception as e:
        checks["database"]["status"] = "unhealthy"
        checks["database"]["error"] = str(e)
        health_status["status"] = "unhealthy"

    # Redis
    try:
        await container.redis_client.ping()
        checks["redis"]["status"] = "healthy"
    except Exception as e:
        checks["redis"]["status"] = "unhealthy"
        checks["redis"]["error"] = str(e)
        health_status["status"] = "unhealthy"

    # Target database
    result = await container.sql.test_connection()
    if result.get("success"):
        checks["target_database"]["status"] = "healthy"
    else:
        checks["target_database"]["status"] = "unhealthy"
        checks["target_database"]["error"] = result.get("message")
        health_status["status"] = "unhealthy"

    if container.webhook_queue.is_available():
        checks["webhook_queue"]["status"] = "healthy"
        checks["webhook_queue"]["queue"] = (await container.webhook_queue.get_queue_stats()).model_dump()
    else:
        checks["webhook_queue"]["status"] = "stopped"
        if health_status["status"] == "healthy":
            health_status["status"] = "degraded"

    if not settings.scheduler_enabled:
        checks["scheduler"]["status"] = "disabled"
    elif container.scheduler.scheduler.running and container.sync_worker.is_available():
        checks["scheduler"]["status"] = "healthy"
    else:
        checks["scheduler"]["status"] = "stopped"
        if health_status["status"] == "healthy":
            health_status["status"] = "degraded"

    return health_status
