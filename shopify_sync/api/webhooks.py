"""Shopify webhook receiver and webhook statistics."""

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from typing import List, Optional
import hashlib
import json
import logging
import time

from shopify_sync.api.dependencies import get_container, get_webhook_queue, get_webhook_stats
from shopify_sync.core.container import ServiceContainer
from shopify_sync.core.exceptions import WebhookVerificationError
from shopify_sync.models import WebhookHistoryEntry, WebhookJob, WebhookStats
from shopify_sync.services.webhook_queue import WebhookQueueService
from shopify_sync.services.webhook_stats import WebhookStatsService
from shopify_sync.utils.crypto import verify_hmac

logger = logging.getLogger(__name__)
router = APIRouter()


def derive_webhook_id(topic: Optional[str], shop_domain: Optional[str], body: bytes) -> str:
    """Stable id for deliveries without X-Shopify-Webhook-Id, so redeliveries dedupe."""
    digest = hashlib.sha256()
    for part in (topic or "", shop_domain or ""):
        digest.update(part.encode("utf-8"))
        digest.update(b"\n")
    digest.update(body)
    return f"derived-{digest.hexdigest()[:32]}"


def _verify_signature(body: bytes, hmac_header: Optional[str], secret: str) -> None:
    if not hmac_header:
        raise WebhookVerificationError("Missing HMAC signature")
    if not verify_hmac(body, hmac_header, secret):
        raise WebhookVerificationError("Invalid HMAC signature")


@router.head("/shopify")
async def shopify_webhook_head():
    """Shopify checks the endpoint with HEAD before delivering."""
    return Response(status_code=status.HTTP_200_OK)


@router.post("/shopify")
async def handle_shopify_webhook(
    request: Request,
    x_shopify_hmac_sha256: Optional[str] = Header(None),
    x_shopify_topic: Optional[str] = Header(None),
    x_shopify_shop_domain: Optional[str] = Header(None),
    x_shopify_webhook_id: Optional[str] = Header(None),
    container: ServiceContainer = Depends(get_container),
):
    """Verify, deduplicate and queue a Shopify webhook."""
    start = time.perf_counter()
    # Signature is computed over the exact bytes received
    body = await request.body()

    secret = container.settings.shopify_webhook_secret
    if not secret:
        logger.error("Webhook secret not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured"
        )

    try:
        _verify_signature(body, x_shopify_hmac_sha256, secret)
    except WebhookVerificationError as e:
        logger.warning(f"Webhook rejected ({x_shopify_topic}): {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e)
        )

    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.error("Invalid JSON in webhook payload")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Webhook payload must be a JSON object"
        )

    job = WebhookJob(
        id=x_shopify_webhook_id or derive_webhook_id(x_shopify_topic, x_shopify_shop_domain, body),
        topic=x_shopify_topic or "unknown",
        shop_domain=x_shopify_shop_domain or "unknown",
        payload=payload,
    )
    logger.info(f"Received {job.topic} from {job.shop_domain}")

    queue = container.webhook_queue
    if queue.is_available():
        try:
            accepted = await queue.receive(job)
        except Exception as e:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"Webhook could not be stored: {e}"
            )
        return {
            "success": True,
            "queued": accepted,
            "duplicate": not accepted,
            "webhook_id": job.id,
        }

    # Workers not running: process inline so the delivery is not lost
    if await queue.is_duplicate(job.id):
        logger.info(f"Duplicate webhook {job.id} ({job.topic}) dropped")
        return {
            "success": True,
            "queued": False,
            "duplicate": True,
            "webhook_id": job.id,
        }

    try:
        result = await container.webhook_processor.process(job)
    except Exception as e:
        logger.error(f"Inline processing of webhook {job.id} failed: {e}")
        result = None
        error = str(e)
    else:
        error = None if result.success else "; ".join(result.errors) or "Webhook processing failed"

    if error is not None:
        # Let Shopify redeliver
        await queue.forget(job.id)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=error
        )

    logger.info(
        f"Processed {job.topic} inline: {result.records_written} records "
        f"({int((time.perf_counter() - start) * 1000)}ms)"
    )
    return {
        "success": result.success,
        "queued": False,
        "duplicate": False,
        "webhook_id": job.id,
        "records_written": result.records_written,
        "processing_ms": result.processing_ms,
    }


@router.get("/stats", response_model=WebhookStats)
async def get_webhook_stats(service: WebhookStatsService = Depends(get_webhook_stats)):
    """Today's webhook counters, per-topic totals and queue depth."""
    return await service.get_stats()


@router.get("/history", response_model=List[WebhookHistoryEntry])
async def get_webhook_history(
    limit: int = Query(100, ge=1, le=1000),
    service: WebhookStatsService = Depends(get_webhook_stats),
):
    """Most recent processed webhooks."""
    return await service.get_history(limit)


@router.get("/dead-letters")
async def get_dead_letters(
    limit: int = Query(100, ge=1, le=1000),
    queue: WebhookQueueService = Depends(get_webhook_queue),
):
    """Webhooks that failed every attempt."""
    return await queue.get_dead_letters(limit)


@router.post("/dead-letters/{webhook_id}/retry")
async def retry_dead_letter(webhook_id: str, queue: WebhookQueueService = Depends(get_webhook_queue)):
    if not await queue.retry_dead_letter(webhook_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Dead-lettered webhook not found: {webhook_id}"
        )
    return {"success": True, "message": "Webhook requeued"}
