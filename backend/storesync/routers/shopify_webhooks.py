"""Shopify webhook receiver.

WHAT:
    Single endpoint for every subscribed Shopify topic. Reads the raw body
    (the bytes Shopify signed) and hands the event to WebhookProcessor.

WHY:
    Verification, routing, idempotency and the audit log live in
    WebhookProcessor; this router only maps outcomes to status codes so
    Shopify knows whether to redeliver:
        200 processed or unhandled topic
        400 missing X-Shopify-Topic or invalid JSON
        401 HMAC verification failed
        500 handler failed (Shopify retries the delivery)

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https
    - storesync/services/webhook_processor.py
"""

import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from storesync.deps import get_record_store, get_shopify_service
from storesync.services.record_store import RecordStore
from storesync.services.shopify_sync_service import ShopifyService
from storesync.services.webhook_processor import (
    SHOP_DOMAIN_HEADER,
    TOPIC_HEADER,
    WebhookEvent,
    WebhookVerificationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/shopify", tags=["Shopify Webhooks"])


@router.post("")
async def receive_webhook(
    request: Request,
    service: ShopifyService = Depends(get_shopify_service),
) -> Dict[str, Any]:
    """Receive one Shopify webhook delivery."""
    topic = request.headers.get(TOPIC_HEADER)
    if not topic:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing X-Shopify-Topic header")

    body = await request.body()
    try:
        payload = json.loads(body) if body else {}
    except json.JSONDecodeError:
        logger.warning(f"[SHOPIFY_WEBHOOK] Invalid JSON body for {topic}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")

    event = WebhookEvent(
        topic=topic,
        shop_domain=request.headers.get(SHOP_DOMAIN_HEADER),
        payload=payload,
        headers=dict(request.headers),
        raw_body=body,
    )

    try:
        outcome = await service.process_webhook(event)
    except WebhookVerificationError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))
    except Exception as e:
        # Already logged, audited and reported by the processor
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Webhook processing failed: {e}",
        )

    return {"success": True, "topic": topic, "status": outcome}


@router.get("/logs")
def list_webhook_logs(
    topic: Optional[str] = Query(default=None),
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    store: RecordStore = Depends(get_record_store),
) -> List[Dict[str, Any]]:
    """Most recent webhook audit entries, newest first."""
    return store.list_webhook_logs(topic=topic, status=status_filter, limit=limit)
