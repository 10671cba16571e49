"""
Webhook Routes

Shiprocket tracking webhook. Always answers 200 once the signature checks
out so Shiprocket does not keep redelivering events we cannot match.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from fulfillment_backend.api.deps import get_order_store
from fulfillment_backend.core.config import get_shipping_config
from fulfillment_backend.schemas.fulfillment import WebhookResponse
from fulfillment_backend.services.order_store import OrderStore
from fulfillment_backend.services.webhooks import (
    SIGNATURE_HEADER,
    handle_tracking_webhook,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/shiprocket", response_model=WebhookResponse)
async def handle_shiprocket_webhook(
    request: Request,
    store: OrderStore = Depends(get_order_store),
):
    """Record a Shiprocket shipment status change."""
    body = await request.body()

    signature = request.headers.get(SIGNATURE_HEADER)
    if not verify_webhook_signature(body, signature, get_shipping_config().webhook_secret):
        logger.warning("Invalid Shiprocket webhook signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError as e:
        logger.error(f"Failed to parse Shiprocket webhook payload: {e}")
        return WebhookResponse(success=False, message="Invalid JSON")

    if not isinstance(payload, dict):
        return WebhookResponse(success=False, message="Unexpected payload shape")

    result = await handle_tracking_webhook(store, payload)
    return WebhookResponse(
        success=result.processed,
        order_id=result.order_id,
        shipping_status=result.shipping_status,
        message=result.message,
    )
