"""
Shiprocket tracking webhooks

Shiprocket posts status changes for booked shipments. The body is signed with
HMAC-SHA256 (base64) over the raw bytes using SHIPROCKET_WEBHOOK_SECRET.
Carrier statuses are mapped to the storefront's shipping status and appended
to the order timeline; shipment_status (the booking state) is never changed.
"""
import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fulfillment_backend.core.audit_log import ACTION_SHIPMENT_STATUS_UPDATED, log_fulfillment_event
from fulfillment_backend.core.utils import isoformat, utcnow
from fulfillment_backend.services.order_store import OrderStore

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Shiprocket-Signature"

# Checked in order; the first carrier status fragment found wins
STATUS_MAP = (
    (("PENDING", "NEW"), "processing"),
    (("READY", "PICKED"), "processing"),
    (("SHIPPED", "IN TRANSIT", "IN_TRANSIT"), "in_transit"),
    (("OUT FOR DELIVERY", "OUT_FOR_DELIVERY"), "out_for_delivery"),
    (("DELIVERED",), "delivered"),
    (("FAILED", "CANCELLED", "CANCELED"), "cancelled"),
    (("RTO", "RETURN"), "rto"),
)

DEFAULT_SHIPPING_STATUS = "processing"


@dataclass
class WebhookResult:
    processed: bool
    order_id: Optional[str] = None
    shipping_status: Optional[str] = None
    message: Optional[str] = None


def verify_webhook_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """
    Check the base64 HMAC-SHA256 signature of a webhook body.

    Without a configured secret verification is skipped (development only).
    """
    if not secret:
        logger.warning("SHIPROCKET_WEBHOOK_SECRET not set - webhook signature verification skipped")
        return True
    if not signature:
        return False

    digest = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode()
    return hmac.compare_digest(signature.strip().encode(), expected.encode())


def map_carrier_status(carrier_status: Optional[str]) -> str:
    """Map a Shiprocket status string to the storefront shipping status."""
    upper = (carrier_status or "").upper()
    for fragments, status in STATUS_MAP:
        if any(fragment in upper for fragment in fragments):
            return status
    return DEFAULT_SHIPPING_STATUS


def _first(payload: Dict[str, Any], *keys) -> Optional[Any]:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


async def handle_tracking_webhook(
    store: OrderStore,
    payload: Dict[str, Any],
    clock=utcnow,
) -> WebhookResult:
    """
    Record a carrier status update on the matching order.

    The signature must already have been verified by the caller.
    """
    shipment_id = _first(payload, "shipment_id", "shipmentId", "id")
    awb_code = _first(payload, "awb", "awb_code", "tracking_number")
    carrier_status = _first(payload, "current_status", "status", "shipment_status")

    if not shipment_id:
        return WebhookResult(processed=False, message="Ignored - no shipment_id provided")

    order = await store.find_order_by_shipment_id(str(shipment_id))
    if order is None:
        logger.warning(f"[SHIPROCKET_WEBHOOK] No order for shipment {shipment_id}")
        return WebhookResult(processed=False, message="Order not found")

    shipping_status = map_carrier_status(str(carrier_status) if carrier_status else None)
    now_iso = isoformat(clock())

    shipping = order.shipping_metadata
    previous_status = shipping.get("shipping_status")
    shipping.update({
        "shipping_status": shipping_status,
        "last_webhook_status": carrier_status,
        "last_webhook_at": now_iso,
    })
    if awb_code and not shipping.get("awb_code"):
        shipping["awb_code"] = str(awb_code)

    metadata = dict(order.metadata or {})
    metadata["shipping"] = shipping
    timeline = list(metadata.get("shipping_timeline") or [])
    event = {
        "status": shipping_status.upper(),
        "timestamp": now_iso,
        "courier": payload.get("courier_name") or order.courier_name,
        "trackingCode": shipping.get("awb_code"),
    }
    timeline.append({k: v for k, v in event.items() if v is not None})
    metadata["shipping_timeline"] = timeline

    await store.update_order(order.id, {"metadata": metadata})

    entry = log_fulfillment_event(
        ACTION_SHIPMENT_STATUS_UPDATED,
        order.id,
        {
            "shipment_id": str(shipment_id),
            "previous_status": previous_status,
            "shipping_status": shipping_status,
            "status_source": "shiprocket_webhook",
        },
    )
    try:
        await store.write_audit(entry)
    except Exception as e:
        logger.warning(f"[SHIPROCKET_WEBHOOK] Audit log write failed (non-fatal): {e}")

    logger.info(f"[SHIPROCKET_WEBHOOK] Order {order.order_number} -> {shipping_status} ({carrier_status})")
    return WebhookResult(processed=True, order_id=order.id, shipping_status=shipping_status)
