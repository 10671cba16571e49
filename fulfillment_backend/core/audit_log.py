"""
Audit logging for fulfillment outcomes

Every booking outcome is written to the structured "audit" logger so a failed
shipment can be investigated without the database. The orchestrator also
persists the same entry through the order store.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fulfillment_backend.core.config import settings

# Structured audit logger
audit_logger = logging.getLogger("audit")
audit_logger.setLevel(logging.INFO)

# Action categories
ACTION_SHIPMENT_BOOKED = "shipment_booked"
ACTION_SHIPMENT_VALIDATION_FAILED = "shipment_validation_failed"
ACTION_SHIPMENT_FAILED = "shipment_failed"
ACTION_SHIPMENT_CONFIG_ERROR = "shipment_configuration_error"
ACTION_AWB_ASSIGNED = "awb_assigned"
ACTION_REVERSE_PICKUP_REQUESTED = "reverse_pickup_requested"
ACTION_SHIPMENT_STATUS_UPDATED = "shipment_status_updated"

SENSITIVE_KEYS = ("password", "secret", "token", "key", "credential", "authorization")


def build_audit_entry(
    action: str,
    order_id: Any,
    details: Optional[Dict[str, Any]] = None,
    success: bool = True,
) -> Dict[str, Any]:
    """Build the structured audit entry with sensitive fields filtered out."""
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "target_resource": "orders",
        "target_id": str(order_id) if order_id is not None else None,
        "success": success,
        "environment": settings.ENVIRONMENT,
    }

    if details:
        entry["details"] = {
            k: v for k, v in details.items()
            if k.lower() not in SENSITIVE_KEYS
        }
    else:
        entry["details"] = {}

    if not success:
        entry["details"]["requires_attention"] = True

    return entry


def log_fulfillment_event(
    action: str,
    order_id: Any,
    details: Optional[Dict[str, Any]] = None,
    success: bool = True,
) -> Dict[str, Any]:
    """
    Log a fulfillment outcome.

    Args:
        action: Action identifier (e.g., "shipment_booked")
        order_id: Order the outcome belongs to
        details: Errors, courier, tracking code and other investigation context
        success: Whether the outcome is a success

    Returns:
        The structured entry that was logged
    """
    entry = build_audit_entry(action, order_id, details, success)

    if success:
        audit_logger.info(f"AUDIT: {action} on orders/{order_id}", extra={"audit": entry})
    else:
        audit_logger.warning(f"AUDIT FAILED: {action} on orders/{order_id}", extra={"audit": entry})

    return entry
