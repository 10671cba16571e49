"""
API dependencies
"""
import asyncio
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, status

from fulfillment_backend.core.config import get_shipping_config, settings
from fulfillment_backend.core.redis_client import get_key_value_store
from fulfillment_backend.services.carrier_client import ShipmentClient
from fulfillment_backend.services.fulfillment import FulfillmentOrchestrator
from fulfillment_backend.services.order_store import OrderStore, SQLAlchemyOrderStore
from fulfillment_backend.services.token_manager import TokenManager

logger = logging.getLogger(__name__)

# Process-wide instances (initialized lazily)
_order_store: Optional[OrderStore] = None
_token_manager: Optional[TokenManager] = None
_shipment_client: Optional[ShipmentClient] = None
_orchestrator: Optional[FulfillmentOrchestrator] = None
_orchestrator_lock = asyncio.Lock()


def get_order_store() -> OrderStore:
    global _order_store
    if _order_store is None:
        _order_store = SQLAlchemyOrderStore()
    return _order_store


async def get_orchestrator() -> FulfillmentOrchestrator:
    """Shared orchestrator so the per-order locks and token cache are process-wide."""
    global _token_manager, _shipment_client, _orchestrator

    if _orchestrator is not None:
        return _orchestrator

    async with _orchestrator_lock:
        if _orchestrator is None:
            config = get_shipping_config()
            kv_store = await get_key_value_store()
            _token_manager = TokenManager(config, kv_store)
            _shipment_client = ShipmentClient(config, _token_manager)
            _orchestrator = FulfillmentOrchestrator(
                config, get_order_store(), _shipment_client, kv_store=kv_store
            )
            logger.info("Fulfillment orchestrator initialized")
    return _orchestrator


async def close_fulfillment_clients():
    """Close carrier HTTP clients on shutdown."""
    global _token_manager, _shipment_client, _orchestrator
    if _shipment_client:
        await _shipment_client.close()
    if _token_manager:
        await _token_manager.close()
    _token_manager = None
    _shipment_client = None
    _orchestrator = None


async def require_system_token(
    x_system_token: Optional[str] = Header(None, alias="X-System-Token"),
) -> None:
    """Require the internal system token used by the payment path and admin tools."""
    expected = settings.SYSTEM_API_TOKEN
    if not expected:
        logger.error("SYSTEM_API_TOKEN not set; rejecting internal fulfillment call")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="System token not configured",
        )
    if not x_system_token or not hmac.compare_digest(x_system_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid system token",
        )
