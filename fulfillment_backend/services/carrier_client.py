"""
Shiprocket API client

Implements the carrier operations used by fulfillment:
- Shipment creation (adhoc order)
- AWB assignment
- Tracking lookup
- Reverse pickup (returns)
- Courier serviceability / rates

Every call carries a bearer token from TokenManager. A 401 forces one token
refresh and one resend; a second 401 raises AuthenticationError. Other non-2xx
responses are returned as CarrierResponse values so callers can persist the
status and body. Transport failures go through retry_with_backoff.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from fulfillment_backend.core.config import ShippingConfig
from fulfillment_backend.core.exceptions import (
    AuthenticationError,
    CarrierAPIError,
    CarrierResponseParseError,
)
from fulfillment_backend.services.retry import (
    CONNECT_ERROR,
    NETWORK_ERROR,
    is_retryable_error,
    is_safe_to_resend,
    retry_with_backoff,
)
from fulfillment_backend.services.token_manager import TokenManager

logger = logging.getLogger(__name__)

# API endpoints
ASSIGN_AWB_PATH = "/external/courier/assign/awb"
ORDER_DETAILS_PATH = "/external/orders/show/{shipment_id}"
RETURN_ORDER_PATH = "/external/orders/create/return"
SERVICEABILITY_PATH = "/external/courier/serviceability/"


def _present(value: Any) -> Optional[str]:
    """Carrier identifiers arrive as numbers or strings; 0 and "" mean absent."""
    if value is None or value == "" or value == 0 or value is False:
        return None
    return str(value).strip() or None


def _first(sources, *keys) -> Any:
    for source in sources:
        for key in keys:
            value = source.get(key)
            if value not in (None, "", 0):
                return value
    return None


@dataclass
class CarrierResponse:
    """Outcome of one carrier call, successful or not."""
    http_status: int
    raw_body: Any
    shipment_id: Optional[str] = None
    awb_code: Optional[str] = None
    courier_name: Optional[str] = None
    courier_company_id: Optional[int] = None
    tracking_url: Optional[str] = None
    expected_delivery: Optional[str] = None
    status: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.http_status < 300

    @property
    def message(self) -> Optional[str]:
        if isinstance(self.raw_body, dict):
            message = self.raw_body.get("message")
            return str(message) if message else None
        return None

    @classmethod
    def from_body(cls, http_status: int, body: Any) -> "CarrierResponse":
        if not isinstance(body, dict):
            return cls(http_status=http_status, raw_body=body)

        # AWB assignment nests its result under response.data; tracking under data
        sources = [body]
        nested = body.get("response")
        if isinstance(nested, dict) and isinstance(nested.get("data"), dict):
            sources.append(nested["data"])
        if isinstance(body.get("data"), dict):
            sources.append(body["data"])

        courier_company_id = _first(sources, "courier_company_id", "courierCompanyId")
        try:
            courier_company_id = int(courier_company_id) if courier_company_id is not None else None
        except (TypeError, ValueError):
            courier_company_id = None

        status = _first(sources, "status", "current_status", "shipment_status")

        return cls(
            http_status=http_status,
            raw_body=body,
            shipment_id=_present(_first(sources, "shipment_id", "shipmentId")),
            awb_code=_present(_first(sources, "awb_code", "awbCode", "awb")),
            courier_name=_present(_first(sources, "courier_name", "courierName")),
            courier_company_id=courier_company_id,
            tracking_url=_present(_first(sources, "tracking_url", "trackingUrl")),
            expected_delivery=_present(_first(sources, "expected_delivery_date", "etd")),
            status=str(status) if isinstance(status, str) else None,
        )


class ShipmentClient:
    """
    Shiprocket REST client.

    Usage:
        client = ShipmentClient(config, token_manager)
        response = await client.create_order(payload)
        await client.close()
    """

    def __init__(
        self,
        config: ShippingConfig,
        token_manager: TokenManager,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable = asyncio.sleep,
    ):
        self.config = config
        self.token_manager = token_manager
        self._http_client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=self.config.timeout_seconds,
                headers={"Content-Type": "application/json"},
            )
        return self._http_client

    async def close(self):
        """Close HTTP client if this client created it."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}{path}"

    async def _send(
        self,
        method: str,
        url: str,
        token: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> httpx.Response:
        client = await self._get_http_client()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        try:
            response = await client.request(
                method,
                url,
                headers=headers,
                json=data,
                params=params,
                timeout=self.config.timeout_seconds,
            )
        except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as e:
            logger.error(f"Shiprocket {method} {url} could not connect: {e}")
            raise CarrierAPIError(f"Could not connect to Shiprocket: {e}", code=CONNECT_ERROR)
        except httpx.RequestError as e:
            logger.error(f"Shiprocket {method} {url} failed: {e}")
            raise CarrierAPIError(f"Network error calling Shiprocket: {e}", code=NETWORK_ERROR)

        logger.debug(f"Shiprocket API {method} {url} -> {response.status_code}")
        return response

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        text = response.text
        if not text or not text.strip():
            return {}
        try:
            return response.json()
        except ValueError:
            raise CarrierResponseParseError(
                "Invalid JSON response from Shiprocket",
                status_code=response.status_code,
                body=text[:500],
            )

    async def _authorized_request(
        self,
        method: str,
        url: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
    ) -> CarrierResponse:
        token = await self.token_manager.authenticate()
        response = await self._send(method, url, token, data=data, params=params)

        if response.status_code == 401:
            logger.warning(f"Shiprocket returned 401 for {method} {url}, refreshing token")
            token = await self.token_manager.force_refresh(rejected_token=token)
            response = await self._send(method, url, token, data=data, params=params)
            if response.status_code == 401:
                raise AuthenticationError(
                    "Shiprocket rejected a freshly issued token",
                    code="AUTH_REJECTED",
                    details={"status": 401, "url": url},
                )

        body = self._parse_body(response)
        result = CarrierResponse.from_body(response.status_code, body)
        if not result.ok:
            logger.error(
                f"Shiprocket API error: {method} {url} -> {response.status_code} "
                f"{str(body)[:500]}"
            )
        return result

    async def _call(
        self,
        method: str,
        path_or_url: str,
        data: Optional[Dict] = None,
        params: Optional[Dict] = None,
        is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    ) -> CarrierResponse:
        url = path_or_url if path_or_url.startswith("http") else self._url(path_or_url)
        return await retry_with_backoff(
            lambda: self._authorized_request(method, url, data=data, params=params),
            max_attempts=self.config.max_attempts,
            initial_delay=self.config.retry_initial_delay,
            is_retryable=is_retryable,
            sleep=self._sleep,
        )

    async def create_order(self, payload) -> CarrierResponse:
        """
        Create an adhoc order (shipment) in Shiprocket.

        Only resent when the connection was never established, so a
        timed-out create cannot book twice.
        """
        data = payload.to_dict() if hasattr(payload, "to_dict") else dict(payload)
        return await self._call(
            "POST",
            self.config.create_order_url,
            data=data,
            is_retryable=is_safe_to_resend,
        )

    async def generate_awb(self, shipment_id: str, courier_id: Optional[int] = None) -> CarrierResponse:
        """Assign an AWB (tracking code) to an existing shipment."""
        data: Dict[str, Any] = {"shipment_id": _as_carrier_id(shipment_id)}
        if courier_id:
            data["courier_id"] = courier_id
        return await self._call("POST", ASSIGN_AWB_PATH, data=data)

    async def track_shipment(self, shipment_id: str) -> CarrierResponse:
        """Fetch shipment details including the current carrier status."""
        return await self._call("GET", ORDER_DETAILS_PATH.format(shipment_id=shipment_id))

    async def create_reverse_pickup(self, payload: Dict[str, Any]) -> CarrierResponse:
        """Create a return (reverse pickup) order."""
        return await self._call(
            "POST",
            RETURN_ORDER_PATH,
            data=dict(payload),
            is_retryable=is_safe_to_resend,
        )

    async def check_serviceability(self, params: Dict[str, Any]) -> CarrierResponse:
        """Query available couriers and their rates between two pincodes."""
        return await self._call(
            "GET",
            SERVICEABILITY_PATH,
            params={k: str(v) for k, v in params.items()},
        )


def _as_carrier_id(value: Any) -> Any:
    """Shiprocket expects numeric ids where the id is numeric."""
    text = str(value).strip()
    return int(text) if text.isdigit() else text
