"""
Shiprocket shipping rate calculator

Calculates the INTERNAL shipping cost we pay the carrier. Customers are not
charged this amount; it is stored on the order for margin reporting. Every
failure is reported as success=False with cost 0 so the caller can carry on.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fulfillment_backend.core.config import ShippingConfig
from fulfillment_backend.services.carrier_client import ShipmentClient
from fulfillment_backend.services.payload_builder import (
    PackageDimensions,
    compute_chargeable_weight,
)

logger = logging.getLogger(__name__)

PINCODE_RE = re.compile(r"^\d{6}$")


@dataclass
class RateQuote:
    """One courier's offer for a delivery."""
    courier_name: str
    courier_company_id: Optional[int]
    cost: float
    estimated_days: Optional[int] = None
    cod_charges: float = 0.0


@dataclass
class ShippingRateResult:
    success: bool
    cost: float = 0.0
    courier_name: Optional[str] = None
    courier_company_id: Optional[int] = None
    estimated_days: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str) -> "ShippingRateResult":
        return cls(success=False, cost=0.0, error=error)


@dataclass
class CourierRates:
    success: bool
    couriers: List[RateQuote] = field(default_factory=list)
    error: Optional[str] = None


def _number(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _to_quote(courier: Dict[str, Any]) -> RateQuote:
    return RateQuote(
        courier_name=str(courier.get("courier_name") or courier.get("name") or "Unknown"),
        courier_company_id=_int_or_none(courier.get("courier_company_id")),
        cost=_number(courier.get("freight_charge")) or _number(courier.get("rate")),
        estimated_days=_int_or_none(courier.get("estimated_delivery_days")),
        cod_charges=_number(courier.get("cod_charges")),
    )


class RateCalculator:
    """
    Queries courier serviceability and picks the cheapest courier.

    Usage:
        calculator = RateCalculator(config, client)
        result = await calculator.calculate_shipping_rate("560001")
    """

    def __init__(self, config: ShippingConfig, client: ShipmentClient):
        self.config = config
        self.client = client

    def _package(self, weight: Optional[float], dimensions: Optional[PackageDimensions]):
        dims = dimensions or PackageDimensions.from_defaults(self.config.package)
        physical = weight if weight and weight > 0 else self.config.package.weight_kg
        return round(compute_chargeable_weight(physical, dims), 2), dims

    async def _fetch_couriers(
        self,
        pincode: str,
        weight: Optional[float],
        dimensions: Optional[PackageDimensions],
        is_cod: bool,
    ) -> List[RateQuote]:
        """
        Raises:
            ValueError: with a short reason when no courier list can be produced
        """
        if not self.config.has_credentials:
            raise ValueError("Shiprocket credentials not configured")
        if not self.config.pickup_pincode:
            raise ValueError("Pickup pincode not configured")

        chargeable, dims = self._package(weight, dimensions)
        params = {
            "pickup_postcode": self.config.pickup_pincode,
            "delivery_postcode": pincode,
            "weight": chargeable,
            "length": dims.length,
            "breadth": dims.breadth,
            "height": dims.height,
            "cod": 1 if is_cod else 0,
        }

        response = await self.client.check_serviceability(params)
        if not response.ok:
            raise ValueError(f"API returned {response.http_status}")

        body = response.raw_body if isinstance(response.raw_body, dict) else {}
        data = body.get("data") if isinstance(body.get("data"), dict) else {}
        couriers = data.get("available_courier_companies") or []
        if not couriers:
            raise ValueError("No couriers available")

        return [_to_quote(c) for c in couriers if isinstance(c, dict)]

    async def calculate_shipping_rate(
        self,
        pincode: str,
        weight: Optional[float] = None,
        dimensions: Optional[PackageDimensions] = None,
        is_cod: bool = False,
    ) -> ShippingRateResult:
        """
        Cheapest courier cost for a delivery pincode.

        Ties keep the first courier returned. COD charges are only added when
        is_cod is set.
        """
        if not pincode or not PINCODE_RE.match(pincode):
            return ShippingRateResult.failed("Invalid delivery pincode")

        try:
            quotes = await self._fetch_couriers(pincode, weight, dimensions, is_cod)
        except Exception as e:
            logger.warning(f"[SHIPPING_RATE] Rate lookup failed for {pincode}: {e}")
            return ShippingRateResult.failed(str(e))

        if not quotes:
            return ShippingRateResult.failed("No couriers available")

        cheapest = quotes[0]
        for quote in quotes[1:]:
            if quote.cost < cheapest.cost:
                cheapest = quote

        cost = cheapest.cost + (cheapest.cod_charges if is_cod else 0.0)
        return ShippingRateResult(
            success=True,
            cost=round(cost, 2),
            courier_name=cheapest.courier_name,
            courier_company_id=cheapest.courier_company_id,
            estimated_days=cheapest.estimated_days,
        )

    async def get_all_shipping_rates(
        self,
        pincode: str,
        weight: Optional[float] = None,
        dimensions: Optional[PackageDimensions] = None,
    ) -> CourierRates:
        """Every available courier for a pincode, cheapest first."""
        if not pincode or not PINCODE_RE.match(pincode):
            return CourierRates(success=False, error="Invalid delivery pincode")

        try:
            quotes = await self._fetch_couriers(pincode, weight, dimensions, is_cod=False)
        except Exception as e:
            logger.warning(f"[SHIPPING_RATE] Rate listing failed for {pincode}: {e}")
            return CourierRates(success=False, error=str(e))

        return CourierRates(success=True, couriers=sorted(quotes, key=lambda q: q.cost))
