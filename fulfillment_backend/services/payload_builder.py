"""
Shipment payload construction and validation

Turns an order, its items and its resolved addresses into the body of a
Shiprocket adhoc-order request. Two independent checks run before anything
is sent:
- validate_payload: business rules, returns every violation
- check_payload_sanity: walks the serialized dict for None, empty and
  non-finite values
"""
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fulfillment_backend.core.config import PackageDefaults, ShippingConfig
from fulfillment_backend.core.exceptions import InvalidAddressError
from fulfillment_backend.core.utils import isoformat, utcnow
from fulfillment_backend.models.records import AddressRecord, OrderItemRecord, OrderRecord

logger = logging.getLogger(__name__)

VOLUMETRIC_DIVISOR = 5000

PAYMENT_METHODS = ("Prepaid", "COD")

PHONE_RE = re.compile(r"^\d{10}$")
PINCODE_RE = re.compile(r"^\d{6}$")

PLACEHOLDER_FIRST_NAME = "Customer"
PLACEHOLDER_LAST_NAME = "."

# Keys allowed to be absent or empty in the serialized payload
OPTIONAL_KEYS = frozenset({
    "billing_address_2",
    "shipping_address_2",
    "billing_last_name",
    "shipping_last_name",
})

REQUIRED_KEYS = (
    "order_id",
    "order_date",
    "pickup_location",
    "billing_customer_name",
    "billing_address",
    "billing_city",
    "billing_pincode",
    "billing_state",
    "billing_country",
    "billing_email",
    "billing_phone",
    "shipping_is_billing",
    "payment_method",
    "sub_total",
    "length",
    "breadth",
    "height",
    "weight",
    "order_items",
)

SHIPPING_KEYS = (
    "shipping_customer_name",
    "shipping_address",
    "shipping_city",
    "shipping_pincode",
    "shipping_state",
    "shipping_country",
    "shipping_email",
    "shipping_phone",
)

ITEM_KEYS = ("name", "sku", "units", "selling_price")


@dataclass(frozen=True)
class PackageDimensions:
    """Parcel dimensions in cm."""
    length: float
    breadth: float
    height: float

    @property
    def volume(self) -> float:
        return self.length * self.breadth * self.height

    @classmethod
    def from_defaults(cls, package: PackageDefaults) -> "PackageDimensions":
        return cls(package.length_cm, package.breadth_cm, package.height_cm)


def compute_chargeable_weight(weight_kg: float, dimensions: PackageDimensions) -> float:
    """Greater of physical and volumetric (L x B x H / 5000) weight."""
    volumetric = dimensions.volume / VOLUMETRIC_DIVISOR
    return max(weight_kg, volumetric)


def split_name(full_name: Optional[str]) -> Tuple[str, str]:
    """
    Split a free-text name into (first, last).

    "Asha" -> ("Asha", "."), "Asha Rani Devi" -> ("Asha", "Rani Devi")
    """
    words = (full_name or "").split()
    if not words:
        return PLACEHOLDER_FIRST_NAME, PLACEHOLDER_LAST_NAME
    if len(words) == 1:
        return words[0], PLACEHOLDER_LAST_NAME
    return words[0], " ".join(words[1:])


def normalize_phone(phone: Optional[str]) -> str:
    """Strip everything but digits and keep the last 10."""
    if not phone:
        return ""
    digits = re.sub(r"\D", "", str(phone))
    return digits[-10:]


def normalize_pincode(pincode: Optional[str]) -> str:
    """Strip everything but digits and keep the first 6."""
    if not pincode:
        return ""
    digits = re.sub(r"\D", "", str(pincode))
    if len(digits) != 6:
        logger.warning(f"[FULFILLMENT] Invalid pincode format: {pincode!r}")
    return digits[:6]


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


def _optional(value: Optional[str]) -> Optional[str]:
    cleaned = _clean(value)
    return cleaned or None


def _non_negative_int(value: Any) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return max(0, int(round(number)))


def _non_negative_money(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return max(0.0, round(number, 2))


def check_address(address: AddressRecord) -> None:
    """
    Reject an address the carrier would refuse.

    Raises:
        InvalidAddressError: naming the first malformed field
    """
    if not _clean(address.full_name):
        raise InvalidAddressError("Recipient name is required", field="name")
    if not PHONE_RE.match(normalize_phone(address.phone)):
        raise InvalidAddressError("Valid 10-digit phone number is required", field="phone")
    if not PINCODE_RE.match(re.sub(r"\D", "", address.pincode or "")):
        raise InvalidAddressError("Valid 6-digit pincode is required", field="pincode")
    if not _clean(address.line1):
        raise InvalidAddressError("Address line 1 is required", field="line1")


@dataclass(frozen=True)
class ShipmentLineItem:
    name: str
    sku: str
    units: int
    selling_price: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "sku": self.sku,
            "units": self.units,
            "selling_price": self.selling_price,
            "discount": 0,
            "tax": 0,
        }


@dataclass(frozen=True)
class ShipmentPayload:
    """Shiprocket adhoc-order request body."""
    order_id: str
    order_date: str
    pickup_location: str

    billing_customer_name: str
    billing_last_name: Optional[str]
    billing_address: str
    billing_address_2: Optional[str]
    billing_city: str
    billing_pincode: str
    billing_state: str
    billing_country: str
    billing_email: str
    billing_phone: str

    order_items: Tuple[ShipmentLineItem, ...]
    sub_total: float
    length: float
    breadth: float
    height: float
    weight: float

    payment_method: str = "Prepaid"
    cod: int = 0
    shipping_charges: float = 0
    shipping_is_billing: bool = True

    shipping_customer_name: Optional[str] = None
    shipping_last_name: Optional[str] = None
    shipping_address: Optional[str] = None
    shipping_address_2: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_pincode: Optional[str] = None
    shipping_state: Optional[str] = None
    shipping_country: Optional[str] = None
    shipping_email: Optional[str] = None
    shipping_phone: Optional[str] = None

    @property
    def order_total(self) -> float:
        return self.sub_total

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for transmission; shipping block only when it differs from billing."""
        data: Dict[str, Any] = {
            "order_id": self.order_id,
            "order_date": self.order_date,
            "pickup_location": self.pickup_location,
            "billing_customer_name": self.billing_customer_name,
            "billing_last_name": self.billing_last_name,
            "billing_address": self.billing_address,
            "billing_address_2": self.billing_address_2,
            "billing_city": self.billing_city,
            "billing_pincode": self.billing_pincode,
            "billing_state": self.billing_state,
            "billing_country": self.billing_country,
            "billing_email": self.billing_email,
            "billing_phone": self.billing_phone,
            "shipping_is_billing": self.shipping_is_billing,
            "order_items": [item.to_dict() for item in self.order_items],
            "payment_method": self.payment_method,
            "cod": self.cod,
            "sub_total": self.sub_total,
            "order_total": self.order_total,
            "shipping_charges": self.shipping_charges,
            "length": self.length,
            "breadth": self.breadth,
            "height": self.height,
            "weight": self.weight,
        }

        if not self.shipping_is_billing:
            data.update({
                "shipping_customer_name": self.shipping_customer_name,
                "shipping_last_name": self.shipping_last_name,
                "shipping_address": self.shipping_address,
                "shipping_address_2": self.shipping_address_2,
                "shipping_city": self.shipping_city,
                "shipping_pincode": self.shipping_pincode,
                "shipping_state": self.shipping_state,
                "shipping_country": self.shipping_country,
                "shipping_email": self.shipping_email,
                "shipping_phone": self.shipping_phone,
            })

        return {k: v for k, v in data.items() if not (k in OPTIONAL_KEYS and v is None)}


class PayloadBuilder:
    """
    Builds ShipmentPayload values from order records.

    Usage:
        builder = PayloadBuilder(config)
        payload = builder.prepare_fulfillment_payload(order, items, shipping, billing)
        violations = validate_payload(payload)
    """

    def __init__(self, config: ShippingConfig, clock=utcnow):
        self.config = config
        self._clock = clock

    @property
    def dimensions(self) -> PackageDimensions:
        return PackageDimensions.from_defaults(self.config.package)

    def prepare_fulfillment_payload(
        self,
        order: OrderRecord,
        items: Sequence[OrderItemRecord],
        shipping_address: AddressRecord,
        billing_address: Optional[AddressRecord] = None,
    ) -> ShipmentPayload:
        dimensions = self.dimensions
        weight = round(compute_chargeable_weight(self.config.package.weight_kg, dimensions), 2)

        billing = billing_address or shipping_address
        shipping_is_billing = (
            billing_address is None
            or billing_address is shipping_address
            or (billing_address.id is not None and billing_address.id == shipping_address.id)
        )

        email = _clean(order.shipping_email)
        billing_first, billing_last = split_name(order.shipping_name or billing.full_name)

        line_items = tuple(
            ShipmentLineItem(
                name=_clean(item.name) or "Product",
                sku=_clean(item.sku) or f"SKU-{str(item.id)[:8]}",
                units=_non_negative_int(item.quantity),
                selling_price=_non_negative_money(item.price),
            )
            for item in items
        )
        sub_total = _non_negative_money(
            sum(_non_negative_money(i.price) * _non_negative_int(i.quantity) for i in items)
        )

        order_date = isoformat(order.created_at or self._clock())

        shipping_fields: Dict[str, Any] = {}
        if not shipping_is_billing:
            shipping_first, shipping_last = split_name(order.shipping_name or shipping_address.full_name)
            shipping_fields = {
                "shipping_customer_name": shipping_first,
                "shipping_last_name": shipping_last,
                "shipping_address": _clean(shipping_address.line1),
                "shipping_address_2": _optional(shipping_address.line2),
                "shipping_city": _clean(shipping_address.city),
                "shipping_pincode": normalize_pincode(shipping_address.pincode),
                "shipping_state": _clean(shipping_address.state),
                "shipping_country": _clean(shipping_address.country) or "India",
                "shipping_email": email,
                "shipping_phone": normalize_phone(shipping_address.phone),
            }

        return ShipmentPayload(
            order_id=str(order.order_number),
            order_date=order_date,
            pickup_location=_clean(self.config.pickup_location),
            billing_customer_name=billing_first,
            billing_last_name=billing_last,
            billing_address=_clean(billing.line1),
            billing_address_2=_optional(billing.line2),
            billing_city=_clean(billing.city),
            billing_pincode=normalize_pincode(billing.pincode),
            billing_state=_clean(billing.state),
            billing_country=_clean(billing.country) or "India",
            billing_email=email,
            billing_phone=normalize_phone(billing.phone),
            order_items=line_items,
            sub_total=sub_total,
            length=dimensions.length,
            breadth=dimensions.breadth,
            height=dimensions.height,
            weight=weight,
            payment_method="Prepaid",
            cod=0,
            shipping_is_billing=shipping_is_billing,
            **shipping_fields,
        )


def _shown(value: Any) -> str:
    return "empty" if value in (None, "") else str(value)


def validate_payload(payload: ShipmentPayload) -> List[str]:
    """
    Check Shiprocket's business rules.

    Returns:
        Every violated rule; an empty list means the payload is valid
    """
    errors: List[str] = []

    def require(name: str, value: Optional[str]):
        if not value or not str(value).strip():
            errors.append(f"{name} is required and cannot be empty")

    def require_email(name: str, value: Optional[str]):
        if not value or not value.strip() or "@" not in value:
            errors.append(f"{name} must be valid (not empty and contain '@'), got \"{_shown(value)}\"")

    def require_phone(name: str, value: Optional[str]):
        if not value or not PHONE_RE.match(value):
            errors.append(f"{name} must be exactly 10 digits, got \"{_shown(value)}\"")

    def require_pincode(name: str, value: Optional[str]):
        if not value or not PINCODE_RE.match(value):
            errors.append(f"{name} must be exactly 6 digits, got \"{_shown(value)}\"")

    def require_positive(name: str, value: Any):
        if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
            errors.append(f"{name} must be greater than 0, got {value}")

    require("order_id", payload.order_id)
    require("pickup_location", payload.pickup_location)

    require("billing_customer_name", payload.billing_customer_name)
    require_phone("billing_phone", payload.billing_phone)
    require_email("billing_email", payload.billing_email)
    require("billing_address", payload.billing_address)
    require("billing_city", payload.billing_city)
    require("billing_state", payload.billing_state)
    require_pincode("billing_pincode", payload.billing_pincode)
    require("billing_country", payload.billing_country)

    if not payload.shipping_is_billing:
        require("shipping_customer_name", payload.shipping_customer_name)
        require_phone("shipping_phone", payload.shipping_phone)
        require_email("shipping_email", payload.shipping_email)
        require("shipping_address", payload.shipping_address)
        require("shipping_city", payload.shipping_city)
        require("shipping_state", payload.shipping_state)
        require_pincode("shipping_pincode", payload.shipping_pincode)
        require("shipping_country", payload.shipping_country)

    if not payload.order_items:
        errors.append("order_items.length must be greater than 0")
    for index, item in enumerate(payload.order_items or ()):
        require(f"order_items[{index}].name", item.name)
        require(f"order_items[{index}].sku", item.sku)
        require_positive(f"order_items[{index}].units", item.units)
        require_positive(f"order_items[{index}].selling_price", item.selling_price)

    if payload.payment_method not in PAYMENT_METHODS:
        errors.append(f"payment_method must be \"Prepaid\" or \"COD\", got \"{_shown(payload.payment_method)}\"")

    require_positive("weight", payload.weight)
    require_positive("length", payload.length)
    require_positive("breadth", payload.breadth)
    require_positive("height", payload.height)

    return errors


def _field_problem(value: Any, required: bool = True) -> Optional[str]:
    if value is None:
        return "is undefined or null" if required else None
    if isinstance(value, str) and not value.strip() and required:
        return "is empty string"
    if isinstance(value, float) and not math.isfinite(value):
        return "is NaN or not finite"
    return None


def check_payload_sanity(data: Dict[str, Any]) -> List[str]:
    """
    Final pass over the serialized payload, independent of validate_payload.

    Catches normalization bugs: missing or None required keys, empty
    required strings, NaN or infinite numbers.
    """
    errors: List[str] = []

    required = list(REQUIRED_KEYS)
    if data.get("shipping_is_billing") is False:
        required.extend(SHIPPING_KEYS)
    for key in required:
        if key not in data:
            errors.append(f"{key} is missing")

    for key, value in data.items():
        if key == "order_items":
            continue
        problem = _field_problem(value, required=key not in OPTIONAL_KEYS)
        if problem:
            errors.append(f"{key} {problem}")

    items = data.get("order_items")
    if items is not None and not isinstance(items, list):
        errors.append("order_items is not a list")
    elif items:
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                errors.append(f"order_items[{index}] is not an object")
                continue
            for key in ITEM_KEYS:
                problem = _field_problem(item.get(key))
                if problem:
                    errors.append(f"order_items[{index}].{key} {problem}")

    return errors


def build_reverse_pickup_payload(
    order: OrderRecord,
    address: AddressRecord,
    items: Optional[Sequence[OrderItemRecord]] = None,
) -> Dict[str, Any]:
    """Return (reverse pickup) request collecting the parcel from the customer."""
    first, last = split_name(address.full_name or order.shipping_name)
    payload: Dict[str, Any] = {
        "order_id": f"{order.order_number}-R",
        "shipment_id": order.carrier_shipment_id,
        "pickup_customer_name": first,
        "pickup_last_name": last,
        "pickup_customer_phone": normalize_phone(address.phone),
        "pickup_email": _clean(order.shipping_email),
        "pickup_address": _clean(address.line1),
        "pickup_city": _clean(address.city),
        "pickup_state": _clean(address.state),
        "pickup_pincode": normalize_pincode(address.pincode),
        "pickup_country": _clean(address.country) or "India",
    }
    line2 = _optional(address.line2)
    if line2:
        payload["pickup_address_2"] = line2
    if items:
        payload["order_items"] = [
            {
                "name": _clean(item.name) or "Product",
                "sku": _clean(item.sku) or f"SKU-{str(item.id)[:8]}",
                "units": _non_negative_int(item.quantity),
                "selling_price": _non_negative_money(item.price),
            }
            for item in items
        ]
    return payload
