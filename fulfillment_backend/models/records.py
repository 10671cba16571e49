"""
Storage-agnostic order records

The service layer works on these plain dataclasses; OrderStore
implementations map their rows to and from them.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

SHIPMENT_PENDING = "PENDING"
SHIPMENT_BOOKED = "BOOKED"
SHIPMENT_FAILED = "FAILED"


@dataclass
class AddressRecord:
    """Shipping or billing address."""
    id: Optional[str]
    full_name: Optional[str] = None
    phone: Optional[str] = None
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    country: Optional[str] = "India"


@dataclass
class OrderItemRecord:
    id: str
    quantity: int
    price: float
    sku: Optional[str] = None
    name: Optional[str] = None
    product_uid: Optional[str] = None


@dataclass
class OrderRecord:
    """Order fields read and written by fulfillment."""
    id: str
    order_number: str
    order_status: Optional[str] = None
    payment_status: Optional[str] = None
    shipping_name: Optional[str] = None
    shipping_phone: Optional[str] = None
    shipping_email: Optional[str] = None
    shipping_address1: Optional[str] = None
    shipping_address2: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_state: Optional[str] = None
    shipping_pincode: Optional[str] = None
    shipping_country: Optional[str] = None
    shipping_address_id: Optional[str] = None
    billing_address_id: Optional[str] = None
    shipment_status: Optional[str] = None
    shipment_claimed_at: Optional[datetime] = None
    carrier_shipment_id: Optional[str] = None
    courier_name: Optional[str] = None
    internal_shipping_cost: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.order_status == "paid" and self.payment_status == "paid"

    @property
    def is_booked(self) -> bool:
        return self.shipment_status == SHIPMENT_BOOKED and bool(self.carrier_shipment_id)

    @property
    def shipping_metadata(self) -> Dict[str, Any]:
        return dict((self.metadata or {}).get("shipping") or {})

    @property
    def shipping_timeline(self) -> List[Dict[str, Any]]:
        return list((self.metadata or {}).get("shipping_timeline") or [])
