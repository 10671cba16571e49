"""
Fulfillment Schemas

Pydantic models for fulfillment API requests and responses.
"""
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from fulfillment_backend.services.fulfillment import MAX_RETRY_BATCH


# ==================== Requests ====================


class OrderPaidRequest(BaseModel):
    """Sent by the payment path once an order is paid."""
    order_id: str = Field(..., min_length=1, max_length=64)


class RetryShipmentRequest(BaseModel):
    """Retry one order or a batch of orders."""
    order_id: Optional[str] = Field(None, min_length=1, max_length=64)
    batch_order_ids: Optional[List[str]] = None

    @field_validator("batch_order_ids")
    @classmethod
    def validate_batch(cls, v):
        if v is not None and len(v) > MAX_RETRY_BATCH:
            raise ValueError(f"Batch size cannot exceed {MAX_RETRY_BATCH} orders")
        return v

    @model_validator(mode="after")
    def require_target(self):
        if not self.order_id and not self.batch_order_ids:
            raise ValueError("Either order_id or batch_order_ids is required")
        return self


# ==================== Responses ====================


class FulfillmentResponse(BaseModel):
    success: bool
    order_id: str
    shipment_status: Optional[str] = None
    shipment_id: Optional[str] = None
    awb_code: Optional[str] = None
    courier_name: Optional[str] = None
    internal_shipping_cost: float = 0.0
    carrier_status: Optional[str] = None
    already_booked: bool = False
    error: Optional[str] = None


class RetryBatchResponse(BaseModel):
    total: int
    succeeded: int
    failed: int
    results: List[FulfillmentResponse]


class CourierRateResponse(BaseModel):
    courier_name: str
    courier_company_id: Optional[int] = None
    cost: float
    estimated_days: Optional[int] = None


class RateQuoteResponse(BaseModel):
    """Cheapest courier plus every available option."""
    success: bool
    pincode: str
    cost: float = 0.0
    courier_name: Optional[str] = None
    estimated_days: Optional[int] = None
    couriers: List[CourierRateResponse] = []
    error: Optional[str] = None


class WebhookResponse(BaseModel):
    success: bool
    order_id: Optional[str] = None
    shipping_status: Optional[str] = None
    message: Optional[str] = None
