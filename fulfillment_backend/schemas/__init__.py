from fulfillment_backend.schemas.fulfillment import (
    CourierRateResponse,
    FulfillmentResponse,
    OrderPaidRequest,
    RateQuoteResponse,
    RetryBatchResponse,
    RetryShipmentRequest,
    WebhookResponse,
)

__all__ = [
    "CourierRateResponse",
    "FulfillmentResponse",
    "OrderPaidRequest",
    "RateQuoteResponse",
    "RetryBatchResponse",
    "RetryShipmentRequest",
    "WebhookResponse",
]
