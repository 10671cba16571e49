from fulfillment_backend.models.order import Address, FulfillmentAuditLog, Order, OrderItem
from fulfillment_backend.models.records import AddressRecord, OrderItemRecord, OrderRecord

__all__ = [
    "Address",
    "FulfillmentAuditLog",
    "Order",
    "OrderItem",
    "AddressRecord",
    "OrderItemRecord",
    "OrderRecord",
]
