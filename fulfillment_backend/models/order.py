"""
Order, OrderItem and Address models

Only the columns the fulfillment service reads or writes are mapped. Payment
and catalog columns belong to other services.
"""
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Float, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import relationship

from fulfillment_backend.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Address(Base):
    __tablename__ = "addresses"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=True, index=True)
    full_name = Column(String(200))
    phone = Column(String(32))
    line1 = Column(String(255))
    line2 = Column(String(255))
    city = Column(String(100))
    state = Column(String(100))
    pincode = Column(String(12))
    country = Column(String(64), default="India")

    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_carrier_shipment_id", "carrier_shipment_id"),
        Index("ix_orders_shipment_status", "shipment_status"),
    )

    id = Column(String(36), primary_key=True)
    order_number = Column(String(64), unique=True, index=True, nullable=False)

    # Payment state is owned by the payment service; fulfillment only reads it
    order_status = Column(String(32), default="pending")
    payment_status = Column(String(32), default="pending")

    # Denormalized shipping address captured at checkout
    shipping_name = Column(String(200))
    shipping_phone = Column(String(32))
    shipping_email = Column(String(255))
    shipping_address1 = Column(String(255))
    shipping_address2 = Column(String(255))
    shipping_city = Column(String(100))
    shipping_state = Column(String(100))
    shipping_pincode = Column(String(12))
    shipping_country = Column(String(64))

    shipping_address_id = Column(String(36), ForeignKey("addresses.id"), nullable=True)
    billing_address_id = Column(String(36), ForeignKey("addresses.id"), nullable=True)

    # Fulfillment state: None, PENDING, BOOKED, FAILED
    shipment_status = Column(String(16), nullable=True)
    shipment_claimed_at = Column(DateTime(timezone=True), nullable=True)
    carrier_shipment_id = Column(String(64), nullable=True)
    courier_name = Column(String(128), nullable=True)
    internal_shipping_cost = Column(Float, default=0.0)

    # "metadata" is reserved on declarative classes
    order_metadata = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    items = relationship("OrderItem", back_populates="order")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String(36), primary_key=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_uid = Column(String(64), nullable=True)
    sku = Column(String(64), nullable=True)
    name = Column(String(255), nullable=True)
    quantity = Column(Integer, default=1)
    price = Column(Float, default=0.0)

    order = relationship("Order", back_populates="items")


class FulfillmentAuditLog(Base):
    """Persisted copy of the fulfillment audit trail."""
    __tablename__ = "fulfillment_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String(64), nullable=False, index=True)
    target_resource = Column(String(32), default="orders")
    target_id = Column(String(36), index=True)
    details = Column(JSON)
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
