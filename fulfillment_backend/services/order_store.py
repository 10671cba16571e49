"""
Order persistence for fulfillment

OrderStore is the only way the service layer reads or writes orders. The
SQLAlchemy implementation maps ORM rows to the plain records in
models/records.py and performs the shipment claim as a single conditional
UPDATE so two processes can never both book the same order.
"""
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, or_, select, update

from fulfillment_backend.core.database import get_db_session
from fulfillment_backend.models.order import Address, FulfillmentAuditLog, Order, OrderItem
from fulfillment_backend.models.records import (
    SHIPMENT_FAILED,
    SHIPMENT_PENDING,
    AddressRecord,
    OrderItemRecord,
    OrderRecord,
)

logger = logging.getLogger(__name__)

# Record field -> ORM attribute where the names differ
_COLUMN_ALIASES = {"metadata": "order_metadata"}

_ORDER_FIELDS = (
    "order_number",
    "order_status",
    "payment_status",
    "shipping_name",
    "shipping_phone",
    "shipping_email",
    "shipping_address1",
    "shipping_address2",
    "shipping_city",
    "shipping_state",
    "shipping_pincode",
    "shipping_country",
    "shipping_address_id",
    "billing_address_id",
    "shipment_status",
    "shipment_claimed_at",
    "carrier_shipment_id",
    "courier_name",
    "created_at",
)


class OrderStore(ABC):
    """Storage operations the fulfillment service depends on."""

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[OrderRecord]:
        pass

    @abstractmethod
    async def get_order_items(self, order_id: str) -> List[OrderItemRecord]:
        pass

    @abstractmethod
    async def get_address(self, address_id: str) -> Optional[AddressRecord]:
        pass

    @abstractmethod
    async def claim_shipment(self, order_id: str, now: datetime, stale_before: datetime) -> bool:
        """
        Move the order to PENDING if no other attempt owns it.

        Succeeds from no status, FAILED, or a PENDING claim taken before
        stale_before. Returns True only for the caller that won the claim.
        """

    @abstractmethod
    async def update_order(
        self,
        order_id: str,
        values: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> bool:
        """
        Apply values to the order.

        When expected_status is given the write only happens while the order
        still has that shipment_status. Returns whether a row was written.
        """

    @abstractmethod
    async def find_order_by_shipment_id(self, shipment_id: str) -> Optional[OrderRecord]:
        pass

    @abstractmethod
    async def write_audit(self, entry: Dict[str, Any]) -> None:
        pass


def order_to_record(order: Order) -> OrderRecord:
    record = OrderRecord(
        id=order.id,
        order_number=order.order_number,
        internal_shipping_cost=float(order.internal_shipping_cost or 0.0),
        metadata=dict(order.order_metadata or {}),
    )
    for name in _ORDER_FIELDS:
        setattr(record, name, getattr(order, name))
    return record


def item_to_record(item: OrderItem) -> OrderItemRecord:
    return OrderItemRecord(
        id=item.id,
        quantity=item.quantity or 0,
        price=float(item.price or 0.0),
        sku=item.sku,
        name=item.name,
        product_uid=item.product_uid,
    )


def address_to_record(address: Address) -> AddressRecord:
    return AddressRecord(
        id=address.id,
        full_name=address.full_name,
        phone=address.phone,
        line1=address.line1,
        line2=address.line2,
        city=address.city,
        state=address.state,
        pincode=address.pincode,
        country=address.country,
    )


class SQLAlchemyOrderStore(OrderStore):
    """
    OrderStore backed by the orders database.

    Each call runs in its own short session so no transaction is held open
    across carrier HTTP calls.
    """

    def __init__(self, session_factory: Callable = get_db_session):
        self._session_factory = session_factory

    async def get_order(self, order_id: str) -> Optional[OrderRecord]:
        async with self._session_factory() as db:
            result = await db.execute(select(Order).where(Order.id == order_id))
            order = result.scalar_one_or_none()
            return order_to_record(order) if order else None

    async def get_order_items(self, order_id: str) -> List[OrderItemRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
            )
            return [item_to_record(item) for item in result.scalars().all()]

    async def get_address(self, address_id: str) -> Optional[AddressRecord]:
        async with self._session_factory() as db:
            result = await db.execute(select(Address).where(Address.id == address_id))
            address = result.scalar_one_or_none()
            return address_to_record(address) if address else None

    async def claim_shipment(self, order_id: str, now: datetime, stale_before: datetime) -> bool:
        claimable = or_(
            Order.shipment_status.is_(None),
            Order.shipment_status == SHIPMENT_FAILED,
            and_(
                Order.shipment_status == SHIPMENT_PENDING,
                or_(
                    Order.shipment_claimed_at.is_(None),
                    Order.shipment_claimed_at < stale_before,
                ),
            ),
        )
        async with self._session_factory() as db:
            result = await db.execute(
                update(Order)
                .where(and_(Order.id == order_id, claimable))
                .values(shipment_status=SHIPMENT_PENDING, shipment_claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            claimed = result.rowcount > 0

        logger.debug(f"Shipment claim for order {order_id}: {'won' if claimed else 'lost'}")
        return claimed

    async def update_order(
        self,
        order_id: str,
        values: Dict[str, Any],
        expected_status: Optional[str] = None,
    ) -> bool:
        mapped = {_COLUMN_ALIASES.get(key, key): value for key, value in values.items()}

        conditions = [Order.id == order_id]
        if expected_status is not None:
            conditions.append(Order.shipment_status == expected_status)

        async with self._session_factory() as db:
            result = await db.execute(
                update(Order)
                .where(and_(*conditions))
                .values(**mapped)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def find_order_by_shipment_id(self, shipment_id: str) -> Optional[OrderRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Order).where(Order.carrier_shipment_id == str(shipment_id)).limit(1)
            )
            order = result.scalar_one_or_none()
            return order_to_record(order) if order else None

    async def write_audit(self, entry: Dict[str, Any]) -> None:
        async with self._session_factory() as db:
            db.add(FulfillmentAuditLog(
                action=entry.get("action"),
                target_resource=entry.get("target_resource", "orders"),
                target_id=entry.get("target_id"),
                details=entry.get("details") or {},
            ))
