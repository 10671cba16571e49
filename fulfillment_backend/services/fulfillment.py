"""
Fulfillment orchestration

Turns a paid order into a Shiprocket shipment. The state machine on
Order.shipment_status:

    None / FAILED --claim--> PENDING --accept--> BOOKED (terminal)
                                     --reject--> FAILED (retryable)

A booking attempt is serialized twice: a per-order asyncio lock inside the
process, and a conditional PENDING claim in the database across processes.
Nothing raised inside an attempt reaches the caller; every outcome is
returned as a FulfillmentResult and, after the claim, persisted on the order.
A carrier booking whose BOOKED write fails is kept in the key-value store
and persisted by the next attempt instead of being booked again.
Shipment failure never touches order or payment status.
"""
import json
import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fulfillment_backend.core.audit_log import (
    ACTION_AWB_ASSIGNED,
    ACTION_REVERSE_PICKUP_REQUESTED,
    ACTION_SHIPMENT_BOOKED,
    ACTION_SHIPMENT_CONFIG_ERROR,
    ACTION_SHIPMENT_FAILED,
    ACTION_SHIPMENT_VALIDATION_FAILED,
    log_fulfillment_event,
)
from fulfillment_backend.core.config import ShippingConfig
from fulfillment_backend.core.exceptions import (
    AmbiguousResponseError,
    CarrierAPIError,
    ConfigurationError,
    FulfillmentError,
    MissingAddressError,
    PayloadValidationError,
)
from fulfillment_backend.core.locks import KeyedLockManager
from fulfillment_backend.core.redis_client import InMemoryKeyValueStore, KeyValueStore
from fulfillment_backend.core.utils import isoformat, utcnow
from fulfillment_backend.models.records import (
    SHIPMENT_BOOKED,
    SHIPMENT_FAILED,
    SHIPMENT_PENDING,
    AddressRecord,
    OrderRecord,
)
from fulfillment_backend.services.carrier_client import CarrierResponse, ShipmentClient
from fulfillment_backend.services.order_store import OrderStore
from fulfillment_backend.services.payload_builder import (
    PHONE_RE,
    PINCODE_RE,
    PayloadBuilder,
    ShipmentPayload,
    build_reverse_pickup_payload,
    check_address,
    check_payload_sanity,
    normalize_phone,
    normalize_pincode,
    validate_payload,
)
from fulfillment_backend.services.rate_calculator import RateCalculator, ShippingRateResult

logger = logging.getLogger(__name__)

MAX_RETRY_BATCH = 50

# Carrier bookings whose BOOKED write failed are kept here until persisted
UNPERSISTED_BOOKING_KEY = "unpersisted_booking:{order_id}"
UNPERSISTED_BOOKING_TTL_SECONDS = 7 * 24 * 3600

ACCEPTED_STATUSES = (200, 201)

# Timeline event statuses
EVENT_BOOKED = "BOOKED"
EVENT_FAILED = "FAILED"
EVENT_AWB_ASSIGNED = "AWB_ASSIGNED"
EVENT_RETURN_REQUESTED = "RETURN_REQUESTED"


@dataclass
class FulfillmentResult:
    """Outcome of one orchestrator call."""
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

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def failure(cls, order_id: str, error: str, shipment_status: Optional[str] = None) -> "FulfillmentResult":
        return cls(success=False, order_id=str(order_id), shipment_status=shipment_status, error=error)


def _with_event(metadata: Optional[Dict[str, Any]], event: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of metadata with event appended to the shipping timeline."""
    updated = dict(metadata or {})
    timeline = list(updated.get("shipping_timeline") or [])
    timeline.append({k: v for k, v in event.items() if v is not None})
    updated["shipping_timeline"] = timeline
    return updated


def address_from_order(order: OrderRecord) -> Optional[AddressRecord]:
    """Address built from the denormalized shipping fields, if any were captured."""
    fields = (
        order.shipping_name,
        order.shipping_phone,
        order.shipping_address1,
        order.shipping_city,
        order.shipping_state,
        order.shipping_pincode,
    )
    if not any(fields):
        return None
    return AddressRecord(
        id=None,
        full_name=order.shipping_name,
        phone=order.shipping_phone,
        line1=order.shipping_address1,
        line2=order.shipping_address2,
        city=order.shipping_city,
        state=order.shipping_state,
        pincode=order.shipping_pincode,
        country=order.shipping_country or "India",
    )


def is_complete_address(address: Optional[AddressRecord]) -> bool:
    if address is None:
        return False
    required = (address.full_name, address.phone, address.line1, address.city, address.state, address.pincode)
    if not all(value and str(value).strip() for value in required):
        return False
    return bool(
        PHONE_RE.match(normalize_phone(address.phone))
        and PINCODE_RE.match(normalize_pincode(address.pincode))
    )


class FulfillmentOrchestrator:
    """
    Books carrier shipments for paid orders.

    Usage:
        orchestrator = FulfillmentOrchestrator(config, store, client, rate_calculator)
        result = await orchestrator.create_shipment_for_paid_order(order_id)
    """

    def __init__(
        self,
        config: ShippingConfig,
        store: OrderStore,
        client: ShipmentClient,
        rate_calculator: Optional[RateCalculator] = None,
        payload_builder: Optional[PayloadBuilder] = None,
        locks: Optional[KeyedLockManager] = None,
        kv_store: Optional[KeyValueStore] = None,
        clock=utcnow,
    ):
        self.config = config
        self.store = store
        self.client = client
        self.rate_calculator = rate_calculator or RateCalculator(config, client)
        self.payload_builder = payload_builder or PayloadBuilder(config, clock=clock)
        self.locks = locks or KeyedLockManager()
        self.kv_store = kv_store or InMemoryKeyValueStore()
        self._clock = clock

    # ==================== Booking ====================

    async def create_shipment_for_paid_order(self, order_id: str) -> FulfillmentResult:
        """
        Book a shipment for a paid order.

        Safe to call repeatedly: a BOOKED order returns its cached result
        without any carrier call, and a FAILED order is attempted afresh.
        """
        order_id = str(order_id)
        async with self.locks.hold(order_id):
            try:
                return await self._create_shipment(order_id)
            except Exception as e:
                logger.exception(f"[FULFILLMENT] Unexpected error for order {order_id}: {e}")
                return FulfillmentResult.failure(order_id, f"UNEXPECTED_ERROR: {e}")

    async def _create_shipment(self, order_id: str) -> FulfillmentResult:
        order = await self.store.get_order(order_id)
        if order is None:
            logger.error(f"[FULFILLMENT] Order not found: {order_id}")
            return FulfillmentResult.failure(order_id, "ORDER_NOT_FOUND")

        if not order.is_paid:
            logger.info(
                f"[FULFILLMENT] Order {order.order_number} not paid "
                f"(order_status={order.order_status}, payment_status={order.payment_status})"
            )
            return FulfillmentResult.failure(
                order_id,
                f"ORDER_NOT_PAID: order_status={order.order_status}, payment_status={order.payment_status}",
                shipment_status=order.shipment_status,
            )

        if order.is_booked:
            return self._booked_result(order, already_booked=True)

        recovered = await self._persist_recorded_booking(order)
        if recovered is not None:
            return recovered

        try:
            self.config.ensure_booking_enabled()
        except ConfigurationError as e:
            logger.error(f"[FULFILLMENT] Cannot book order {order.order_number}: {e.message}")
            await self._audit(
                ACTION_SHIPMENT_CONFIG_ERROR,
                order,
                {"order_number": order.order_number, "error": e.reason, **e.details},
                success=False,
            )
            return FulfillmentResult.failure(
                order_id,
                f"CONFIGURATION_ERROR: {e.message}",
                shipment_status=order.shipment_status,
            )

        now = self._clock()
        stale_before = now - timedelta(seconds=self.config.claim_ttl_seconds)
        if not await self.store.claim_shipment(order.id, now, stale_before):
            current = await self.store.get_order(order_id)
            if current is not None and current.is_booked:
                return self._booked_result(current, already_booked=True)
            logger.info(f"[FULFILLMENT] Shipment for order {order.order_number} already in progress")
            return FulfillmentResult.failure(
                order_id,
                "SHIPMENT_IN_PROGRESS",
                shipment_status=current.shipment_status if current else None,
            )

        return await self._attempt(order)

    async def _attempt(self, order: OrderRecord) -> FulfillmentResult:
        logger.info(f"[FULFILLMENT] Creating shipment for order {order.order_number}")
        try:
            shipping, billing = await self._resolve_addresses(order)
            check_address(shipping)

            items = await self.store.get_order_items(order.id)
            rate = await self._best_effort_rate(shipping)

            payload = self.payload_builder.prepare_fulfillment_payload(order, items, shipping, billing)
            violations = validate_payload(payload)
            if violations:
                raise PayloadValidationError(violations)

            problems = check_payload_sanity(payload.to_dict())
            if problems:
                raise PayloadValidationError(problems, code="PAYLOAD_NORMALIZATION_FAILED")

            response = await self.client.create_order(payload)
            self._accept(response)
        except FulfillmentError as e:
            return await self._mark_failed(order, e.reason, e)
        except Exception as e:
            logger.exception(f"[FULFILLMENT] Unexpected error booking order {order.order_number}")
            return await self._mark_failed(order, f"UNEXPECTED_ERROR: {e}", e)

        result = await self._mark_booked(order, response, rate, payload)

        if self.config.auto_assign_awb and result.success and not result.error and not result.awb_code:
            refreshed = await self.store.get_order(order.id)
            if refreshed is not None:
                awb_result = await self._assign_awb(refreshed)
                if awb_result.success:
                    result.awb_code = awb_result.awb_code
                    result.courier_name = awb_result.courier_name or result.courier_name

        return result

    async def _resolve_addresses(self, order: OrderRecord) -> Tuple[AddressRecord, Optional[AddressRecord]]:
        """
        Shipping and billing address for the order.

        Complete denormalized fields win, then the address table. Billing
        falls back to shipping.
        """
        denormalized = address_from_order(order)
        if is_complete_address(denormalized):
            return denormalized, None

        if order.shipping_address_id:
            shipping = await self.store.get_address(order.shipping_address_id)
            if shipping is not None:
                billing = None
                if order.billing_address_id and order.billing_address_id != order.shipping_address_id:
                    billing = await self.store.get_address(order.billing_address_id)
                return shipping, billing

        # Partially captured fields still get a field-level rejection
        if denormalized is not None:
            return denormalized, None

        logger.error(
            f"[FULFILLMENT_MISSING_SHIPPING_ADDRESS] order={order.order_number} "
            f"shipping_address_id={order.shipping_address_id}"
        )
        raise MissingAddressError("No shipping address found in order record or addresses table")

    async def _best_effort_rate(self, shipping: AddressRecord) -> Optional[ShippingRateResult]:
        try:
            rate = await self.rate_calculator.calculate_shipping_rate(normalize_pincode(shipping.pincode))
        except Exception as e:
            logger.warning(f"[SHIPPING_RATE] Rate lookup raised, continuing with cost 0: {e}")
            return None
        if not rate.success:
            logger.warning(f"[SHIPPING_RATE] No rate ({rate.error}), continuing with cost 0")
        return rate

    @staticmethod
    def _accept(response: CarrierResponse) -> None:
        """
        Gates a carrier response must pass to count as booked.

        Raises:
            CarrierAPIError: status other than 200/201
            AmbiguousResponseError: 2xx without a shipment id
        """
        if response.http_status not in ACCEPTED_STATUSES:
            detail = response.message or str(response.raw_body)[:200]
            raise CarrierAPIError(
                f"Shiprocket returned HTTP {response.http_status}: {detail}",
                status_code=response.http_status,
                body=response.raw_body,
            )
        if not response.shipment_id and not response.awb_code:
            raise AmbiguousResponseError(
                "Response has neither shipment_id nor awb_code",
                status_code=response.http_status,
                body=response.raw_body,
            )
        if not response.shipment_id:
            raise AmbiguousResponseError(
                "Response has awb_code but no shipment_id",
                status_code=response.http_status,
                body=response.raw_body,
            )

    async def _mark_booked(
        self,
        order: OrderRecord,
        response: CarrierResponse,
        rate: Optional[ShippingRateResult],
        payload: ShipmentPayload,
    ) -> FulfillmentResult:
        now_iso = isoformat(self._clock())
        cost = rate.cost if rate is not None and rate.success else 0.0

        shipping = order.shipping_metadata
        shipping.update({
            "shipment_id": response.shipment_id,
            "awb_code": response.awb_code,
            "courier": response.courier_name,
            "courier_company_id": response.courier_company_id,
            "tracking_url": response.tracking_url,
            "expected_delivery": response.expected_delivery,
            "updated_at": now_iso,
        })

        metadata = _with_event(order.metadata, {
            "status": EVENT_BOOKED,
            "timestamp": now_iso,
            "courier": response.courier_name,
            "trackingCode": response.awb_code,
        })
        metadata["shipping"] = shipping
        metadata["package_weight_kg"] = payload.weight
        metadata["package_length_cm"] = payload.length
        metadata["package_breadth_cm"] = payload.breadth
        metadata["package_height_cm"] = payload.height
        metadata.pop("shipment_error", None)

        values = {
            "shipment_status": SHIPMENT_BOOKED,
            "carrier_shipment_id": response.shipment_id,
            "courier_name": response.courier_name,
            "internal_shipping_cost": cost,
            "metadata": metadata,
        }
        write_error = None
        try:
            written = await self.store.update_order(order.id, values, expected_status=SHIPMENT_PENDING)
        except Exception as e:
            written = False
            write_error = f"BOOKING_NOT_PERSISTED: {e}"
            logger.error(
                f"[FULFILLMENT] Order {order.order_number} booked as shipment {response.shipment_id} "
                f"(awb={response.awb_code}) but the BOOKED write failed: {e}"
            )
            await self._record_unpersisted_booking(order, values)

        if not written and write_error is None:
            logger.error(
                f"[FULFILLMENT] Order {order.order_number} booked as shipment "
                f"{response.shipment_id} but its claim was taken over; not persisted"
            )

        logger.info(
            f"[FULFILLMENT] Order {order.order_number} booked: shipment={response.shipment_id} "
            f"awb={response.awb_code} courier={response.courier_name}"
        )
        details = {
            "order_number": order.order_number,
            "shipment_id": response.shipment_id,
            "awb_code": response.awb_code,
            "courier_name": response.courier_name,
            "weight_kg": payload.weight,
            "internal_shipping_cost": cost,
            "persisted": written,
        }
        if write_error:
            details["error"] = write_error
        await self._audit(ACTION_SHIPMENT_BOOKED, order, details, success=written)

        return FulfillmentResult(
            success=True,
            order_id=order.id,
            shipment_status=SHIPMENT_BOOKED if write_error is None else SHIPMENT_PENDING,
            shipment_id=response.shipment_id,
            awb_code=response.awb_code,
            courier_name=response.courier_name,
            internal_shipping_cost=cost,
            error=write_error,
        )

    async def _record_unpersisted_booking(self, order: OrderRecord, values: Dict[str, Any]) -> None:
        """Keep a booking whose BOOKED write failed so the next attempt persists it."""
        key = UNPERSISTED_BOOKING_KEY.format(order_id=order.id)
        try:
            await self.kv_store.put(key, json.dumps(values, default=str), UNPERSISTED_BOOKING_TTL_SECONDS)
        except Exception as e:
            logger.error(
                f"[FULFILLMENT] Could not record unpersisted booking for order {order.order_number} "
                f"(shipment {values.get('carrier_shipment_id')}): {e}"
            )

    async def _persist_recorded_booking(self, order: OrderRecord) -> Optional[FulfillmentResult]:
        """
        Persist a carrier booking recorded by an earlier attempt.

        Returns None when there is nothing recorded, so a new booking may be
        created. No carrier call is made here.
        """
        key = UNPERSISTED_BOOKING_KEY.format(order_id=order.id)
        try:
            raw = await self.kv_store.get(key)
        except Exception as e:
            logger.warning(f"[FULFILLMENT] Unpersisted booking lookup failed for order {order.order_number}: {e}")
            return None
        if not raw:
            return None

        values = json.loads(raw)
        shipment_id = values.get("carrier_shipment_id")
        logger.info(f"[FULFILLMENT] Persisting recorded shipment {shipment_id} for order {order.order_number}")
        try:
            await self.store.update_order(order.id, values)
        except Exception as e:
            logger.error(f"[FULFILLMENT] BOOKED write failed again for order {order.order_number}: {e}")
            return FulfillmentResult(
                success=True,
                order_id=order.id,
                shipment_status=order.shipment_status,
                shipment_id=shipment_id,
                courier_name=values.get("courier_name"),
                internal_shipping_cost=values.get("internal_shipping_cost") or 0.0,
                error=f"BOOKING_NOT_PERSISTED: {e}",
            )

        try:
            await self.kv_store.clear(key)
        except Exception as e:
            logger.warning(f"[FULFILLMENT] Could not clear recorded booking for order {order.order_number}: {e}")
        await self._audit(
            ACTION_SHIPMENT_BOOKED,
            order,
            {"order_number": order.order_number, "shipment_id": shipment_id, "persisted": True, "recovered": True},
            success=True,
        )
        current = await self.store.get_order(order.id)
        return self._booked_result(current or order, already_booked=True)

    async def _mark_failed(
        self,
        order: OrderRecord,
        reason: str,
        error: Optional[BaseException] = None,
    ) -> FulfillmentResult:
        now_iso = isoformat(self._clock())
        logger.error(f"[FULFILLMENT] Order {order.order_number} shipment failed: {reason}")

        metadata = _with_event(order.metadata, {
            "status": EVENT_FAILED,
            "timestamp": now_iso,
            "error": reason,
        })
        metadata["shipment_error"] = reason
        metadata["shipment_failed_at"] = now_iso
        if isinstance(error, FulfillmentError):
            metadata["shipment_error_details"] = _json_safe(error.details)

        try:
            await self.store.update_order(
                order.id,
                {"shipment_status": SHIPMENT_FAILED, "metadata": metadata},
                expected_status=SHIPMENT_PENDING,
            )
        except Exception as e:
            logger.error(f"[FULFILLMENT] Could not persist FAILED for order {order.order_number}: {e}")

        action = (
            ACTION_SHIPMENT_VALIDATION_FAILED
            if isinstance(error, PayloadValidationError)
            else ACTION_SHIPMENT_FAILED
        )
        details: Dict[str, Any] = {"order_number": order.order_number, "error": reason}
        if isinstance(error, PayloadValidationError):
            details["errors"] = error.violations
        await self._audit(action, order, details, success=False)

        return FulfillmentResult.failure(order.id, reason, shipment_status=SHIPMENT_FAILED)

    def _booked_result(self, order: OrderRecord, already_booked: bool = False) -> FulfillmentResult:
        shipping = order.shipping_metadata
        return FulfillmentResult(
            success=True,
            order_id=order.id,
            shipment_status=order.shipment_status,
            shipment_id=order.carrier_shipment_id,
            awb_code=shipping.get("awb_code") or shipping.get("awb"),
            courier_name=order.courier_name or shipping.get("courier"),
            internal_shipping_cost=order.internal_shipping_cost,
            carrier_status=shipping.get("current_status"),
            already_booked=already_booked,
        )

    async def _audit(
        self,
        action: str,
        order: OrderRecord,
        details: Dict[str, Any],
        success: bool,
    ) -> None:
        entry = log_fulfillment_event(action, order.id, details, success=success)
        try:
            await self.store.write_audit(entry)
        except Exception as e:
            logger.warning(f"[FULFILLMENT] Audit log write failed (non-fatal): {e}")

    # ==================== Retries ====================

    async def retry_failed_shipments(self, order_ids: Sequence[str]) -> List[FulfillmentResult]:
        """
        Re-run booking for a batch of orders, one at a time.

        Raises:
            ValueError: more than MAX_RETRY_BATCH ids
        """
        if len(order_ids) > MAX_RETRY_BATCH:
            raise ValueError(f"Batch size cannot exceed {MAX_RETRY_BATCH} orders")

        results = []
        for order_id in order_ids:
            results.append(await self.create_shipment_for_paid_order(order_id))

        succeeded = sum(1 for r in results if r.success)
        logger.info(f"[FULFILLMENT] Retry batch finished: {succeeded}/{len(results)} booked")
        return results

    # ==================== Post-booking operations ====================

    async def _load_booked(self, order_id: str) -> Tuple[Optional[OrderRecord], Optional[FulfillmentResult]]:
        order = await self.store.get_order(order_id)
        if order is None:
            return None, FulfillmentResult.failure(order_id, "ORDER_NOT_FOUND")
        if not order.is_booked:
            return None, FulfillmentResult.failure(
                order_id, "SHIPMENT_NOT_BOOKED", shipment_status=order.shipment_status
            )
        return order, None

    async def assign_awb(self, order_id: str) -> FulfillmentResult:
        """Request an AWB for a booked shipment that does not have one yet."""
        order_id = str(order_id)
        async with self.locks.hold(order_id):
            try:
                order, failure = await self._load_booked(order_id)
                if failure:
                    return failure
                return await self._assign_awb(order)
            except Exception as e:
                logger.exception(f"[FULFILLMENT] AWB assignment error for order {order_id}: {e}")
                return FulfillmentResult.failure(order_id, f"UNEXPECTED_ERROR: {e}")

    async def _assign_awb(self, order: OrderRecord) -> FulfillmentResult:
        shipping = order.shipping_metadata
        if shipping.get("awb_code"):
            return self._booked_result(order, already_booked=True)

        try:
            response = await self.client.generate_awb(
                order.carrier_shipment_id,
                courier_id=shipping.get("courier_company_id"),
            )
        except FulfillmentError as e:
            logger.error(f"[FULFILLMENT] AWB assignment failed for order {order.order_number}: {e.reason}")
            return FulfillmentResult.failure(
                order.id, f"AWB_ASSIGNMENT_FAILED: {e.reason}", shipment_status=order.shipment_status
            )

        if not response.ok or not response.awb_code:
            reason = response.message or f"HTTP {response.http_status}"
            logger.error(f"[FULFILLMENT] AWB assignment rejected for order {order.order_number}: {reason}")
            return FulfillmentResult.failure(
                order.id, f"AWB_ASSIGNMENT_FAILED: {reason}", shipment_status=order.shipment_status
            )

        now_iso = isoformat(self._clock())
        courier = response.courier_name or order.courier_name
        shipping.update({
            "awb_code": response.awb_code,
            "courier": courier,
            "courier_company_id": response.courier_company_id or shipping.get("courier_company_id"),
            "updated_at": now_iso,
        })
        if response.tracking_url:
            shipping["tracking_url"] = response.tracking_url

        metadata = _with_event(order.metadata, {
            "status": EVENT_AWB_ASSIGNED,
            "timestamp": now_iso,
            "courier": courier,
            "trackingCode": response.awb_code,
        })
        metadata["shipping"] = shipping

        await self.store.update_order(
            order.id,
            {"courier_name": courier, "metadata": metadata},
            expected_status=SHIPMENT_BOOKED,
        )
        await self._audit(
            ACTION_AWB_ASSIGNED,
            order,
            {"order_number": order.order_number, "awb_code": response.awb_code, "courier_name": courier},
            success=True,
        )

        result = self._booked_result(order)
        result.awb_code = response.awb_code
        result.courier_name = courier
        return result

    async def refresh_tracking(self, order_id: str) -> FulfillmentResult:
        """Fetch the carrier's current status for a booked shipment."""
        order_id = str(order_id)
        async with self.locks.hold(order_id):
            try:
                order, failure = await self._load_booked(order_id)
                if failure:
                    return failure

                response = await self.client.track_shipment(order.carrier_shipment_id)
                if not response.ok:
                    return FulfillmentResult.failure(
                        order_id,
                        f"TRACKING_FAILED: HTTP {response.http_status}",
                        shipment_status=order.shipment_status,
                    )

                shipping = order.shipping_metadata
                shipping["current_status"] = response.status
                shipping["tracking_updated_at"] = isoformat(self._clock())
                if response.awb_code and not shipping.get("awb_code"):
                    shipping["awb_code"] = response.awb_code

                metadata = dict(order.metadata or {})
                metadata["shipping"] = shipping
                await self.store.update_order(order.id, {"metadata": metadata}, expected_status=SHIPMENT_BOOKED)

                result = self._booked_result(order)
                result.carrier_status = response.status
                result.awb_code = shipping.get("awb_code")
                return result
            except FulfillmentError as e:
                logger.error(f"[FULFILLMENT] Tracking refresh failed for order {order_id}: {e.reason}")
                return FulfillmentResult.failure(order_id, f"TRACKING_FAILED: {e.reason}")
            except Exception as e:
                logger.exception(f"[FULFILLMENT] Tracking refresh error for order {order_id}: {e}")
                return FulfillmentResult.failure(order_id, f"UNEXPECTED_ERROR: {e}")

    async def request_reverse_pickup(self, order_id: str) -> FulfillmentResult:
        """Ask the carrier to collect a booked shipment back from the customer."""
        order_id = str(order_id)
        async with self.locks.hold(order_id):
            try:
                order, failure = await self._load_booked(order_id)
                if failure:
                    return failure

                if (order.metadata or {}).get("return_shipment"):
                    result = self._booked_result(order, already_booked=True)
                    result.error = "RETURN_ALREADY_REQUESTED"
                    return result

                shipping_address, _ = await self._resolve_addresses(order)
                items = await self.store.get_order_items(order.id)
                payload = build_reverse_pickup_payload(order, shipping_address, items)

                response = await self.client.create_reverse_pickup(payload)
                if not response.ok:
                    reason = response.message or f"HTTP {response.http_status}"
                    return FulfillmentResult.failure(
                        order_id, f"REVERSE_PICKUP_FAILED: {reason}", shipment_status=order.shipment_status
                    )

                now_iso = isoformat(self._clock())
                metadata = _with_event(order.metadata, {
                    "status": EVENT_RETURN_REQUESTED,
                    "timestamp": now_iso,
                    "courier": response.courier_name,
                    "trackingCode": response.awb_code,
                })
                metadata["return_shipment"] = {
                    "shipment_id": response.shipment_id,
                    "status": response.status,
                    "requested_at": now_iso,
                }
                await self.store.update_order(order.id, {"metadata": metadata}, expected_status=SHIPMENT_BOOKED)
                await self._audit(
                    ACTION_REVERSE_PICKUP_REQUESTED,
                    order,
                    {"order_number": order.order_number, "return_shipment_id": response.shipment_id},
                    success=True,
                )
                return self._booked_result(order)
            except FulfillmentError as e:
                logger.error(f"[FULFILLMENT] Reverse pickup failed for order {order_id}: {e.reason}")
                return FulfillmentResult.failure(order_id, f"REVERSE_PICKUP_FAILED: {e.reason}")
            except Exception as e:
                logger.exception(f"[FULFILLMENT] Reverse pickup error for order {order_id}: {e}")
                return FulfillmentResult.failure(order_id, f"UNEXPECTED_ERROR: {e}")


def _json_safe(value: Any) -> Any:
    """Reduce error details to JSON-storable values."""
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
