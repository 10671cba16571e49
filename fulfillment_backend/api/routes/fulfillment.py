"""
Fulfillment API Routes

Internal endpoints for:
- Booking a shipment when an order is paid
- Retrying failed shipments (single or batch)
- AWB assignment, tracking refresh and reverse pickup
- Internal rate lookup

All routes require the X-System-Token header. Booking failures are returned
in the body with HTTP 200; they never fail the payment caller.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from fulfillment_backend.api.deps import get_orchestrator, require_system_token
from fulfillment_backend.schemas.fulfillment import (
    CourierRateResponse,
    FulfillmentResponse,
    OrderPaidRequest,
    RateQuoteResponse,
    RetryBatchResponse,
    RetryShipmentRequest,
)
from fulfillment_backend.services.fulfillment import FulfillmentOrchestrator, FulfillmentResult

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/fulfillment",
    tags=["fulfillment"],
    dependencies=[Depends(require_system_token)],
)


def result_to_response(result: FulfillmentResult) -> FulfillmentResponse:
    return FulfillmentResponse(**result.to_dict())


@router.post("/on-payment", response_model=FulfillmentResponse)
async def create_shipment_on_payment(
    request: OrderPaidRequest,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """Book the shipment for a freshly paid order."""
    result = await orchestrator.create_shipment_for_paid_order(request.order_id)
    return result_to_response(result)


@router.post("/retry")
async def retry_shipment(
    request: RetryShipmentRequest,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """
    Retry booking for a FAILED order, or for a batch of up to 50.

    Returns a FulfillmentResponse for a single order and a RetryBatchResponse
    for a batch.
    """
    if request.batch_order_ids:
        try:
            results = await orchestrator.retry_failed_shipments(request.batch_order_ids)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        succeeded = sum(1 for r in results if r.success)
        return RetryBatchResponse(
            total=len(results),
            succeeded=succeeded,
            failed=len(results) - succeeded,
            results=[result_to_response(r) for r in results],
        )

    result = await orchestrator.create_shipment_for_paid_order(request.order_id)
    return result_to_response(result)


@router.post("/{order_id}/awb", response_model=FulfillmentResponse)
async def assign_awb(
    order_id: str,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """Assign an AWB to a booked shipment."""
    return result_to_response(await orchestrator.assign_awb(order_id))


@router.post("/{order_id}/tracking/refresh", response_model=FulfillmentResponse)
async def refresh_tracking(
    order_id: str,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """Pull the latest carrier status for a booked shipment."""
    return result_to_response(await orchestrator.refresh_tracking(order_id))


@router.post("/{order_id}/reverse-pickup", response_model=FulfillmentResponse)
async def request_reverse_pickup(
    order_id: str,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """Request a return pickup for a booked shipment."""
    return result_to_response(await orchestrator.request_reverse_pickup(order_id))


@router.get("/rates/{pincode}", response_model=RateQuoteResponse)
async def get_shipping_rates(
    pincode: str,
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator),
):
    """Internal shipping cost for a delivery pincode (cheapest courier first)."""
    calculator = orchestrator.rate_calculator
    cheapest = await calculator.calculate_shipping_rate(pincode)
    if not cheapest.success:
        return RateQuoteResponse(success=False, pincode=pincode, error=cheapest.error)

    listing = await calculator.get_all_shipping_rates(pincode)
    return RateQuoteResponse(
        success=True,
        pincode=pincode,
        cost=cheapest.cost,
        courier_name=cheapest.courier_name,
        estimated_days=cheapest.estimated_days,
        couriers=[
            CourierRateResponse(
                courier_name=q.courier_name,
                courier_company_id=q.courier_company_id,
                cost=q.cost,
                estimated_days=q.estimated_days,
            )
            for q in listing.couriers
        ],
    )
