"""
Customer-facing order status.

Polling this endpoint is also a trigger: an order whose payment webhook is
late gets processed by the client's own poll, after the grace delay that
lets the webhook win when it is merely slow.
"""

from uuid import UUID

from fastapi import APIRouter, HTTPException, status

from giftpipe.api.deps import PipelineDep
from giftpipe.core.logging import get_logger
from giftpipe.schemas.orchestrator import OrderStatusResponse
from giftpipe.services.fulfillment.submitter import FulfillmentError
from giftpipe.services.orchestration.trigger import TriggerSource
from giftpipe.services.orders.repository import OrderNotFoundError
from giftpipe.services.payments.verifier import (
    PaymentNotVerified,
    PaymentVerificationError,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


@router.get(
    "/{order_id}/status",
    response_model=OrderStatusResponse,
    summary="Get order status",
    description="Order status for the confirmation page; processes a paid order if needed",
)
async def get_order_status(order_id: UUID, pipeline: PipelineDep) -> OrderStatusResponse:
    """
    Return the order's status, triggering processing when it is still due.

    Raises:
        HTTPException: 404 if the order does not exist
    """
    order = await pipeline.orders.get_order_by_id(order_id)
    if order is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found",
        )

    # Every poll is an orchestrator invocation; it is a no-op once submitted
    try:
        result = await pipeline.orchestrator.handle(
            order_id, TriggerSource.CLIENT_POLL, {"endpoint": "order_status"}
        )
        order = result["order"]
    except (
        FulfillmentError,
        PaymentNotVerified,
        PaymentVerificationError,
        OrderNotFoundError,
    ) as e:
        # The customer only ever sees order status
        logger.warning(
            "Client-poll processing failed",
            order_id=str(order_id),
            error_type=type(e).__name__,
        )
        order = await pipeline.orders.get_order_by_id(order_id) or order

    return OrderStatusResponse(
        order_id=order.id,
        order_number=order.order_number,
        status=order.status.value,
        payment_status=order.payment_status.value,
        zinc_status=order.zinc_status.value if order.zinc_status else None,
        tracking_number=order.tracking_number,
        scheduled_delivery_date=order.scheduled_delivery_date,
        updated_at=order.updated_at,
    )
