"""
Webhook receivers for the payment processor and the fulfillment vendor.
"""

from typing import Annotated, Any
from uuid import UUID

from fastapi import APIRouter, Header, HTTPException, Query, Request, status

from giftpipe.api.deps import PipelineDep
from giftpipe.core.logging import get_logger
from giftpipe.services.fulfillment.submitter import FulfillmentError
from giftpipe.services.fulfillment.vendor_events import (
    UnknownVendorEvent,
    WebhookAuthenticationError,
)
from giftpipe.services.orders.repository import OrderNotFoundError
from giftpipe.services.orders.state_machine import StateTransitionError
from giftpipe.services.payments.stripe_client import StripeClientError
from giftpipe.services.payments.verifier import (
    PaymentNotVerified,
    PaymentVerificationError,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/stripe",
    status_code=status.HTTP_200_OK,
    summary="Handle Stripe webhook",
    description="Verify a Stripe event and apply it to its order",
)
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: Annotated[str, Header(alias="stripe-signature")],
    pipeline: PipelineDep,
) -> dict[str, Any]:
    """
    Handle a Stripe webhook event.

    Raises:
        HTTPException: 400 for an invalid signature, 503 when the payment
            processor could not be consulted (Stripe redelivers)
    """
    payload = await request.body()
    try:
        event = pipeline.stripe_client.construct_webhook_event(payload, stripe_signature)
    except StripeClientError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": "Invalid webhook", "code": e.code},
        ) from e

    try:
        result = await pipeline.payment_webhooks.handle_event(event)
    except PaymentVerificationError as e:
        logger.error("Payment verification unavailable for webhook", **e.context)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment verification unavailable",
        ) from e
    except (FulfillmentError, PaymentNotVerified) as e:
        # The order carries its retry state; acknowledging stops redelivery
        logger.warning(
            "Webhook processed with fulfillment error",
            event_id=event.id,
            error=str(e),
            error_type=type(e).__name__,
        )
        result = {"handled": True, "processed": False}

    return {"received": True, "event_id": event.id, **result}


@router.post(
    "/zinc/{event}",
    status_code=status.HTTP_200_OK,
    summary="Handle vendor webhook",
    description="Apply a fulfillment vendor status callback to its order",
)
async def handle_vendor_webhook(
    event: str,
    request: Request,
    pipeline: PipelineDep,
    order_id: Annotated[UUID, Query(alias="orderId")],
    token: Annotated[str, Query(min_length=1)],
) -> dict[str, Any]:
    """
    Handle a vendor callback.

    Raises:
        HTTPException: 400 for unknown events, 401 for a bad token, 404 for
            an unknown order, 409 for a transition the order no longer allows
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = {}

    try:
        order = await pipeline.vendor_events.handle_webhook(
            order_id, token, event, payload if isinstance(payload, dict) else {}
        )
    except UnknownVendorEvent as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except WebhookAuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook token"
        ) from e
    except OrderNotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Order not found"
        ) from e
    except StateTransitionError as e:
        logger.warning(
            "Vendor webhook conflicts with order state",
            order_id=str(order_id),
            vendor_event=event,
            current_state=e.current_state.value,
            target_state=e.target_state.value,
        )
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail="Order state conflict"
        ) from e

    return {
        "received": True,
        "order_id": str(order.id),
        "status": order.status.value,
        "zinc_status": order.zinc_status.value if order.zinc_status else None,
    }
