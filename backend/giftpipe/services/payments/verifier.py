"""
Payment verifier: confirms captured funds with the payment processor.

The processor is the authority on whether money was captured. The verifier
reads the payment intent, reports whether it succeeded and, when the
processor disagrees with the locally stored status, repairs the order. That
repair is how an order whose payment webhook was missed gets unstuck.

Processor errors are reported as ``PaymentVerificationError``; they are not
retried here. Callers decide whether to schedule a retry.
"""

import asyncio
from typing import Any, Optional

from giftpipe.core.config import get_settings
from giftpipe.core.logging import get_logger, log_performance
from giftpipe.database.models.order import Order
from giftpipe.services.orders.enums import OrderStatus, PaymentStatus
from giftpipe.services.orders.repository import OrderRepository
from giftpipe.services.payments.stripe_client import StripeClient, StripeClientError

logger = get_logger(__name__)

DASHBOARD_SUGGESTION = (
    "Check the payment intent in the Stripe dashboard directly before "
    "retrying recovery."
)


class PaymentVerificationError(Exception):
    """Raised when the payment processor could not be consulted."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class PaymentNotVerified(Exception):
    """Raised when the processor does not confirm captured funds."""

    def __init__(
        self,
        message: str,
        payment_status: Optional[str] = None,
        suggestion: str = DASHBOARD_SUGGESTION,
        **context: Any,
    ):
        super().__init__(message)
        self.payment_status = payment_status
        self.suggestion = suggestion
        self.context = context


class PaymentVerifier:
    """Checks an order's payment against the processor and repairs drift."""

    def __init__(
        self,
        repository: OrderRepository,
        stripe_client: StripeClient,
        timeout_seconds: Optional[float] = None,
    ):
        """
        Initialize the verifier.

        Args:
            repository: Order repository used for repairs
            stripe_client: Payment processor client
            timeout_seconds: Upper bound on the processor lookup
        """
        self.repository = repository
        self.stripe_client = stripe_client
        self.timeout_seconds = (
            timeout_seconds
            if timeout_seconds is not None
            else get_settings().stripe_timeout_seconds
        )

    async def verify(self, order: Order) -> dict[str, Any]:
        """
        Verify an order's payment with the processor.

        Args:
            order: Order with a payment-intent reference

        Returns:
            Dictionary with ``verified``, ``payment_status`` (local view after
            any repair), ``processor_status`` and the current ``order``

        Raises:
            PaymentVerificationError: If the processor lookup fails or times out
        """
        if not order.payment_intent_id:
            logger.warning(
                "Order has no payment intent to verify",
                order_id=str(order.id),
            )
            return {
                "verified": False,
                "payment_status": order.payment_status.value,
                "processor_status": None,
                "order": order,
            }

        try:
            with log_performance(
                logger,
                "payment_verification",
                order_id=str(order.id),
                payment_intent_id=order.payment_intent_id,
            ):
                intent = await asyncio.wait_for(
                    asyncio.to_thread(
                        self.stripe_client.retrieve_payment_intent,
                        order.payment_intent_id,
                    ),
                    timeout=self.timeout_seconds,
                )
        except asyncio.TimeoutError as e:
            raise PaymentVerificationError(
                "Payment processor lookup timed out",
                order_id=str(order.id),
                payment_intent_id=order.payment_intent_id,
                timeout_seconds=self.timeout_seconds,
            ) from e
        except StripeClientError as e:
            raise PaymentVerificationError(
                f"Payment processor lookup failed: {e}",
                order_id=str(order.id),
                payment_intent_id=order.payment_intent_id,
                code=e.code,
            ) from e

        processor_status = intent.status
        verified = processor_status == "succeeded"

        if verified and (
            order.payment_status != PaymentStatus.SUCCEEDED
            or order.status == OrderStatus.PENDING
        ):
            previous_status = order.payment_status
            order = await self.repository.update_payment_status(
                order.id,
                PaymentStatus.SUCCEEDED,
                confirm_order=True,
            )
            logger.warning(
                "Payment status repaired from processor",
                order_id=str(order.id),
                previous_payment_status=previous_status.value,
                status=order.status.value,
            )

        payment_status = (
            PaymentStatus.SUCCEEDED
            if verified
            else PaymentStatus.from_processor(processor_status)
        )

        logger.info(
            "Payment verified" if verified else "Payment not captured",
            order_id=str(order.id),
            processor_status=processor_status,
        )

        return {
            "verified": verified,
            "payment_status": payment_status.value,
            "processor_status": processor_status,
            "order": order,
        }
