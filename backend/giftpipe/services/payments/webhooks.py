"""
Payment webhook handling.

Translates verified Stripe events into order updates. A captured payment is
confirmed through the payment verifier (the processor stays the authority)
and then handed to the orchestrator as the primary trigger; orders with a
delivery date beyond the vendor lead time are held as ``scheduled``
instead.
"""

from typing import Any, Optional

import stripe

from giftpipe.core.logging import get_logger
from giftpipe.services.orchestration.trigger import TriggerOrchestrator, TriggerSource
from giftpipe.services.orders.enums import PaymentStatus
from giftpipe.services.orders.repository import OrderRepository
from giftpipe.services.payments.verifier import PaymentVerifier
from giftpipe.services.scheduling.releaser import ScheduledOrderReleaser

logger = get_logger(__name__)


class PaymentWebhookHandler:
    """Applies payment-intent events to orders."""

    def __init__(
        self,
        repository: OrderRepository,
        verifier: PaymentVerifier,
        orchestrator: TriggerOrchestrator,
        releaser: ScheduledOrderReleaser,
    ):
        self.repository = repository
        self.verifier = verifier
        self.orchestrator = orchestrator
        self.releaser = releaser

    async def handle_event(self, event: stripe.Event) -> dict[str, Any]:
        """
        Handle one verified webhook event.

        Args:
            event: Stripe event whose signature has been checked

        Returns:
            Dictionary describing what was done with the event
        """
        if event.type == "payment_intent.succeeded":
            return await self.handle_payment_succeeded(event.data.object["id"], event.id)
        if event.type == "payment_intent.payment_failed":
            return await self.handle_payment_failed(event.data.object["id"])

        logger.info("Webhook event ignored", event_id=event.id, event_type=event.type)
        return {"handled": False, "event_type": event.type}

    async def handle_payment_succeeded(
        self, payment_intent_id: str, event_id: Optional[str] = None
    ) -> dict[str, Any]:
        order = await self.repository.get_order_by_payment_intent(payment_intent_id)
        if order is None:
            logger.warning(
                "Payment succeeded for unknown order",
                payment_intent_id=payment_intent_id,
            )
            return {"handled": False, "reason": "order_not_found"}

        verification = await self.verifier.verify(order)
        order = verification["order"]
        if not verification["verified"]:
            logger.warning(
                "Payment webhook not confirmed by processor",
                order_id=str(order.id),
                processor_status=verification["processor_status"],
            )
            return {
                "handled": True,
                "order_id": str(order.id),
                "processed": False,
                "status": order.status.value,
            }

        order = await self.releaser.hold_if_scheduled(order)
        result = await self.orchestrator.handle(
            order.id,
            TriggerSource.STRIPE_WEBHOOK,
            {"payment_intent_id": payment_intent_id, "event_id": event_id},
        )
        return {
            "handled": True,
            "order_id": str(order.id),
            "processed": result["processed"],
            "status": result["status"],
        }

    async def handle_payment_failed(self, payment_intent_id: str) -> dict[str, Any]:
        order = await self.repository.get_order_by_payment_intent(payment_intent_id)
        if order is None:
            logger.warning(
                "Payment failed for unknown order",
                payment_intent_id=payment_intent_id,
            )
            return {"handled": False, "reason": "order_not_found"}

        # update_payment_status never downgrades a captured payment
        order = await self.repository.update_payment_status(
            order.id, PaymentStatus.FAILED
        )
        logger.warning(
            "Payment failed",
            order_id=str(order.id),
            payment_status=order.payment_status.value,
        )
        return {
            "handled": True,
            "order_id": str(order.id),
            "processed": False,
            "status": order.status.value,
        }
