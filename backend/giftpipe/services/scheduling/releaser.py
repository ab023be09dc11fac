"""
Scheduled-order releaser.

Orders with a requested delivery date far enough out are held as
``scheduled``. Once the date, less the vendor lead time, has arrived the
releaser moves them back into the pipeline and triggers them as ``cron``.
"""

import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Optional

from giftpipe.core.config import get_settings
from giftpipe.core.logging import clear_context, get_logger
from giftpipe.database.models.order import Order
from giftpipe.services.fulfillment.submitter import FulfillmentError
from giftpipe.services.orchestration.trigger import TriggerOrchestrator, TriggerSource
from giftpipe.services.orders.enums import OrderStatus, PaymentStatus
from giftpipe.services.orders.repository import (
    OrderNotFoundError,
    OrderRepository,
    OrderRepositoryError,
)
from giftpipe.services.orders.state_machine import StateTransitionError
from giftpipe.services.payments.verifier import (
    PaymentNotVerified,
    PaymentVerificationError,
)

logger = get_logger(__name__)

HOLDABLE_STATUSES = {OrderStatus.PENDING, OrderStatus.PAYMENT_CONFIRMED}


def release_date(delivery_date: date, lead_time_days: int) -> date:
    """Day an order for ``delivery_date`` must be handed to the vendor."""
    return delivery_date - timedelta(days=lead_time_days)


def should_hold(order: Order, today: date, lead_time_days: int) -> bool:
    """True when the order's delivery date lies beyond the lead time."""
    if order.scheduled_delivery_date is None:
        return False
    return release_date(order.scheduled_delivery_date, lead_time_days) > today


class ScheduledOrderReleaser:
    """Releases held orders and applies operator date overrides."""

    def __init__(
        self,
        repository: OrderRepository,
        orchestrator: Optional[TriggerOrchestrator] = None,
        lead_time_days: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the releaser.

        Args:
            repository: Order repository
            orchestrator: Orchestrator released orders are handed to
            lead_time_days: Vendor lead time (defaults to settings)
            clock: Current-time source, for tests
        """
        self.repository = repository
        self.orchestrator = orchestrator
        self.lead_time_days = (
            lead_time_days
            if lead_time_days is not None
            else get_settings().scheduled_lead_time_days
        )
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def today(self) -> date:
        return self.clock().date()

    async def hold_if_scheduled(self, order: Order) -> Order:
        """Move a not-yet-due order to ``scheduled``; return it unchanged otherwise."""
        if order.status not in HOLDABLE_STATUSES or order.zinc_order_id:
            return order
        if not should_hold(order, self.today(), self.lead_time_days):
            return order
        held = await self.repository.transition_status(order.id, OrderStatus.SCHEDULED)
        logger.info(
            "Order held until delivery window",
            order_id=str(order.id),
            scheduled_delivery_date=order.scheduled_delivery_date.isoformat(),
        )
        return held

    async def release_due(self) -> dict[str, Any]:
        """
        Release every scheduled order whose delivery window has opened.

        Returns:
            Summary with released, triggered and failed order ids
        """
        today = self.today()
        orders = await self.repository.find_due_scheduled(
            today + timedelta(days=self.lead_time_days)
        )
        summary: dict[str, Any] = {"released": [], "triggered": [], "failed": []}

        for order in orders:
            order_id = str(order.id)
            target = (
                OrderStatus.PAYMENT_CONFIRMED
                if order.payment_status == PaymentStatus.SUCCEEDED
                else OrderStatus.PENDING
            )
            try:
                await self.repository.transition_status(order.id, target)
                summary["released"].append(order_id)
                logger.info(
                    "Scheduled order released",
                    order_id=order_id,
                    status=target.value,
                    scheduled_delivery_date=order.scheduled_delivery_date.isoformat(),
                )

                if self.orchestrator is not None and target == OrderStatus.PAYMENT_CONFIRMED:
                    result = await self.orchestrator.handle(
                        order.id,
                        TriggerSource.CRON,
                        {"released_on": today.isoformat()},
                    )
                    if result["processed"]:
                        summary["triggered"].append(order_id)
            except (
                FulfillmentError,
                PaymentNotVerified,
                PaymentVerificationError,
                StateTransitionError,
                OrderRepositoryError,
            ) as e:
                summary["failed"].append(order_id)
                logger.warning(
                    "Scheduled order release failed",
                    order_id=order_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                clear_context()

        logger.info(
            "Scheduled release finished",
            due=len(orders),
            released=len(summary["released"]),
            triggered=len(summary["triggered"]),
            failed=len(summary["failed"]),
        )
        return summary

    async def update_order_date(self, order_id: uuid.UUID, new_date: date) -> Order:
        """
        Operator override of an order's requested delivery date.

        Args:
            order_id: Order identifier
            new_date: New requested delivery date

        Returns:
            Updated order

        Raises:
            OrderNotFoundError: If the order does not exist
            StateTransitionError: If the order already holds a vendor handle
                or is terminal
        """
        order = await self.repository.get_order_by_id(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        if order.zinc_order_id or order.status.is_terminal():
            raise StateTransitionError(
                "Order can no longer be rescheduled",
                current_state=order.status,
                target_state=order.status,
                order_id=str(order_id),
                zinc_order_id=order.zinc_order_id,
            )

        status = None
        if order.status in HOLDABLE_STATUSES and (
            release_date(new_date, self.lead_time_days) > self.today()
        ):
            status = OrderStatus.SCHEDULED

        updated = await self.repository.update_scheduled_date(
            order_id, new_date, status=status
        )
        logger.info(
            "Scheduled delivery date changed",
            order_id=str(order_id),
            previous_date=order.scheduled_delivery_date.isoformat()
            if order.scheduled_delivery_date
            else None,
            new_date=new_date.isoformat(),
            status=updated.status.value,
        )
        return updated
