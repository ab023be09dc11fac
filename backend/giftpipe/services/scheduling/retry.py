"""
Retry scheduler: re-drives orders whose next attempt is due.

Each run takes a bounded batch of ``retry_pending`` orders, oldest due
first, bumps their ``retry_count`` and hands them back to the orchestrator
as ``cron`` triggers. The backoff itself lives in ``policy`` so it can be
tested without any vendor or database involvement.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Optional

from giftpipe.core.config import get_settings
from giftpipe.core.logging import clear_context, get_logger
from giftpipe.database.models.order import Order
from giftpipe.services.fulfillment.submitter import FulfillmentError
from giftpipe.services.fulfillment.vendor_events import VendorEventHandler
from giftpipe.services.fulfillment.zinc_client import VendorClientError
from giftpipe.services.orchestration.trigger import TriggerOrchestrator, TriggerSource
from giftpipe.services.orders.enums import OrderStatus
from giftpipe.services.orders.repository import OrderRepository, OrderRepositoryError
from giftpipe.services.orders.state_machine import StateTransitionError
from giftpipe.services.payments.verifier import (
    PaymentNotVerified,
    PaymentVerificationError,
)
from giftpipe.services.scheduling.policy import compute_next_retry_at

logger = get_logger(__name__)


class RetryScheduler:
    """Scans for due retries and re-invokes the orchestrator."""

    def __init__(
        self,
        repository: OrderRepository,
        orchestrator: TriggerOrchestrator,
        vendor_events: Optional[VendorEventHandler] = None,
        batch_size: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            repository: Order repository
            orchestrator: Orchestrator retries are handed to
            vendor_events: Used to reconcile retries that already hold a
                vendor handle
            batch_size: Orders per run (defaults to settings)
            clock: Current-time source, for tests
        """
        self.repository = repository
        self.orchestrator = orchestrator
        self.vendor_events = vendor_events
        self.batch_size = batch_size or get_settings().retry_batch_size
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def scan(self) -> dict[str, Any]:
        """
        Run one retry pass.

        Returns:
            Summary with counts of retried, submitted, reconciled and failed
            orders
        """
        now = self.clock()
        orders = await self.repository.find_due_retries(now, self.batch_size)
        summary: dict[str, Any] = {
            "due": len(orders),
            "retried": 0,
            "submitted": 0,
            "reconciled": 0,
            "failed": [],
        }

        for order in orders:
            try:
                if order.zinc_order_id:
                    await self._reconcile(order)
                    summary["reconciled"] += 1
                    continue

                order = await self.repository.increment_retry_count(order.id)
                result = await self.orchestrator.handle(
                    order.id,
                    TriggerSource.CRON,
                    {
                        "retry_count": order.retry_count,
                        "retry_reason": order.retry_reason,
                    },
                )
                summary["retried"] += 1
                if result["processed"]:
                    summary["submitted"] += 1
                elif result["status"] == OrderStatus.RETRY_PENDING.value:
                    await self._push_back(result["order"], "retry_skipped")
            except PaymentNotVerified as e:
                summary["failed"].append(str(order.id))
                logger.warning(
                    "Retry blocked, payment not confirmed",
                    order_id=str(order.id),
                    payment_status=e.payment_status,
                )
                await self._push_back(order, "payment_not_verified")
            except (
                FulfillmentError,
                PaymentVerificationError,
                StateTransitionError,
                OrderRepositoryError,
            ) as e:
                # Submission failures already rescheduled the order
                summary["failed"].append(str(order.id))
                logger.warning(
                    "Retry attempt failed",
                    order_id=str(order.id),
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                clear_context()

        if orders:
            logger.info(
                "Retry scan finished",
                due=summary["due"],
                retried=summary["retried"],
                submitted=summary["submitted"],
                reconciled=summary["reconciled"],
                failed=len(summary["failed"]),
            )
        return summary

    async def _reconcile(self, order: Order) -> None:
        # The vendor already holds this order; resubmitting would duplicate it
        order = await self.repository.increment_retry_count(order.id)
        result = await self.orchestrator.handle(
            order.id,
            TriggerSource.CRON,
            {
                "retry_count": order.retry_count,
                "retry_reason": order.retry_reason,
                "zinc_order_id": order.zinc_order_id,
            },
        )
        if result["processed"] or result["status"] != OrderStatus.RETRY_PENDING.value:
            return
        order = await self.repository.transition_status(
            order.id,
            OrderStatus.PROCESSING,
            next_retry_at=None,
            retry_reason=None,
        )
        logger.info(
            "Retry returned to vendor tracking",
            order_id=str(order.id),
            zinc_order_id=order.zinc_order_id,
        )
        if self.vendor_events is None:
            return
        try:
            await self.vendor_events.sync_order(order)
        except VendorClientError as e:
            logger.warning(
                "Vendor status check failed during reconcile",
                order_id=str(order.id),
                code=e.code,
                error=str(e),
            )

    async def _push_back(self, order: Order, reason: str) -> None:
        next_retry_at = compute_next_retry_at(order.retry_count, self.clock())
        await self.repository.mark_retry_pending(
            order.id,
            reason=reason,
            next_retry_at=next_retry_at,
            zinc_status=order.zinc_status,
        )
