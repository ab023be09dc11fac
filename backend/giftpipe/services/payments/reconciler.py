"""
Payment reconciler: repairs orders whose payment webhook never arrived.

Every other automated path skips an order that is not paid locally, so an
order paid at the processor but still ``pending`` here would wait for an
operator. Each run re-checks a bounded batch of such orders with the
processor through the Payment Verifier, which repairs the local payment
state, and hands every repaired order to the orchestrator as a ``cron``
trigger.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from giftpipe.core.config import get_settings
from giftpipe.core.logging import clear_context, get_logger
from giftpipe.services.fulfillment.submitter import FulfillmentError
from giftpipe.services.orchestration.trigger import TriggerOrchestrator, TriggerSource
from giftpipe.services.orders.repository import OrderRepository, OrderRepositoryError
from giftpipe.services.orders.state_machine import StateTransitionError
from giftpipe.services.payments.verifier import (
    PaymentNotVerified,
    PaymentVerificationError,
    PaymentVerifier,
)

logger = get_logger(__name__)


class PaymentReconciler:
    """Finds locally unconfirmed payments the processor has captured."""

    def __init__(
        self,
        repository: OrderRepository,
        verifier: PaymentVerifier,
        orchestrator: TriggerOrchestrator,
        lookback: Optional[timedelta] = None,
        batch_size: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the reconciler.

        Args:
            repository: Order repository
            verifier: Payment verifier that performs the repair
            orchestrator: Orchestrator repaired orders are handed to
            lookback: How far back orders are re-checked (defaults to settings)
            batch_size: Orders per run (defaults to settings)
            clock: Current-time source, for tests
        """
        settings = get_settings()
        self.repository = repository
        self.verifier = verifier
        self.orchestrator = orchestrator
        self.lookback = lookback or timedelta(
            hours=settings.payment_reconciliation_lookback_hours
        )
        self.batch_size = batch_size or settings.payment_reconciliation_batch_size
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(self) -> dict[str, Any]:
        """
        Run one reconciliation pass.

        Returns:
            Summary with counts of checked, reconciled, submitted and still
            unpaid orders, and the ids of orders that failed
        """
        now = self.clock()
        orders = await self.repository.find_unconfirmed_payments(
            now - self.lookback, self.batch_size
        )
        summary: dict[str, Any] = {
            "checked": len(orders),
            "reconciled": 0,
            "submitted": 0,
            "unpaid": 0,
            "failed": [],
        }

        for order in orders:
            try:
                verification = await self.verifier.verify(order)
                if not verification["verified"]:
                    summary["unpaid"] += 1
                    continue

                summary["reconciled"] += 1
                logger.warning(
                    "Missed payment confirmation reconciled",
                    order_id=str(order.id),
                    order_number=order.order_number,
                    payment_intent_id=order.payment_intent_id,
                    status=verification["order"].status.value,
                )
                result = await self.orchestrator.handle(
                    order.id,
                    TriggerSource.CRON,
                    {
                        "reconciliation": True,
                        "processor_status": verification["processor_status"],
                    },
                )
                if result["processed"]:
                    summary["submitted"] += 1
            except (
                FulfillmentError,
                PaymentNotVerified,
                PaymentVerificationError,
                StateTransitionError,
                OrderRepositoryError,
            ) as e:
                summary["failed"].append(str(order.id))
                logger.warning(
                    "Payment reconciliation failed for order",
                    order_id=str(order.id),
                    error=str(e),
                    error_type=type(e).__name__,
                )
            finally:
                clear_context()

        if orders:
            logger.info(
                "Payment reconciliation finished",
                checked=summary["checked"],
                reconciled=summary["reconciled"],
                submitted=summary["submitted"],
                unpaid=summary["unpaid"],
                failed=len(summary["failed"]),
            )
        return summary
