"""
Manual recovery: operator-driven repair of a single order.

Recovery re-checks payment with the processor and refuses to go further
when the processor does not confirm capture. When it does, the local order
is repaired by the verifier and handed to the orchestrator as
``manual-recovery``. Calling it again on the same order is harmless: the
orchestrator's idempotency check turns repeats into no-ops.
"""

import uuid
from typing import Any

from giftpipe.core.logging import get_logger
from giftpipe.services.fulfillment.submitter import FulfillmentError
from giftpipe.services.orchestration.trigger import TriggerOrchestrator, TriggerSource
from giftpipe.services.orders.repository import OrderNotFoundError, OrderRepository
from giftpipe.services.orders.state_machine import StateTransitionError
from giftpipe.services.payments.verifier import (
    DASHBOARD_SUGGESTION,
    PaymentNotVerified,
    PaymentVerificationError,
    PaymentVerifier,
)

logger = get_logger(__name__)


class RecoveryError(Exception):
    """Raised when recovery fails for a reason other than payment."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class ManualRecoveryService:
    """Repairs an order whose payment webhook or submission was missed."""

    def __init__(
        self,
        repository: OrderRepository,
        verifier: PaymentVerifier,
        orchestrator: TriggerOrchestrator,
    ):
        self.repository = repository
        self.verifier = verifier
        self.orchestrator = orchestrator

    async def recover(
        self, order_id: uuid.UUID, operator: str = "operator"
    ) -> dict[str, Any]:
        """
        Recover one order.

        Args:
            order_id: Order identifier
            operator: Who asked for the recovery, stored with the signal

        Returns:
            Dictionary with the ``order``, the orchestrator's
            ``trigger_result`` and, when payment was repaired but the
            re-trigger failed, a ``warning``

        Raises:
            OrderNotFoundError: If the order does not exist
            PaymentNotVerified: If the processor does not confirm capture
            RecoveryError: If the processor could not be consulted
        """
        order = await self.repository.get_order_by_id(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))

        logger.info(
            "Manual recovery started",
            order_id=str(order_id),
            operator=operator,
            status=order.status.value,
            payment_status=order.payment_status.value,
        )

        try:
            verification = await self.verifier.verify(order)
        except PaymentVerificationError as e:
            raise RecoveryError(
                f"Could not verify payment: {e}",
                suggestion=DASHBOARD_SUGGESTION,
                **e.context,
            ) from e

        if not verification["verified"]:
            logger.warning(
                "Manual recovery refused, payment not confirmed",
                order_id=str(order_id),
                processor_status=verification["processor_status"],
            )
            raise PaymentNotVerified(
                "Payment is not confirmed by the payment processor "
                f"(status: {verification['processor_status'] or 'unknown'})",
                payment_status=verification["payment_status"],
                order_id=str(order_id),
                processor_status=verification["processor_status"],
            )

        order = verification["order"]
        try:
            trigger_result = await self.orchestrator.handle(
                order.id,
                TriggerSource.MANUAL_RECOVERY,
                {"operator": operator},
            )
        except (
            FulfillmentError,
            PaymentVerificationError,
            StateTransitionError,
        ) as e:
            refreshed = await self.repository.get_order_by_id(order_id)
            logger.warning(
                "Payment repaired but fulfillment re-trigger failed",
                order_id=str(order_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            return {
                "order": refreshed or order,
                "trigger_result": None,
                "warning": f"Payment verified but fulfillment trigger failed: {e}",
            }

        logger.info(
            "Manual recovery finished",
            order_id=str(order_id),
            processed=trigger_result["processed"],
            status=trigger_result["status"],
        )
        return {
            "order": trigger_result["order"],
            "trigger_result": trigger_result,
            "warning": None,
        }
