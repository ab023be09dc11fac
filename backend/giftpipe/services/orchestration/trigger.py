"""
Trigger orchestrator: the single front door for order processing.

Every entry point (payment webhook, client poll, cron task, operator
recovery) calls ``TriggerOrchestrator.handle`` with a ``TriggerSource``.
The orchestrator records a processing signal, decides from the stored order
whether a vendor submission is still needed and, if so, re-confirms payment
and delegates to the fulfillment submitter.

The payment webhook is the primary source and proceeds at once; every other
source waits a short grace delay and re-reads the order, so a primary
invocation already in flight usually wins. That delay only saves work: the
guarantee of a single vendor submission comes from the storage-level claim
the submitter takes.
"""

import asyncio
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from giftpipe.core.config import get_settings
from giftpipe.core.logging import bind_order_id, get_logger
from giftpipe.database.models.order import Order
from giftpipe.services.fulfillment.submitter import (
    AlreadySubmitted,
    DuplicateSubmissionAttempt,
    FulfillmentSubmitter,
)
from giftpipe.services.orchestration.signals import SignalLog
from giftpipe.services.orders.repository import OrderNotFoundError, OrderRepository
from giftpipe.services.orders.state_machine import needs_processing
from giftpipe.services.payments.verifier import (
    PaymentNotVerified,
    PaymentVerificationError,
    PaymentVerifier,
)
from giftpipe.services.scheduling.policy import compute_next_retry_at

logger = get_logger(__name__)


class TriggerSource(str, Enum):
    """Where an orchestration request came from."""

    STRIPE_WEBHOOK = "stripe-webhook"
    CLIENT_POLL = "client-poll"
    CRON = "cron"
    MANUAL_RECOVERY = "manual-recovery"

    @property
    def is_primary(self) -> bool:
        return self is TriggerSource.STRIPE_WEBHOOK

    @classmethod
    def from_string(cls, value: str) -> "TriggerSource":
        """
        Parse a trigger source tag.

        Raises:
            ValueError: If the tag is not a known trigger source
        """
        try:
            return cls(value)
        except ValueError:
            valid_values = ", ".join(s.value for s in cls)
            raise ValueError(
                f"Invalid trigger source: {value}. Valid values are: {valid_values}"
            )


def _result(order: Order, processed: bool, **extra: Any) -> dict[str, Any]:
    return {
        "processed": processed,
        "status": order.status.value,
        "zinc_status": order.zinc_status.value if order.zinc_status else None,
        "order": order,
        **extra,
    }


class TriggerOrchestrator:
    """Decides whether an order needs submitting and drives the submission."""

    def __init__(
        self,
        repository: OrderRepository,
        signal_log: SignalLog,
        verifier: PaymentVerifier,
        submitter: FulfillmentSubmitter,
        grace_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            repository: Order repository
            signal_log: Best-effort audit log of invocations
            verifier: Payment verifier used before every submission
            submitter: Fulfillment submitter
            grace_seconds: Delay secondary sources wait (defaults to settings)
            sleep: Awaitable sleep, replaceable in tests
            clock: Current-time source, for tests
        """
        self.repository = repository
        self.signal_log = signal_log
        self.verifier = verifier
        self.submitter = submitter
        self.grace_seconds = (
            grace_seconds
            if grace_seconds is not None
            else get_settings().primary_trigger_grace_seconds
        )
        self.sleep = sleep
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def handle(
        self,
        order_id: uuid.UUID,
        trigger_source: TriggerSource,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Process an order if it still needs a vendor submission.

        Safe to call any number of times, concurrently, from any source.

        Args:
            order_id: Order identifier
            trigger_source: Which entry point is calling
            metadata: Free-form invocation context stored with the signal

        Returns:
            Dictionary with ``processed``, ``status``, ``zinc_status`` and the
            ``order``; ``vendor_order_id`` is added when this call submitted

        Raises:
            OrderNotFoundError: If the order does not exist
            PaymentVerificationError: If payment could not be re-confirmed
            SubmissionError: If the vendor did not take the order
        """
        trigger_source = TriggerSource(trigger_source)
        bind_order_id(str(order_id))

        await self.signal_log.record(order_id, trigger_source.value, metadata)

        order = await self._load(order_id)
        if not needs_processing(order):
            return self._skip(order, trigger_source)

        if not trigger_source.is_primary and self.grace_seconds > 0:
            await self.sleep(self.grace_seconds)
            order = await self._load(order_id)
            if not needs_processing(order):
                return self._skip(order, trigger_source)

        logger.info(
            "Processing order",
            order_id=str(order_id),
            trigger_source=trigger_source.value,
            status=order.status.value,
        )

        try:
            verification = await self.verifier.verify(order)
        except PaymentVerificationError as e:
            await self.repository.mark_retry_pending(
                order.id,
                reason="payment_verification_unavailable",
                next_retry_at=compute_next_retry_at(order.retry_count, self.clock()),
                zinc_status=order.zinc_status,
            )
            logger.error(
                "Payment verification unavailable, retry scheduled",
                **e.context,
            )
            raise

        if not verification["verified"]:
            raise PaymentNotVerified(
                "Payment processor does not confirm capture",
                payment_status=verification["payment_status"],
                order_id=str(order_id),
                processor_status=verification["processor_status"],
            )
        order = verification["order"]

        try:
            submission = await self.submitter.submit(order)
        except (AlreadySubmitted, DuplicateSubmissionAttempt) as e:
            # Another invocation won the claim or already recorded the handle
            current = await self._load(order_id)
            logger.info(
                "Submission already handled elsewhere",
                reason=type(e).__name__,
                order_id=str(order_id),
                trigger_source=trigger_source.value,
            )
            return _result(current, processed=False)

        logger.info(
            "Order submitted",
            order_id=str(order_id),
            trigger_source=trigger_source.value,
            vendor_order_id=submission["vendor_order_id"],
        )
        return _result(
            submission["order"],
            processed=True,
            vendor_order_id=submission["vendor_order_id"],
        )

    async def _load(self, order_id: uuid.UUID) -> Order:
        order = await self.repository.get_order_by_id(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        return order

    @staticmethod
    def _skip(order: Order, trigger_source: TriggerSource) -> dict[str, Any]:
        logger.info(
            "Order does not need processing",
            order_id=str(order.id),
            trigger_source=trigger_source.value,
            status=order.status.value,
            payment_status=order.payment_status.value,
            zinc_order_id=order.zinc_order_id,
        )
        return _result(order, processed=False)
