"""
Fulfillment submitter: hands a paid order to the vendor exactly once.

The submitter takes the storage-level claim (``zinc_status='submitting'``)
before it calls the vendor, so a crash mid-call leaves a marker the timeout
monitor can find, and a concurrent caller that lost the claim never reaches
the vendor at all. Vendor failures move the order to ``retry_pending`` with
a reason and the next attempt time from the backoff table; they are never
terminal.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from giftpipe.core.config import get_settings
from giftpipe.core.logging import get_logger
from giftpipe.database.models.alert import AlertSeverity, AlertType
from giftpipe.database.models.order import Order
from giftpipe.services.alerts.repository import AlertRepository, AlertRepositoryError
from giftpipe.services.fulfillment.zinc_client import (
    VendorClientError,
    VendorRejectedError,
    ZincClient,
)
from giftpipe.services.orders.enums import PaymentStatus, ZincStatus
from giftpipe.services.orders.repository import OrderRepository
from giftpipe.services.payments.verifier import PaymentNotVerified
from giftpipe.services.scheduling.policy import compute_next_retry_at

logger = get_logger(__name__)

REQUIRED_ADDRESS_FIELDS = ("address_line1", "city", "state", "zip_code")


class FulfillmentError(Exception):
    """Base exception for fulfillment errors."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class SubmissionError(FulfillmentError):
    """The vendor did not take the order; a retry has been scheduled."""

    def __init__(self, message: str, reason: str, **context: Any):
        super().__init__(message, **context)
        self.reason = reason


class InvalidShippingAddress(SubmissionError):
    """The order cannot be submitted until its address is corrected."""

    pass


class MultipleDeliveryGroups(SubmissionError):
    """The items span delivery groups that one vendor order cannot ship."""

    pass


class AlreadySubmitted(FulfillmentError):
    """The order already holds a vendor handle."""

    pass


class DuplicateSubmissionAttempt(FulfillmentError):
    """Another invocation holds the submission claim for this order."""

    pass


def missing_address_fields(address: Optional[dict[str, Any]]) -> list[str]:
    """Names of required shipping fields that are absent or blank."""
    address = address or {}
    missing = [
        field
        for field in REQUIRED_ADDRESS_FIELDS
        if not str(address.get(field) or "").strip()
    ]
    has_name = any(
        str(address.get(field) or "").strip()
        for field in ("name", "first_name", "last_name")
    )
    if not has_name:
        missing.insert(0, "name")
    return missing


class FulfillmentSubmitter:
    """Submits paid orders to the fulfillment vendor."""

    def __init__(
        self,
        repository: OrderRepository,
        vendor_client: ZincClient,
        alert_repository: Optional[AlertRepository] = None,
        backoff: Optional[Sequence[int]] = None,
        alert_threshold: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the submitter.

        Args:
            repository: Order repository
            vendor_client: Fulfillment vendor client
            alert_repository: Where repeated failures are raised for triage
            backoff: Retry delay table in seconds (defaults to settings)
            alert_threshold: retry_count from which failures raise an Alert
            clock: Current-time source, for tests
        """
        settings = get_settings()
        self.repository = repository
        self.vendor_client = vendor_client
        self.alert_repository = alert_repository
        self.backoff = list(backoff or settings.retry_backoff_seconds)
        self.alert_threshold = (
            alert_threshold
            if alert_threshold is not None
            else settings.submission_failure_alert_threshold
        )
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def submit(self, order: Order) -> dict[str, Any]:
        """
        Submit an order to the vendor.

        Args:
            order: Order read after payment verification

        Returns:
            Dictionary with ``vendor_order_id``, ``vendor_status`` and the
            updated ``order``

        Raises:
            PaymentNotVerified: If payment has not been captured
            AlreadySubmitted: If the order already holds a vendor handle
            InvalidShippingAddress: If required address fields are missing
            MultipleDeliveryGroups: If the items span more than one delivery
                group
            DuplicateSubmissionAttempt: If another invocation won the claim
            SubmissionError: If the vendor rejected or could not be reached
        """
        order_id = str(order.id)

        if order.payment_status != PaymentStatus.SUCCEEDED:
            logger.warning(
                "Submission refused, payment not captured",
                order_id=order_id,
                payment_status=order.payment_status.value,
            )
            raise PaymentNotVerified(
                "Payment has not been captured for this order",
                payment_status=order.payment_status.value,
                order_id=order_id,
            )

        if order.zinc_order_id:
            raise AlreadySubmitted(
                "Order already submitted to vendor",
                order_id=order_id,
                zinc_order_id=order.zinc_order_id,
            )

        missing = missing_address_fields(order.shipping_address)
        if missing:
            await self.repository.mark_retry_pending(
                order.id,
                reason="invalid_shipping_address",
                next_retry_at=compute_next_retry_at(
                    order.retry_count, self.clock(), self.backoff
                ),
                vendor_error={"code": "invalid_shipping_address", "missing": missing},
            )
            logger.warning(
                "Shipping address incomplete, submission deferred",
                order_id=order_id,
                missing_fields=missing,
            )
            raise InvalidShippingAddress(
                "Shipping address is incomplete",
                reason="invalid_shipping_address",
                order_id=order_id,
                missing_fields=missing,
            )

        groups = order.delivery_group_ids
        if len(groups) > 1:
            await self._hold_multiple_groups(order, groups)
            raise MultipleDeliveryGroups(
                "Order items span more than one delivery group",
                reason="multiple_delivery_groups",
                order_id=order_id,
                delivery_groups=groups,
            )

        if not await self.repository.claim_submission(order.id):
            logger.warning("Duplicate submission attempt blocked", order_id=order_id)
            raise DuplicateSubmissionAttempt(
                "Submission already claimed by another invocation",
                order_id=order_id,
            )

        try:
            response = await self.vendor_client.submit_order(order)
        except VendorClientError as e:
            await self._schedule_retry(order, e)
            raise SubmissionError(
                "Vendor did not accept the order",
                reason=self._retry_reason(e),
                order_id=order_id,
                code=e.code,
            ) from e

        vendor_order_id = response["request_id"]
        updated = await self.repository.record_submission(order.id, vendor_order_id)
        if updated is None:
            current = await self.repository.get_order_by_id(order.id)
            logger.error(
                "Vendor handle could not be recorded",
                order_id=order_id,
                vendor_order_id=vendor_order_id,
                status=current.status.value if current else None,
                zinc_order_id=current.zinc_order_id if current else None,
            )
            raise FulfillmentError(
                "Vendor accepted the order but the handle was not recorded",
                order_id=order_id,
                vendor_order_id=vendor_order_id,
            )

        return {
            "vendor_order_id": vendor_order_id,
            "vendor_status": ZincStatus.SUBMITTED.value,
            "order": updated,
        }

    @staticmethod
    def _retry_reason(error: VendorClientError) -> str:
        if isinstance(error, VendorRejectedError):
            return f"vendor_rejected:{error.code or 'unknown'}"
        return "vendor_unavailable"

    async def _schedule_retry(self, order: Order, error: VendorClientError) -> None:
        reason = self._retry_reason(error)
        next_retry_at = compute_next_retry_at(
            order.retry_count, self.clock(), self.backoff
        )
        vendor_error = {
            "code": error.code,
            "message": str(error),
            "type": type(error).__name__,
        }
        await self.repository.mark_retry_pending(
            order.id,
            reason=reason,
            next_retry_at=next_retry_at,
            zinc_status=ZincStatus.FAILED,
            vendor_error=vendor_error,
        )
        logger.warning(
            "Vendor submission failed, retry scheduled",
            order_id=str(order.id),
            retry_reason=reason,
            retry_count=order.retry_count,
            next_retry_at=next_retry_at.isoformat(),
        )

        if order.retry_count < self.alert_threshold:
            return
        await self._alert(
            order,
            f"Order {order.order_number} failed vendor submission "
            f"{order.retry_count + 1} times",
            {
                "retry_count": order.retry_count,
                "retry_reason": reason,
                "vendor_error": vendor_error,
                "next_retry_at": next_retry_at.isoformat(),
            },
        )

    async def _hold_multiple_groups(self, order: Order, groups: list[str]) -> None:
        reason = "multiple_delivery_groups"
        first_time = order.retry_reason != reason
        await self.repository.mark_retry_pending(
            order.id,
            reason=reason,
            next_retry_at=compute_next_retry_at(
                order.retry_count, self.clock(), self.backoff
            ),
            vendor_error={"code": reason, "delivery_groups": groups},
        )
        logger.error(
            "Order spans several delivery groups, submission held",
            order_id=str(order.id),
            delivery_groups=groups,
        )
        # Retrying cannot fix this; raise it once for an operator to split
        if first_time:
            await self._alert(
                order,
                f"Order {order.order_number} spans {len(groups)} delivery groups "
                "and needs to be split",
                {"retry_reason": reason, "delivery_groups": groups},
            )

    async def _alert(
        self, order: Order, message: str, details: dict[str, Any]
    ) -> None:
        if self.alert_repository is None:
            return
        try:
            await self.alert_repository.create_alert(
                AlertType.SUBMISSION_FAILURES,
                message,
                severity=AlertSeverity.CRITICAL,
                details={
                    "order_id": str(order.id),
                    "order_number": order.order_number,
                    **details,
                },
            )
        except AlertRepositoryError as e:
            logger.error(
                "Submission failure alert not recorded",
                order_id=str(order.id),
                **e.context,
            )
