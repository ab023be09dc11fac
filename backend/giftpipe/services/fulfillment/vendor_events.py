"""
Vendor event handling: mirrors vendor progress onto orders.

Vendor webhooks and the periodic status sync report the same facts (the
request succeeded or failed, tracking appeared, the parcel was delivered)
and both are applied here with the same mapping. A request that fails after
the vendor accepted it raises an operator Alert and is never resubmitted
automatically.
"""

import secrets
import uuid
from typing import Any, Optional

from giftpipe.core.config import get_settings
from giftpipe.core.logging import get_logger
from giftpipe.database.models.alert import AlertSeverity, AlertType
from giftpipe.database.models.order import Order
from giftpipe.services.alerts.repository import AlertRepository
from giftpipe.services.fulfillment.zinc_client import (
    PENDING_CODES,
    VendorClientError,
    ZincClient,
)
from giftpipe.services.orders.enums import OrderStatus, ZincStatus
from giftpipe.services.orders.repository import OrderNotFoundError, OrderRepository

logger = get_logger(__name__)

VENDOR_EVENTS = (
    "request_succeeded",
    "request_failed",
    "tracking_obtained",
    "tracking_updated",
)


class WebhookAuthenticationError(Exception):
    """Raised when a vendor webhook carries the wrong order token."""

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


class UnknownVendorEvent(ValueError):
    """Raised for vendor event names this service does not handle."""

    pass


def extract_tracking(payload: dict[str, Any]) -> Optional[dict[str, Any]]:
    """First tracking entry with a tracking number, if any."""
    for entry in payload.get("tracking") or []:
        if entry.get("tracking_number"):
            return entry
    if payload.get("tracking_number"):
        return {"tracking_number": payload["tracking_number"]}
    return None


def is_delivered(payload: dict[str, Any]) -> bool:
    statuses = [
        str(entry.get("delivery_status") or "")
        for entry in payload.get("tracking") or []
    ]
    statuses.append(str(payload.get("delivery_status") or ""))
    return any(status.lower() == "delivered" for status in statuses)


class VendorEventHandler:
    """Applies vendor webhook events and status polls to orders."""

    def __init__(
        self,
        repository: OrderRepository,
        alert_repository: AlertRepository,
        vendor_client: Optional[ZincClient] = None,
    ):
        self.repository = repository
        self.alert_repository = alert_repository
        self.vendor_client = vendor_client

    async def handle_webhook(
        self,
        order_id: uuid.UUID,
        token: str,
        event: str,
        payload: dict[str, Any],
    ) -> Order:
        """
        Apply one vendor webhook to its order.

        Args:
            order_id: Order id carried in the webhook URL
            token: Per-order webhook token carried in the webhook URL
            event: Vendor event name
            payload: Vendor request body

        Returns:
            Updated order

        Raises:
            UnknownVendorEvent: If the event name is not handled
            OrderNotFoundError: If the order does not exist
            WebhookAuthenticationError: If the token does not match
        """
        if event not in VENDOR_EVENTS:
            raise UnknownVendorEvent(f"Unknown vendor event: {event}")

        order = await self.repository.get_order_by_id(order_id)
        if order is None:
            raise OrderNotFoundError("Order not found", order_id=str(order_id))
        if not order.webhook_token or not secrets.compare_digest(
            order.webhook_token, token or ""
        ):
            logger.warning("Vendor webhook token mismatch", order_id=str(order_id))
            raise WebhookAuthenticationError(
                "Invalid webhook token", order_id=str(order_id)
            )

        logger.info(
            "Vendor webhook received",
            order_id=str(order_id),
            vendor_event=event,
            zinc_order_id=order.zinc_order_id,
        )

        if event == "request_succeeded":
            return await self.mark_placed(order)
        if event == "request_failed":
            return await self.mark_failed(order, payload)
        if event == "tracking_obtained":
            return await self.mark_shipped(order, payload)
        return await self.apply_tracking_update(order, payload)

    async def mark_placed(self, order: Order) -> Order:
        """The vendor placed the order with the retailer."""
        if order.status in (OrderStatus.COMPLETED, OrderStatus.SHIPPED):
            return order
        order = await self._leave_retry_pending(order)
        return await self.repository.update_vendor_state(
            order.id,
            ZincStatus.PLACED,
            status=OrderStatus.COMPLETED,
            vendor_error=None,
        )

    async def mark_shipped(self, order: Order, payload: dict[str, Any]) -> Order:
        """Tracking appeared; the order has left the retailer."""
        tracking = extract_tracking(payload)
        if tracking is None:
            logger.warning(
                "Tracking event without tracking number", order_id=str(order.id)
            )
            return order
        zinc_status = (
            ZincStatus.DELIVERED if is_delivered(payload) else ZincStatus.SHIPPED
        )
        if order.status == OrderStatus.SHIPPED:
            return await self.repository.update_vendor_state(
                order.id,
                zinc_status,
                tracking_number=tracking["tracking_number"],
            )
        order = await self._leave_retry_pending(order)
        return await self.repository.update_vendor_state(
            order.id,
            zinc_status,
            status=OrderStatus.SHIPPED,
            tracking_number=tracking["tracking_number"],
        )

    async def apply_tracking_update(
        self, order: Order, payload: dict[str, Any]
    ) -> Order:
        if order.status != OrderStatus.SHIPPED and extract_tracking(payload):
            return await self.mark_shipped(order, payload)
        if is_delivered(payload):
            return await self.repository.update_vendor_state(
                order.id, ZincStatus.DELIVERED
            )
        return order

    async def mark_failed(self, order: Order, payload: dict[str, Any]) -> Order:
        """The vendor gave up on a request it had accepted."""
        vendor_error = {
            "code": payload.get("code"),
            "message": payload.get("message"),
            "data": payload.get("data"),
        }
        updated = await self.repository.update_vendor_state(
            order.id, ZincStatus.FAILED, vendor_error=vendor_error
        )
        await self.alert_repository.create_alert(
            AlertType.VENDOR_REQUEST_FAILED,
            f"Vendor request failed for order {order.order_number}",
            severity=AlertSeverity.CRITICAL,
            details={
                "order_id": str(order.id),
                "order_number": order.order_number,
                "zinc_order_id": order.zinc_order_id,
                "vendor_error": vendor_error,
            },
        )
        return updated

    async def sync_order(self, order: Order) -> Order:
        """
        Poll the vendor for one order and apply what it reports.

        Raises:
            VendorClientError: If the vendor cannot be polled
        """
        if self.vendor_client is None:
            raise RuntimeError("Vendor status sync needs a vendor client")

        body = await self.vendor_client.get_order(order.zinc_order_id)
        if body.get("_type") == "error":
            if body.get("code") in PENDING_CODES:
                return order
            return await self.mark_failed(order, body)
        if extract_tracking(body):
            return await self.mark_shipped(order, body)
        if order.zinc_status != ZincStatus.PLACED or order.status != OrderStatus.COMPLETED:
            return await self.mark_placed(order)
        return order

    async def sync_awaiting(self, limit: Optional[int] = None) -> dict[str, Any]:
        """Poll every order still waiting on the vendor."""
        limit = limit or get_settings().retry_batch_size * 5
        orders = await self.repository.find_awaiting_vendor(limit)
        synced, failed = 0, []
        for order in orders:
            try:
                await self.sync_order(order)
                synced += 1
            except VendorClientError as e:
                failed.append(str(order.id))
                logger.warning(
                    "Vendor status sync failed",
                    order_id=str(order.id),
                    zinc_order_id=order.zinc_order_id,
                    code=e.code,
                    error=str(e),
                )
        logger.info("Vendor status sync finished", checked=len(orders), synced=synced)
        return {"checked": len(orders), "synced": synced, "failed": failed}

    async def _leave_retry_pending(self, order: Order) -> Order:
        # A timed-out order the vendor later confirms goes back to processing first
        if order.status != OrderStatus.RETRY_PENDING:
            return order
        return await self.repository.transition_status(
            order.id,
            OrderStatus.PROCESSING,
            next_retry_at=None,
            retry_reason=None,
        )
