"""
HTTP client for the external fulfillment vendor (Zinc API).

Every request is bounded by the configured timeout. Vendor-side rejections
(``_type: error`` bodies and 4xx responses) raise ``VendorRejectedError``;
transport failures, timeouts and 5xx responses raise
``VendorUnavailableError``. Orders are submitted with the order id as
idempotency key, so a resubmission after an unknown outcome returns the
original vendor request instead of buying twice.
"""

from typing import Any, Optional

import httpx

from giftpipe.core.config import get_settings
from giftpipe.core.logging import get_logger, log_performance
from giftpipe.database.models.order import Order

logger = get_logger(__name__)

# Codes the vendor returns while a request is still being worked on
PENDING_CODES = {"request_processing", "request_queued"}


class VendorClientError(Exception):
    """Base exception for fulfillment vendor errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.code = code
        self.context = context


class VendorRejectedError(VendorClientError):
    """The vendor refused the request (address, stock, account issues)."""

    pass


class VendorUnavailableError(VendorClientError):
    """The vendor could not be reached or failed to answer in time."""

    pass


def split_recipient_name(address: dict[str, Any]) -> tuple[str, str]:
    """Return (first, last) from either split or combined name fields."""
    first = (address.get("first_name") or "").strip()
    last = (address.get("last_name") or "").strip()
    if first or last:
        return first, last
    parts = (address.get("name") or "").strip().split(" ", 1)
    return parts[0], parts[1] if len(parts) > 1 else ""


class ZincClient:
    """Async client for order submission and status polling."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the vendor client.

        Args:
            api_key: Vendor client token (defaults to settings)
            base_url: Vendor API base URL (defaults to settings)
            timeout_seconds: Request timeout (defaults to settings)
            http_client: Preconfigured httpx client, mainly for tests
        """
        settings = get_settings()
        self.settings = settings
        self.api_key = api_key if api_key is not None else settings.zinc_api_key
        self.base_url = (base_url or settings.zinc_api_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.zinc_timeout_seconds
        self._client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout_seconds),
            auth=(self.api_key, ""),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "ZincClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    def build_order_payload(self, order: Order) -> dict[str, Any]:
        """
        Build the vendor order request for an order.

        Args:
            order: Order with items and shipping address

        Returns:
            JSON-serializable request body
        """
        address = order.shipping_address or {}
        first_name, last_name = split_recipient_name(address)
        webhook_url = (
            f"{self.settings.zinc_webhook_base_url}/{{event}}"
            f"?orderId={order.id}&token={order.webhook_token or ''}"
        )

        payload: dict[str, Any] = {
            "idempotency_key": str(order.id),
            "retailer": self.settings.zinc_retailer,
            "products": [
                {"product_id": item.product_id, "quantity": item.quantity}
                for item in order.items
            ],
            "max_price": self.settings.zinc_max_price_cents,
            "shipping_address": {
                "first_name": first_name,
                "last_name": last_name,
                "address_line1": address.get("address_line1", ""),
                "address_line2": address.get("address_line2", ""),
                "zip_code": address.get("zip_code", ""),
                "city": address.get("city", ""),
                "state": address.get("state", ""),
                "country": address.get("country", "US"),
                "phone_number": address.get("phone_number", ""),
            },
            "shipping_method": "cheapest",
            "is_gift": True,
            "webhooks": {
                event: webhook_url.format(event=event)
                for event in (
                    "request_succeeded",
                    "request_failed",
                    "tracking_obtained",
                    "tracking_updated",
                )
            },
            "client_notes": {
                "our_internal_order_id": str(order.id),
                "order_number": order.order_number,
            },
        }

        gift_message = (order.gift_options or {}).get("message")
        if gift_message:
            payload["gift_message"] = gift_message[:240]

        return payload

    async def submit_order(self, order: Order) -> dict[str, Any]:
        """
        Submit an order to the vendor.

        Args:
            order: Order to submit

        Returns:
            Dictionary with the vendor ``request_id``

        Raises:
            VendorRejectedError: If the vendor refuses the order
            VendorUnavailableError: If the vendor cannot be reached
        """
        payload = self.build_order_payload(order)
        with log_performance(logger, "vendor_submit_order", order_id=str(order.id)):
            body = await self._request("POST", "/v1/orders", json=payload)

        request_id = body.get("request_id")
        if not request_id:
            raise VendorRejectedError(
                "Vendor response did not include a request id",
                code="missing_request_id",
                order_id=str(order.id),
            )

        logger.info(
            "Order accepted by vendor",
            order_id=str(order.id),
            vendor_order_id=request_id,
        )
        return {"request_id": request_id}

    async def get_order(self, request_id: str) -> dict[str, Any]:
        """
        Poll the vendor for the state of a submitted order.

        Returns the raw vendor body. Bodies with ``_type: error`` are returned
        as-is: for a submitted order they describe the request outcome (for
        example still processing, or failed), not a failed poll.

        Raises:
            VendorUnavailableError: If the vendor cannot be reached
            VendorRejectedError: If the vendor does not know the request
        """
        return await self._request(
            "GET", f"/v1/orders/{request_id}", allow_error_body=True
        )

    async def _request(
        self,
        method: str,
        path: str,
        allow_error_body: bool = False,
        **kwargs: Any,
    ) -> dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("Vendor request timed out", method=method, path=path)
            raise VendorUnavailableError(
                "Vendor request timed out", code="timeout", path=path
            ) from e
        except httpx.HTTPError as e:
            logger.warning(
                "Vendor request failed",
                method=method,
                path=path,
                error=str(e),
            )
            raise VendorUnavailableError(
                f"Vendor request failed: {e}", code="transport_error", path=path
            ) from e

        if response.status_code >= 500:
            raise VendorUnavailableError(
                f"Vendor returned HTTP {response.status_code}",
                code=f"http_{response.status_code}",
                path=path,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise VendorUnavailableError(
                "Vendor returned a non-JSON body",
                code="invalid_body",
                path=path,
                status_code=response.status_code,
            ) from e

        if response.status_code >= 400:
            raise VendorRejectedError(
                body.get("message") or f"Vendor returned HTTP {response.status_code}",
                code=body.get("code") or f"http_{response.status_code}",
                path=path,
                data=body.get("data"),
            )

        if body.get("_type") == "error" and not allow_error_body:
            raise VendorRejectedError(
                body.get("message") or "Vendor rejected the request",
                code=body.get("code"),
                path=path,
                data=body.get("data"),
            )

        return body


def get_zinc_client() -> ZincClient:
    """Build a vendor client from settings."""
    return ZincClient()
