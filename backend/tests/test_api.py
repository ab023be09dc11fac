"""
Test suite for the HTTP surface.

Tests cover health checks, the orchestrator entry point, the client-poll
status endpoint, both webhook receivers, operator endpoints and the
auto-gift approval links. The pipeline dependency is replaced by the
in-memory component set from ``fakes``.
"""

import uuid
from datetime import date
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi import status
from fastapi.testclient import TestClient

from fakes import SHIPPING_ADDRESS, make_order, make_paid_order
from giftpipe.database.models.alert import AlertType
from giftpipe.services.fulfillment.zinc_client import VendorUnavailableError
from giftpipe.services.orders.enums import OrderStatus, PaymentStatus, ZincStatus
from giftpipe.services.payments.stripe_client import StripeClientError

API = "/api/v1"


# ============================================================================
# Health Endpoints
# ============================================================================


class TestHealthEndpoints:
    def test_health_check(self, test_client: TestClient):
        response = test_client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert set(data) == {"status", "service", "version", "environment"}

    def test_liveness(self, test_client: TestClient):
        response = test_client.get("/live")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "alive"

    @patch("giftpipe.main.check_broker_health", new_callable=AsyncMock)
    @patch("giftpipe.main.check_database_health", new_callable=AsyncMock)
    def test_ready_when_dependencies_healthy(
        self, mock_db: AsyncMock, mock_broker: AsyncMock, test_client: TestClient
    ):
        mock_db.return_value = True
        mock_broker.return_value = True

        response = test_client.get("/ready")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "ready"
        mock_db.assert_awaited_once_with(max_retries=1)

    @patch("giftpipe.main.check_broker_health", new_callable=AsyncMock)
    @patch("giftpipe.main.check_database_health", new_callable=AsyncMock)
    def test_not_ready_when_broker_down(
        self, mock_db: AsyncMock, mock_broker: AsyncMock, test_client: TestClient
    ):
        """
        Test readiness reports 503 when the broker cannot be reached.

        Scheduled work stops without the broker, so the instance must not
        receive traffic.
        """
        mock_db.return_value = True
        mock_broker.return_value = False

        response = test_client.get("/ready")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        data = response.json()
        assert data["status"] == "not_ready"
        assert data["database"] == "healthy"
        assert data["broker"] == "unhealthy"

    def test_request_id_is_echoed(self, test_client: TestClient):
        response = test_client.get("/health", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"

    @patch("giftpipe.main.logger")
    def test_middleware_logs_request_completed(
        self, mock_logger: MagicMock, test_client: TestClient
    ):
        test_client.get("/health")

        mock_logger.info.assert_any_call(
            "Request completed",
            method="GET",
            path="/health",
            status_code=200,
        )


# ============================================================================
# Orchestrator Entry Point
# ============================================================================


class TestOrchestratorTrigger:
    def test_trigger_submits_paid_order(self, test_client: TestClient, components):
        """
        Test the entry point accepts camelCase input and returns camelCase output.
        """
        order = components.orders.add(make_paid_order())

        response = test_client.post(
            f"{API}/orchestrator/trigger",
            json={
                "orderId": str(order.id),
                "triggerSource": "stripe-webhook",
                "metadata": {"caller": "edge"},
            },
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {
            "success": True,
            "processed": True,
            "status": "processing",
            "zincStatus": "submitted",
        }

    def test_repeat_trigger_is_a_no_op(self, test_client: TestClient, components):
        order = components.orders.add(make_paid_order())
        body = {"orderId": str(order.id), "triggerSource": "cron"}

        test_client.post(f"{API}/orchestrator/trigger", json=body)
        response = test_client.post(f"{API}/orchestrator/trigger", json=body)

        assert response.json()["processed"] is False
        assert len(components.vendor.submitted) == 1

    def test_unknown_order_returns_404(self, test_client: TestClient):
        response = test_client.post(
            f"{API}/orchestrator/trigger",
            json={"orderId": str(uuid.uuid4()), "triggerSource": "cron"},
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json() == {"success": False, "error": "Order not found"}

    def test_unverified_payment_returns_400(self, test_client: TestClient, components):
        components.stripe_client.intent_status = "canceled"
        order = components.orders.add(make_paid_order())

        response = test_client.post(
            f"{API}/orchestrator/trigger",
            json={"orderId": str(order.id), "triggerSource": "stripe-webhook"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["success"] is False
        assert components.vendor.submitted == []

    def test_vendor_failure_returns_502(self, test_client: TestClient, components):
        components.vendor.submit_error = VendorUnavailableError("down", code="http_503")
        order = components.orders.add(make_paid_order())

        response = test_client.post(
            f"{API}/orchestrator/trigger",
            json={"orderId": str(order.id), "triggerSource": "stripe-webhook"},
        )

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        assert "retry has been scheduled" in response.json()["error"]
        assert order.status == OrderStatus.RETRY_PENDING

    def test_invalid_trigger_source_returns_422(self, test_client: TestClient):
        response = test_client.post(
            f"{API}/orchestrator/trigger",
            json={"orderId": str(uuid.uuid4()), "triggerSource": "fax"},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        data = response.json()
        assert data["success"] is False
        assert data["details"]


# ============================================================================
# Client Poll
# ============================================================================


class TestOrderStatus:
    def test_poll_processes_paid_order(self, test_client: TestClient, components):
        order = components.orders.add(make_paid_order())

        response = test_client.get(f"{API}/orders/{order.id}/status")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["orderId"] == str(order.id)
        assert data["status"] == "processing"
        assert data["zincStatus"] == "submitted"
        assert components.signals.sources_for(order.id) == ["client-poll"]

    def test_poll_of_unpaid_order_only_reads(self, test_client: TestClient, components):
        order = components.orders.add(make_order())

        response = test_client.get(f"{API}/orders/{order.id}/status")

        assert response.json()["paymentStatus"] == "pending"
        assert components.signals.sources_for(order.id) == ["client-poll"]
        assert components.vendor.submitted == []

    def test_poll_of_shipped_order_is_recorded(self, test_client: TestClient, components):
        order = components.orders.add(
            make_paid_order(
                status=OrderStatus.SHIPPED,
                zinc_order_id="V777",
                zinc_status=ZincStatus.SHIPPED,
                tracking_number="1Z999",
            )
        )

        response = test_client.get(f"{API}/orders/{order.id}/status")

        assert response.json()["status"] == "shipped"
        assert response.json()["trackingNumber"] == "1Z999"
        assert components.signals.sources_for(order.id) == ["client-poll"]
        assert components.sleeps == []

    def test_poll_hides_vendor_failure(self, test_client: TestClient, components):
        components.vendor.submit_error = VendorUnavailableError("secret detail", code="timeout")
        order = components.orders.add(make_paid_order())

        response = test_client.get(f"{API}/orders/{order.id}/status")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "retry_pending"
        assert "secret detail" not in response.text

    def test_unknown_order(self, test_client: TestClient):
        response = test_client.get(f"{API}/orders/{uuid.uuid4()}/status")

        assert response.status_code == status.HTTP_404_NOT_FOUND


# ============================================================================
# Webhooks
# ============================================================================


class TestStripeWebhook:
    def test_verified_event_is_applied(self, test_client: TestClient, components):
        order = components.orders.add(make_order())
        components.stripe_client.construct_webhook_event.return_value = SimpleNamespace(
            id="evt_1",
            type="payment_intent.succeeded",
            data=SimpleNamespace(object={"id": order.payment_intent_id}),
        )

        response = test_client.post(
            f"{API}/webhooks/stripe",
            content=b"{}",
            headers={"stripe-signature": "t=1,v1=abc"},
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["received"] is True
        assert data["processed"] is True
        assert order.payment_status == PaymentStatus.SUCCEEDED
        assert order.zinc_order_id == "V123"

    def test_bad_signature_returns_400(self, test_client: TestClient, components):
        components.stripe_client.construct_webhook_event.side_effect = StripeClientError(
            "Webhook signature verification failed", code="INVALID_SIGNATURE"
        )

        response = test_client.post(
            f"{API}/webhooks/stripe",
            content=b"{}",
            headers={"stripe-signature": "bogus"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"]["code"] == "INVALID_SIGNATURE"

    def test_vendor_failure_is_acknowledged(self, test_client: TestClient, components):
        components.vendor.submit_error = VendorUnavailableError("down", code="timeout")
        order = components.orders.add(make_order())
        components.stripe_client.construct_webhook_event.return_value = SimpleNamespace(
            id="evt_2",
            type="payment_intent.succeeded",
            data=SimpleNamespace(object={"id": order.payment_intent_id}),
        )

        response = test_client.post(
            f"{API}/webhooks/stripe",
            content=b"{}",
            headers={"stripe-signature": "t=1,v1=abc"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["processed"] is False
        assert order.status == OrderStatus.RETRY_PENDING


class TestVendorWebhook:
    def test_request_succeeded(self, test_client: TestClient, components):
        order = components.orders.add(
            make_paid_order(
                status=OrderStatus.PROCESSING,
                zinc_order_id="V123",
                zinc_status=ZincStatus.SUBMITTED,
            )
        )

        response = test_client.post(
            f"{API}/webhooks/zinc/request_succeeded",
            params={"orderId": str(order.id), "token": "hook-token"},
            json={"request_id": "V123"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "completed"

    def test_wrong_token_returns_401(self, test_client: TestClient, components):
        order = components.orders.add(make_paid_order())

        response = test_client.post(
            f"{API}/webhooks/zinc/request_succeeded",
            params={"orderId": str(order.id), "token": "nope"},
            json={},
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_unknown_event_returns_400(self, test_client: TestClient, components):
        order = components.orders.add(make_paid_order())

        response = test_client.post(
            f"{API}/webhooks/zinc/teleported",
            params={"orderId": str(order.id), "token": "hook-token"},
            json={},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST


# ============================================================================
# Operator Endpoints
# ============================================================================


class TestAdmin:
    def test_missing_key_returns_401(self, test_client: TestClient, components):
        order = components.orders.add(make_order())

        response = test_client.post(f"{API}/admin/orders/{order.id}/recover")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_recover_missed_webhook(
        self, test_client: TestClient, components, admin_headers
    ):
        order = components.orders.add(make_order())

        response = test_client.post(
            f"{API}/admin/orders/{order.id}/recover",
            json={"operator": "ops@giftpipe"},
            headers=admin_headers,
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["warning"] is None
        assert data["order"]["status"] == "processing"
        assert data["order"]["zinc_order_id"] == "V123"
        assert data["trigger_result"]["processed"] is True
        assert "order" not in data["trigger_result"]

    def test_recover_refused_for_unpaid_order(
        self, test_client: TestClient, components, admin_headers
    ):
        components.stripe_client.intent_status = "requires_payment_method"
        order = components.orders.add(make_order())

        response = test_client.post(
            f"{API}/admin/orders/{order.id}/recover", headers=admin_headers
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        detail = response.json()["detail"]
        assert detail["payment_status"] == "failed"
        assert "Stripe dashboard" in detail["suggestion"]

    def test_recover_unknown_order(self, test_client: TestClient, admin_headers):
        response = test_client.post(
            f"{API}/admin/orders/{uuid.uuid4()}/recover", headers=admin_headers
        )

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_order_detail(self, test_client: TestClient, components, admin_headers):
        order = components.orders.add(make_paid_order(retry_count=2))

        response = test_client.get(f"{API}/admin/orders/{order.id}", headers=admin_headers)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["retry_count"] == 2

    def test_update_scheduled_date(
        self, test_client: TestClient, components, admin_headers
    ):
        order = components.orders.add(make_paid_order())

        response = test_client.patch(
            f"{API}/admin/orders/{order.id}/scheduled-date",
            json={"scheduled_delivery_date": "2024-05-01"},
            headers=admin_headers,
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "scheduled"
        assert order.scheduled_delivery_date == date(2024, 5, 1)

    def test_update_scheduled_date_after_submission_conflicts(
        self, test_client: TestClient, components, admin_headers
    ):
        order = components.orders.add(
            make_paid_order(
                status=OrderStatus.PROCESSING,
                zinc_order_id="V1",
                zinc_status=ZincStatus.SUBMITTED,
            )
        )

        response = test_client.patch(
            f"{API}/admin/orders/{order.id}/scheduled-date",
            json={"scheduled_delivery_date": "2024-05-01"},
            headers=admin_headers,
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["detail"]["zinc_order_id"] == "V1"

    def test_list_and_resolve_alerts(
        self, test_client: TestClient, components, admin_headers
    ):
        order = components.orders.add(
            make_paid_order(
                status=OrderStatus.PROCESSING,
                zinc_order_id="V123",
                zinc_status=ZincStatus.SUBMITTED,
            )
        )
        test_client.post(
            f"{API}/webhooks/zinc/request_failed",
            params={"orderId": str(order.id), "token": "hook-token"},
            json={"code": "max_price_exceeded"},
        )
        alert = components.alerts.of_type(AlertType.VENDOR_REQUEST_FAILED)[0]

        listed = test_client.get(f"{API}/admin/alerts", headers=admin_headers)
        resolved = test_client.post(
            f"{API}/admin/alerts/{alert.id}/resolve",
            json={"resolved_by": "ops"},
            headers=admin_headers,
        )
        after = test_client.get(f"{API}/admin/alerts", headers=admin_headers)

        assert [a["id"] for a in listed.json()] == [str(alert.id)]
        assert resolved.json()["resolved_by"] == "ops"
        assert after.json() == []


# ============================================================================
# Auto-Gift Endpoints
# ============================================================================


def selection_body(**overrides):
    body = {
        "rule_id": str(uuid.uuid4()),
        "user_id": str(uuid.uuid4()),
        "products": [{"product_id": "B0GIFT0001", "price": "30.00"}],
        "confidence": 0.95,
        "discovery_method": "wishlist",
        "shipping_address": SHIPPING_ADDRESS,
        "stripe_customer_id": "cus_1",
        "payment_method_id": "pm_1",
    }
    body.update(overrides)
    return body


class TestAutoGifts:
    def test_selection_requires_admin_key(self, test_client: TestClient):
        response = test_client.post(f"{API}/auto-gifts/executions", json=selection_body())

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_auto_approved_selection_creates_order(
        self, test_client: TestClient, components, admin_headers
    ):
        response = test_client.post(
            f"{API}/auto-gifts/executions",
            json=selection_body(auto_approve_enabled=True),
            headers=admin_headers,
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["status"] == "order_created"
        assert data["order"]["status"] == "pending"
        assert len(components.orders.orders) == 1

    def test_over_budget_selection_returns_422(
        self, test_client: TestClient, admin_headers
    ):
        response = test_client.post(
            f"{API}/auto-gifts/executions",
            json=selection_body(budget_limit="20.00"),
            headers=admin_headers,
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["detail"]["total"] == "30.00"

    def test_approval_link_creates_order(
        self, test_client: TestClient, components, admin_headers
    ):
        created = test_client.post(
            f"{API}/auto-gifts/executions",
            json=selection_body(),
            headers=admin_headers,
        )
        assert created.json()["status"] == "awaiting_approval"
        execution = components.auto_gift_repository.executions[
            uuid.UUID(created.json()["id"])
        ]
        token = execution.approval_token.token

        approved = test_client.post(
            f"{API}/auto-gifts/approvals/{token}/approve", json={"via": "email"}
        )
        reused = test_client.post(f"{API}/auto-gifts/approvals/{token}/approve")

        assert approved.status_code == status.HTTP_200_OK
        assert approved.json()["status"] == "order_created"
        assert reused.status_code == status.HTTP_404_NOT_FOUND

    def test_expired_approval_link_returns_410(
        self, test_client: TestClient, components, admin_headers
    ):
        created = test_client.post(
            f"{API}/auto-gifts/executions",
            json=selection_body(),
            headers=admin_headers,
        )
        execution = components.auto_gift_repository.executions[
            uuid.UUID(created.json()["id"])
        ]
        components.clock.advance(days=8)

        response = test_client.post(
            f"{API}/auto-gifts/approvals/{execution.approval_token.token}/approve"
        )

        assert response.status_code == status.HTTP_410_GONE

    def test_reject_link(self, test_client: TestClient, components, admin_headers):
        created = test_client.post(
            f"{API}/auto-gifts/executions",
            json=selection_body(),
            headers=admin_headers,
        )
        execution = components.auto_gift_repository.executions[
            uuid.UUID(created.json()["id"])
        ]

        response = test_client.post(
            f"{API}/auto-gifts/approvals/{execution.approval_token.token}/reject",
            json={"reason": "Not this year"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "rejected"
        assert components.orders.orders == {}

    def test_auto_channel_cannot_be_requested(
        self, test_client: TestClient, components, admin_headers
    ):
        created = test_client.post(
            f"{API}/auto-gifts/executions",
            json=selection_body(),
            headers=admin_headers,
        )
        execution = components.auto_gift_repository.executions[
            uuid.UUID(created.json()["id"])
        ]

        response = test_client.post(
            f"{API}/auto-gifts/approvals/{execution.approval_token.token}/approve",
            json={"via": "auto"},
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
