"""Tests for the retry scheduler."""

from datetime import timedelta

from fakes import build_components, make_paid_order
from giftpipe.services.fulfillment.zinc_client import VendorUnavailableError
from giftpipe.services.orders.enums import OrderStatus, PaymentStatus, ZincStatus


def due_retry(clock, **overrides):
    overrides.setdefault("status", OrderStatus.RETRY_PENDING)
    overrides.setdefault("next_retry_at", clock() - timedelta(minutes=1))
    overrides.setdefault("retry_reason", "vendor_unavailable")
    return make_paid_order(**overrides)


class TestScan:
    async def test_due_retry_is_resubmitted(self, components, clock):
        order = components.orders.add(due_retry(clock, zinc_status=ZincStatus.FAILED))

        summary = await components.retry_scheduler.scan()

        assert summary == {
            "due": 1,
            "retried": 1,
            "submitted": 1,
            "reconciled": 0,
            "failed": [],
        }
        assert order.retry_count == 1
        assert order.status == OrderStatus.PROCESSING
        assert order.zinc_order_id == "V123"
        assert components.signals.sources_for(order.id) == ["cron"]

    async def test_retry_not_yet_due_is_left_alone(self, components, clock):
        order = components.orders.add(
            due_retry(clock, next_retry_at=clock() + timedelta(minutes=5))
        )

        summary = await components.retry_scheduler.scan()

        assert summary["due"] == 0
        assert order.retry_count == 0

    async def test_batch_size_bounds_a_run(self, components, clock):
        for minutes in range(15):
            components.orders.add(
                due_retry(clock, next_retry_at=clock() - timedelta(minutes=minutes + 1))
            )

        summary = await components.retry_scheduler.scan()

        assert summary["due"] == 10

    async def test_failed_retry_backs_off_further(self, components, clock):
        components.vendor.submit_error = VendorUnavailableError("down", code="timeout")
        order = components.orders.add(due_retry(clock, retry_count=1))

        summary = await components.retry_scheduler.scan()

        assert summary["failed"] == [str(order.id)]
        assert order.retry_count == 2
        assert order.status == OrderStatus.RETRY_PENDING
        assert order.next_retry_at == clock() + timedelta(hours=4)

    async def test_retry_with_vendor_handle_is_reconciled(self, components, clock):
        order = components.orders.add(
            due_retry(
                clock,
                zinc_order_id="V555",
                zinc_status=ZincStatus.SUBMITTED,
                retry_reason="timeout_recovery",
            )
        )

        summary = await components.retry_scheduler.scan()

        assert summary["reconciled"] == 1
        assert components.vendor.submitted == []
        assert order.status == OrderStatus.PROCESSING
        assert order.next_retry_at is None
        assert order.retry_count == 1
        assert components.signals.sources_for(order.id) == ["cron"]
        assert components.signals.signals[0][2]["zinc_order_id"] == "V555"

    async def test_reconcile_survives_vendor_outage(self, components, clock):
        components.vendor.poll_error = VendorUnavailableError("down", code="timeout")
        order = components.orders.add(
            due_retry(clock, zinc_order_id="V555", zinc_status=ZincStatus.SUBMITTED)
        )

        summary = await components.retry_scheduler.scan()

        assert summary["reconciled"] == 1
        assert order.status == OrderStatus.PROCESSING

    async def test_unconfirmed_payment_is_pushed_back(self, clock):
        components = build_components(clock, stripe_status="processing")
        order = components.orders.add(due_retry(clock))

        summary = await components.retry_scheduler.scan()

        assert summary["failed"] == [str(order.id)]
        assert order.status == OrderStatus.RETRY_PENDING
        assert order.retry_reason == "payment_not_verified"
        assert order.next_retry_at > clock()
        assert components.vendor.submitted == []

    async def test_unpaid_retry_is_pushed_back_not_rescanned(self, components, clock):
        order = components.orders.add(
            due_retry(clock, payment_status=PaymentStatus.PENDING)
        )

        summary = await components.retry_scheduler.scan()

        assert summary["retried"] == 1
        assert summary["submitted"] == 0
        assert order.retry_reason == "retry_skipped"
        assert order.next_retry_at > clock()
