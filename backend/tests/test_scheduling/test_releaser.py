"""Tests for holding, releasing and rescheduling scheduled orders."""

import uuid
from datetime import date

import pytest

from fakes import make_order, make_paid_order
from giftpipe.services.orders.enums import OrderStatus, ZincStatus
from giftpipe.services.orders.repository import OrderNotFoundError
from giftpipe.services.orders.state_machine import StateTransitionError
from giftpipe.services.scheduling.releaser import release_date, should_hold

# The test clock reads 2024-03-01 and the lead time is 5 days.


class TestReleaseWindow:
    def test_release_date_subtracts_lead_time(self):
        assert release_date(date(2024, 3, 10), 5) == date(2024, 3, 5)

    def test_hold_when_window_not_open(self):
        order = make_paid_order(scheduled_delivery_date=date(2024, 3, 7))
        assert should_hold(order, date(2024, 3, 1), 5)

    def test_no_hold_on_release_day(self):
        order = make_paid_order(scheduled_delivery_date=date(2024, 3, 6))
        assert not should_hold(order, date(2024, 3, 1), 5)

    def test_no_hold_without_date(self):
        assert not should_hold(make_paid_order(), date(2024, 3, 1), 5)


class TestHoldIfScheduled:
    async def test_far_future_order_is_held(self, components):
        order = components.orders.add(
            make_paid_order(scheduled_delivery_date=date(2024, 4, 1))
        )

        held = await components.releaser.hold_if_scheduled(order)

        assert held.status == OrderStatus.SCHEDULED

    async def test_order_inside_window_is_not_held(self, components):
        order = components.orders.add(
            make_paid_order(scheduled_delivery_date=date(2024, 3, 4))
        )

        result = await components.releaser.hold_if_scheduled(order)

        assert result.status == OrderStatus.PAYMENT_CONFIRMED

    async def test_submitted_order_is_never_held(self, components):
        order = components.orders.add(
            make_paid_order(
                status=OrderStatus.PROCESSING,
                zinc_order_id="V1",
                zinc_status=ZincStatus.SUBMITTED,
                scheduled_delivery_date=date(2024, 4, 1),
            )
        )

        result = await components.releaser.hold_if_scheduled(order)

        assert result.status == OrderStatus.PROCESSING


class TestReleaseDue:
    async def test_due_paid_order_is_released_and_submitted(self, components):
        order = components.orders.add(
            make_paid_order(
                status=OrderStatus.SCHEDULED,
                scheduled_delivery_date=date(2024, 3, 5),
            )
        )

        summary = await components.releaser.release_due()

        assert summary["released"] == [str(order.id)]
        assert summary["triggered"] == [str(order.id)]
        assert order.status == OrderStatus.PROCESSING
        assert components.signals.sources_for(order.id) == ["cron"]

    async def test_due_unpaid_order_returns_to_pending(self, components):
        order = components.orders.add(
            make_order(
                status=OrderStatus.SCHEDULED,
                scheduled_delivery_date=date(2024, 3, 2),
            )
        )

        summary = await components.releaser.release_due()

        assert summary["released"] == [str(order.id)]
        assert summary["triggered"] == []
        assert order.status == OrderStatus.PENDING
        assert components.vendor.submitted == []

    async def test_order_outside_window_stays_scheduled(self, components):
        order = components.orders.add(
            make_paid_order(
                status=OrderStatus.SCHEDULED,
                scheduled_delivery_date=date(2024, 3, 20),
            )
        )

        summary = await components.releaser.release_due()

        assert summary["released"] == []
        assert order.status == OrderStatus.SCHEDULED


class TestUpdateOrderDate:
    async def test_later_date_holds_order(self, components):
        order = components.orders.add(make_paid_order())

        updated = await components.releaser.update_order_date(order.id, date(2024, 5, 1))

        assert updated.status == OrderStatus.SCHEDULED
        assert updated.scheduled_delivery_date == date(2024, 5, 1)

    async def test_earlier_date_keeps_scheduled_until_next_release(self, components):
        order = components.orders.add(
            make_paid_order(
                status=OrderStatus.SCHEDULED,
                scheduled_delivery_date=date(2024, 5, 1),
            )
        )

        updated = await components.releaser.update_order_date(order.id, date(2024, 3, 3))
        summary = await components.releaser.release_due()

        assert updated.scheduled_delivery_date == date(2024, 3, 3)
        assert summary["released"] == [str(order.id)]

    async def test_submitted_order_cannot_be_rescheduled(self, components):
        order = components.orders.add(
            make_paid_order(
                status=OrderStatus.PROCESSING,
                zinc_order_id="V1",
                zinc_status=ZincStatus.SUBMITTED,
            )
        )

        with pytest.raises(StateTransitionError) as exc_info:
            await components.releaser.update_order_date(order.id, date(2024, 5, 1))

        assert exc_info.value.context["zinc_order_id"] == "V1"

    async def test_unknown_order(self, components):
        with pytest.raises(OrderNotFoundError):
            await components.releaser.update_order_date(uuid.uuid4(), date(2024, 5, 1))
