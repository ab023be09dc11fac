"""
Tests for the timeout monitor and the stuck-order path it starts.
"""

from datetime import timedelta

from fakes import make_paid_order
from giftpipe.database.models.alert import AlertSeverity, AlertType
from giftpipe.services.orders.enums import OrderStatus, ZincStatus


def submitted_order(clock, minutes_ago):
    return make_paid_order(
        status=OrderStatus.PROCESSING,
        zinc_status=ZincStatus.SUBMITTED,
        zinc_order_id="V123",
        updated_at=clock() - timedelta(minutes=minutes_ago),
    )


class TestStaleSubmissions:
    async def test_order_untouched_for_61_minutes_is_recovered(self, components, clock):
        order = components.orders.add(submitted_order(clock, 61))

        summary = await components.timeout_monitor.run()

        assert summary["stale"]["recovered"] == [str(order.id)]
        assert summary["fixed"] == 1
        assert order.status == OrderStatus.RETRY_PENDING
        assert order.retry_reason == "timeout_recovery"
        assert order.zinc_order_id == "V123"
        assert order.next_retry_at == clock() + timedelta(minutes=30)

    async def test_order_touched_59_minutes_ago_is_left_alone(self, components, clock):
        order = components.orders.add(submitted_order(clock, 59))

        summary = await components.timeout_monitor.run()

        assert summary["fixed"] == 0
        assert order.status == OrderStatus.PROCESSING
        assert components.alerts.alerts == []

    async def test_shipped_orders_are_never_stale(self, components, clock):
        order = components.orders.add(
            make_paid_order(
                status=OrderStatus.SHIPPED,
                zinc_status=ZincStatus.SHIPPED,
                zinc_order_id="V123",
                updated_at=clock() - timedelta(days=3),
            )
        )

        await components.timeout_monitor.run()

        assert order.status == OrderStatus.SHIPPED

    async def test_order_that_progressed_after_scan_is_skipped(self, components, clock):
        order = components.orders.add(submitted_order(clock, 90))
        find = components.orders.find_stale_submissions

        async def find_then_progress(now, threshold):
            found = await find(now, threshold)
            order.zinc_status = ZincStatus.PLACED
            order.status = OrderStatus.COMPLETED
            return found

        components.orders.find_stale_submissions = find_then_progress

        summary = await components.timeout_monitor.run()

        assert summary["stale"]["skipped"] == [str(order.id)]
        assert order.status == OrderStatus.COMPLETED
        assert components.alerts.alerts == []


class TestInterruptedSubmissions:
    async def test_submitting_marker_without_outcome_is_recovered(self, components, clock):
        order = components.orders.add(
            make_paid_order(
                zinc_status=ZincStatus.SUBMITTING,
                updated_at=clock() - timedelta(hours=2),
            )
        )

        summary = await components.timeout_monitor.run()

        assert summary["interrupted"]["recovered"] == [str(order.id)]
        assert order.status == OrderStatus.RETRY_PENDING
        assert order.retry_reason == "submission_interrupted"
        assert order.zinc_status is None

    async def test_fresh_submitting_marker_is_in_flight(self, components, clock):
        order = components.orders.add(
            make_paid_order(
                zinc_status=ZincStatus.SUBMITTING,
                updated_at=clock() - timedelta(minutes=5),
            )
        )

        summary = await components.timeout_monitor.run()

        assert summary["fixed"] == 0
        assert order.zinc_status == ZincStatus.SUBMITTING


class TestRunAlert:
    async def test_alert_summarizes_run(self, components, clock):
        stale = components.orders.add(submitted_order(clock, 120))
        interrupted = components.orders.add(
            make_paid_order(
                zinc_status=ZincStatus.SUBMITTING,
                updated_at=clock() - timedelta(hours=3),
            )
        )

        summary = await components.timeout_monitor.run()

        assert summary["run_at"] == clock().isoformat()
        assert summary["fixed"] == 2
        assert summary["failed"] == 0
        alerts = components.alerts.of_type(AlertType.STUCK_ORDERS_RECOVERED)
        assert len(alerts) == 1
        assert alerts[0].severity == AlertSeverity.WARNING.value
        assert alerts[0].details["timeout_recovery"] == [str(stale.id)]
        assert alerts[0].details["submission_interrupted"] == [str(interrupted.id)]
        assert alerts[0].details["threshold_seconds"] == 3600


class TestStuckOrderEndToEnd:
    async def test_stale_order_is_reconciled_not_resubmitted(self, components, clock):
        order = components.orders.add(submitted_order(clock, 0))

        clock.advance(minutes=61)
        await components.timeout_monitor.run()
        assert order.status == OrderStatus.RETRY_PENDING

        components.vendor.poll_bodies["V123"] = {
            "_type": "order_response",
            "request_id": "V123",
        }
        clock.advance(minutes=31)
        summary = await components.retry_scheduler.scan()

        assert summary["reconciled"] == 1
        assert components.vendor.submitted == []
        assert order.zinc_order_id == "V123"
        assert order.status == OrderStatus.COMPLETED
        assert order.zinc_status == ZincStatus.PLACED
        assert order.retry_count == 1
