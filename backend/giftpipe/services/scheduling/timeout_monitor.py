"""
Timeout monitor: bounds how long an order can silently stall.

Two kinds of stall are recovered:

- the vendor accepted the order (``processing``/``submitted``) but no
  webhook or status update has touched it for the staleness threshold;
- a submission claim (``zinc_status='submitting'``) was written but its
  outcome was never recorded, typically because the worker died mid-call.

Both move to ``retry_pending`` with a reason and a next attempt time. The
staleness predicate is repeated inside each conditional update, so an order
that progressed between the scan and the write is left alone.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from giftpipe.core.config import get_settings
from giftpipe.core.logging import get_logger
from giftpipe.database.models.alert import AlertSeverity, AlertType
from giftpipe.database.models.order import Order
from giftpipe.services.alerts.repository import AlertRepository
from giftpipe.services.orders.repository import OrderRepository, OrderRepositoryError
from giftpipe.services.orders.state_machine import StateTransitionError
from giftpipe.services.scheduling.policy import compute_next_retry_at

logger = get_logger(__name__)


class TimeoutMonitor:
    """Recovers stale and interrupted submissions."""

    def __init__(
        self,
        repository: OrderRepository,
        alert_repository: AlertRepository,
        threshold: Optional[timedelta] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the monitor.

        Args:
            repository: Order repository
            alert_repository: Where the per-run summary Alert is written
            threshold: Staleness threshold (defaults to settings)
            clock: Current-time source, for tests
        """
        self.repository = repository
        self.alert_repository = alert_repository
        self.threshold = threshold or timedelta(
            seconds=get_settings().stale_submission_threshold_seconds
        )
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    async def run(self) -> dict[str, Any]:
        """
        Run one monitoring pass.

        Returns:
            Summary with recovered, skipped and failed order ids per kind
        """
        now = self.clock()

        stale = await self.repository.find_stale_submissions(now, self.threshold)
        stale_result = await self._recover_all(
            stale, now, self.repository.recover_stale_submission, "timeout_recovery"
        )

        interrupted = await self.repository.find_interrupted_submissions(
            now, self.threshold
        )
        interrupted_result = await self._recover_all(
            interrupted,
            now,
            self.repository.recover_interrupted_submission,
            "submission_interrupted",
        )

        recovered = stale_result["recovered"] + interrupted_result["recovered"]
        failed = stale_result["failed"] + interrupted_result["failed"]
        summary = {
            "run_at": now.isoformat(),
            "stale": stale_result,
            "interrupted": interrupted_result,
            "fixed": len(recovered),
            "failed": len(failed),
        }

        if recovered or failed:
            await self.alert_repository.create_alert(
                AlertType.STUCK_ORDERS_RECOVERED,
                f"Timeout monitor recovered {len(recovered)} stuck order(s)"
                + (f", {len(failed)} could not be recovered" if failed else ""),
                severity=AlertSeverity.CRITICAL if failed else AlertSeverity.WARNING,
                details={
                    "run_at": now.isoformat(),
                    "threshold_seconds": int(self.threshold.total_seconds()),
                    "fixed": len(recovered),
                    "failed": len(failed),
                    "recovered_order_ids": recovered,
                    "failed_order_ids": failed,
                    "timeout_recovery": stale_result["recovered"],
                    "submission_interrupted": interrupted_result["recovered"],
                },
            )

        logger.info(
            "Timeout monitor finished",
            stale_found=len(stale),
            interrupted_found=len(interrupted),
            fixed=len(recovered),
            failed=len(failed),
        )
        return summary

    async def _recover_all(
        self,
        orders: list[Order],
        now: datetime,
        recover: Callable[..., Awaitable[Optional[Order]]],
        reason: str,
    ) -> dict[str, list[str]]:
        result: dict[str, list[str]] = {"recovered": [], "skipped": [], "failed": []}
        for order in orders:
            order_id = str(order.id)
            try:
                updated = await recover(
                    order.id,
                    now=now,
                    threshold=self.threshold,
                    next_retry_at=compute_next_retry_at(order.retry_count, now),
                )
            except (OrderRepositoryError, StateTransitionError) as e:
                result["failed"].append(order_id)
                logger.error(
                    "Stuck order recovery failed",
                    order_id=order_id,
                    retry_reason=reason,
                    error=str(e),
                )
                continue

            if updated is None:
                result["skipped"].append(order_id)
                logger.info(
                    "Stuck order progressed before recovery",
                    order_id=order_id,
                    retry_reason=reason,
                )
                continue

            result["recovered"].append(order_id)
            logger.warning(
                "Stuck order moved to retry",
                order_id=order_id,
                retry_reason=reason,
                zinc_order_id=order.zinc_order_id,
                next_retry_at=updated.next_retry_at.isoformat()
                if updated.next_retry_at
                else None,
            )
        return result
