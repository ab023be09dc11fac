"""
Celery tasks driving the time-based parts of the pipeline.

Each task runs its coroutine in a fresh event loop over a freshly opened
``Pipeline`` and disposes the database engine before the loop closes.
Overlapping runs are safe: every state change in the pipeline is a
conditional update.
"""

import asyncio
from typing import Any, Awaitable, Callable
from uuid import UUID

from celery import Task, shared_task

from giftpipe.core.logging import clear_context, get_logger
from giftpipe.database.connection import close_database_connections
from giftpipe.services.auto_gifts.service import AutoGiftError
from giftpipe.services.pipeline import Pipeline, open_pipeline

logger = get_logger(__name__)


class PipelineTask(Task):
    """Base task class logging the lifecycle of pipeline jobs."""

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.error(
            "Pipeline task failed",
            task_name=self.name,
            task_id=task_id,
            exception=str(exc),
            args=args,
            kwargs=kwargs,
            exc_info=einfo,
        )

    def on_retry(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.warning(
            "Pipeline task retrying",
            task_name=self.name,
            task_id=task_id,
            exception=str(exc),
            retry_count=self.request.retries,
            max_retries=self.max_retries,
        )

    def on_success(
        self,
        retval: Any,
        task_id: str,
        args: tuple,
        kwargs: dict,
    ) -> None:
        logger.info(
            "Pipeline task completed",
            task_name=self.name,
            task_id=task_id,
            result=retval,
        )


def run_in_pipeline(job: Callable[[Pipeline], Awaitable[Any]]) -> Any:
    """
    Run ``job`` against a new pipeline in its own event loop.

    Args:
        job: Coroutine function receiving the pipeline

    Returns:
        Whatever ``job`` returns
    """

    async def runner() -> Any:
        try:
            async with open_pipeline() as pipeline:
                return await job(pipeline)
        finally:
            await close_database_connections()
            clear_context()

    return asyncio.run(runner())


@shared_task(
    bind=True,
    base=PipelineTask,
    name="pipeline.release_scheduled_orders",
    time_limit=900,
    soft_time_limit=840,
)
def release_scheduled_orders_task(self: Task) -> dict[str, Any]:
    """Release scheduled orders whose ship date has arrived."""
    logger.info("Starting scheduled order release", task_id=self.request.id)
    return run_in_pipeline(lambda pipeline: pipeline.releaser.release_due())


@shared_task(
    bind=True,
    base=PipelineTask,
    name="pipeline.scan_retries",
    time_limit=600,
    soft_time_limit=540,
)
def scan_retries_task(self: Task) -> dict[str, Any]:
    """Re-drive retry-pending orders whose backoff has elapsed."""
    logger.info("Starting retry scan", task_id=self.request.id)
    return run_in_pipeline(lambda pipeline: pipeline.retry_scheduler.scan())


@shared_task(
    bind=True,
    base=PipelineTask,
    name="pipeline.monitor_timeouts",
    time_limit=900,
    soft_time_limit=840,
)
def monitor_timeouts_task(self: Task) -> dict[str, Any]:
    """Move stuck submissions back into the retry path."""
    logger.info("Starting timeout monitor", task_id=self.request.id)
    return run_in_pipeline(lambda pipeline: pipeline.timeout_monitor.run())


@shared_task(
    bind=True,
    base=PipelineTask,
    name="pipeline.sync_vendor_status",
    time_limit=900,
    soft_time_limit=840,
)
def sync_vendor_status_task(self: Task, limit: int = 50) -> dict[str, Any]:
    """
    Poll the vendor for orders still waiting on confirmation.

    Args:
        self: Task instance
        limit: Maximum orders polled in one run

    Returns:
        Dictionary with checked, synced and failed counts
    """
    logger.info("Starting vendor status sync", task_id=self.request.id, limit=limit)
    return run_in_pipeline(
        lambda pipeline: pipeline.vendor_events.sync_awaiting(limit=limit)
    )


@shared_task(
    bind=True,
    base=PipelineTask,
    name="pipeline.reconcile_payments",
    time_limit=900,
    soft_time_limit=840,
)
def reconcile_payments_task(self: Task) -> dict[str, Any]:
    """Re-check unconfirmed payments whose webhook may have been missed."""
    logger.info("Starting payment reconciliation", task_id=self.request.id)
    return run_in_pipeline(lambda pipeline: pipeline.payment_reconciler.run())


@shared_task(
    bind=True,
    base=PipelineTask,
    name="pipeline.expire_auto_gift_approvals",
    time_limit=300,
    soft_time_limit=240,
)
def expire_auto_gift_approvals_task(self: Task) -> dict[str, Any]:
    logger.info("Starting approval expiry", task_id=self.request.id)
    expired = run_in_pipeline(lambda pipeline: pipeline.auto_gifts.expire_stale())
    return {"expired": expired}


@shared_task(
    bind=True,
    base=PipelineTask,
    name="pipeline.create_auto_gift_order",
    time_limit=300,
    soft_time_limit=240,
)
def create_auto_gift_order_task(self: Task, execution_id: str) -> dict[str, Any]:
    """
    Create and pay for the order of an approved auto-gift execution.

    Args:
        self: Task instance
        execution_id: Approved execution ID

    Returns:
        Dictionary with the execution, order and payment intent IDs
    """
    logger.info(
        "Creating auto-gift order",
        task_id=self.request.id,
        execution_id=execution_id,
    )

    async def create(pipeline: Pipeline) -> dict[str, Any]:
        created = await pipeline.auto_gifts.create_order(UUID(execution_id))
        return {
            "execution_id": execution_id,
            "order_id": str(created["order"].id),
            "payment_intent_id": created["payment_intent_id"],
            "processed": created["trigger_result"]["processed"],
        }

    try:
        return run_in_pipeline(create)
    except AutoGiftError as e:
        logger.error(
            "Auto-gift order creation failed",
            task_id=self.request.id,
            error=str(e),
            context=e.context,
        )
        raise


@shared_task(
    bind=True,
    base=PipelineTask,
    name="pipeline.sweep_approved_auto_gifts",
    time_limit=300,
    soft_time_limit=240,
)
def sweep_approved_auto_gifts_task(self: Task, limit: int = 50) -> dict[str, Any]:
    """
    Enqueue order creation for approved executions that never got an order.

    Args:
        self: Task instance
        limit: Maximum executions enqueued in one run

    Returns:
        Dictionary with the enqueued execution IDs
    """
    logger.info("Starting approved auto-gift sweep", task_id=self.request.id)
    stalled = run_in_pipeline(
        lambda pipeline: pipeline.auto_gifts.find_stalled_approvals(limit=limit)
    )
    enqueued = []
    for execution_id in stalled:
        create_auto_gift_order_task.delay(str(execution_id))
        enqueued.append(str(execution_id))
    return {"enqueued": enqueued}
