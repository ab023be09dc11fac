"""
Celery application for the scheduled pipeline jobs.

Run a worker with ``celery -A giftpipe.workers.celery_app worker`` and the
scheduler with ``celery -A giftpipe.workers.celery_app beat``.
"""

from celery import Celery
from celery.schedules import crontab

from giftpipe.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "giftpipe",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["giftpipe.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=86400,
)

celery_app.conf.beat_schedule = {
    "release-scheduled-orders": {
        "task": "pipeline.release_scheduled_orders",
        "schedule": crontab(minute=0),
    },
    "scan-retries": {
        "task": "pipeline.scan_retries",
        "schedule": crontab(minute="*/5"),
    },
    "monitor-timeouts": {
        "task": "pipeline.monitor_timeouts",
        "schedule": crontab(minute=15),
    },
    "sync-vendor-status": {
        "task": "pipeline.sync_vendor_status",
        "schedule": crontab(minute="*/30"),
    },
    "expire-auto-gift-approvals": {
        "task": "pipeline.expire_auto_gift_approvals",
        "schedule": crontab(minute=45),
    },
    "reconcile-payments": {
        "task": "pipeline.reconcile_payments",
        "schedule": crontab(minute="*/15"),
    },
    "sweep-approved-auto-gifts": {
        "task": "pipeline.sweep_approved_auto_gifts",
        "schedule": crontab(minute="*/10"),
    },
}

app = celery_app
