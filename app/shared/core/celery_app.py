"""
Celery worker for billing jobs.

The APScheduler process only enqueues; sweeps, expiry runs and health
checks execute here on the ``billing`` queue.
"""

from celery import Celery

from app.shared.core.config import get_settings

settings = get_settings()

broker_url = settings.REDIS_URL or "redis://localhost:6379/0"

celery_app = Celery(
    "medora_billing",
    broker=broker_url,
    backend=broker_url,
    include=["app.tasks.billing_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    result_expires=24 * 3600,
    timezone="UTC",
    enable_utc=True,
    task_default_queue="billing",
    task_routes={"billing.*": {"queue": "billing"}},
    # A sweep touching payments must not be picked up twice or dropped on a crash
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Hard stop below the sweep lock TTL so a hung run cannot outlive its lock
    task_soft_time_limit=600,
    task_time_limit=840,
    broker_connection_retry_on_startup=True,
    task_always_eager=settings.TESTING,
)
