from datetime import datetime, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.shared.core.config import get_settings

logger = structlog.get_logger()


class BillingScheduler:
    """
    Registers the billing background jobs with APScheduler.

    Jobs only dispatch Celery tasks; the work itself runs on the workers,
    where the sweep lock keeps concurrent runs from overlapping.
    """

    def __init__(self, celery=None):
        self.scheduler = AsyncIOScheduler()
        self._celery = celery
        self._last_dispatch: dict[str, str] = {}

    @property
    def celery(self):
        if self._celery is None:
            from app.shared.core.celery_app import celery_app
            self._celery = celery_app
        return self._celery

    def _dispatch(self, task_name: str) -> None:
        logger.info("scheduler_dispatching_billing_task", task=task_name)
        self.celery.send_task(task_name)
        self._last_dispatch[task_name] = datetime.now(timezone.utc).isoformat()

    async def reconciliation_job(self):
        """Stale renewal sweep plus orphaned lock cleanup."""
        self._dispatch("billing.reconciliation_sweep")

    async def health_check_job(self):
        self._dispatch("billing.health_check")

    async def expiry_check_job(self):
        self._dispatch("billing.expiry_check")

    async def expiry_warning_job(self):
        self._dispatch("billing.expiry_warnings")

    async def startup_monitoring_job(self):
        """One full monitoring pass at boot to pick up anything missed while down."""
        self._dispatch("billing.monitoring_tasks")

    def start(self):
        settings = get_settings()
        # Reconciliation: every few minutes
        self.scheduler.add_job(
            self.reconciliation_job,
            trigger=IntervalTrigger(minutes=settings.RECONCILIATION_INTERVAL_MINUTES),
            id="billing_reconciliation_sweep",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        # Dependency health: hourly
        self.scheduler.add_job(
            self.health_check_job,
            trigger=IntervalTrigger(minutes=settings.HEALTH_CHECK_INTERVAL_MINUTES),
            id="billing_health_check",
            replace_existing=True,
            coalesce=True,
        )
        # Expiry: daily at midnight UTC
        self.scheduler.add_job(
            self.expiry_check_job,
            trigger=CronTrigger(hour=settings.EXPIRY_CHECK_HOUR, minute=0, timezone="UTC"),
            id="billing_expiry_check",
            replace_existing=True,
        )
        # Expiry warnings: daily 9AM UTC
        self.scheduler.add_job(
            self.expiry_warning_job,
            trigger=CronTrigger(hour=settings.EXPIRY_WARNING_HOUR, minute=0, timezone="UTC"),
            id="billing_expiry_warnings",
            replace_existing=True,
        )
        # Boot catch-up
        self.scheduler.add_job(
            self.startup_monitoring_job,
            id="billing_startup_monitoring",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("billing_scheduler_started", jobs=[job.id for job in self.scheduler.get_jobs()])

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)

    def get_status(self) -> dict:
        return {
            "running": self.scheduler.running,
            "last_dispatch": dict(self._last_dispatch),
            "jobs": [job.id for job in self.scheduler.get_jobs()],
        }
