import asyncio
import time
import uuid

import structlog
from celery import shared_task

from app.modules.billing.domain.factory import build_expiry_service, build_sweeper
from app.shared.core.ops_metrics import SCHEDULER_JOB_DURATION, SCHEDULER_JOB_RUNS
from app.shared.core.tracing import bind_correlation_id
from app.shared.db.session import engine

logger = structlog.get_logger()


# Helper to run async code in sync Celery task
def run_async(coro):
    return asyncio.run(coro)


async def _run_job(job_name: str, work):
    """Correlation id, metrics and logging around one job run. Errors are logged, not raised."""
    structlog.contextvars.clear_contextvars()
    bind_correlation_id(str(uuid.uuid4()))
    structlog.contextvars.bind_contextvars(job_type=job_name)
    start_time = time.time()
    try:
        result = await work()
        SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="success").inc()
        logger.info("billing_job_completed", job=job_name, result=result)
        return result
    except Exception as e:
        SCHEDULER_JOB_RUNS.labels(job_name=job_name, status="failure").inc()
        logger.error("billing_job_failed", job=job_name, error=str(e), exc_info=True)
        return None
    finally:
        SCHEDULER_JOB_DURATION.labels(job_name=job_name).observe(time.time() - start_time)
        # Pooled connections are bound to this run's event loop
        await engine.dispose()


async def _reconciliation_logic():
    sweeper = build_sweeper()
    report = await sweeper.sweep_stale_renewals()
    cleared = await sweeper.cleanup_orphaned_locks()
    return {**report.to_dict(), "orphaned_locks_cleared": cleared}


async def _health_check_logic():
    snapshot = await build_sweeper().check_health()
    return {"status": snapshot["status"]}


async def _monitoring_logic():
    return await build_sweeper().run_monitoring_tasks()


async def _expiry_check_logic():
    return {"expired": await build_expiry_service().expire_overdue()}


async def _expiry_warning_logic():
    return {"warned": await build_expiry_service().send_expiry_warnings()}


@shared_task(name="billing.reconciliation_sweep")
def run_reconciliation_sweep():
    return run_async(_run_job("billing_reconciliation_sweep", _reconciliation_logic))


@shared_task(name="billing.health_check")
def run_health_check():
    return run_async(_run_job("billing_health_check", _health_check_logic))


@shared_task(name="billing.monitoring_tasks")
def run_monitoring_tasks():
    return run_async(_run_job("billing_monitoring_tasks", _monitoring_logic))


@shared_task(name="billing.expiry_check")
def run_expiry_check():
    return run_async(_run_job("billing_expiry_check", _expiry_check_logic))


@shared_task(name="billing.expiry_warnings")
def run_expiry_warnings():
    return run_async(_run_job("billing_expiry_warnings", _expiry_warning_logic))
