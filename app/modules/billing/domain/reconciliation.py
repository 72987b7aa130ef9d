"""
Reconciliation Sweeper

Closes renewals the callback path never finished. Every few minutes it
takes pending attempts older than the staleness threshold and asks the
gateway what really happened:

    no order id, receipt unknown   -> failed NO_PAYMENT_INITIATED
    order paid, captured payment   -> applied (same path as a callback)
    order created / attempted      -> failed TIMEOUT_UNPAID
    anything ambiguous             -> left pending, flagged for review

A paid renewal is never failed here: when in doubt the attempt is flagged
and a human decides. Each attempt runs in its own session under the
tenant's verification lock and a bounded timeout.

Also hosts the orphaned-lock scan and the dependency health check.
"""

import asyncio
import math
import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.subscription import FailureReason, PaymentStatus, RenewalAttempt, ReviewReason
from app.modules.billing.domain.gateway import GatewayOrder, OrderStatus, PaymentGateway
from app.modules.billing.domain.monitoring import BillingMonitor
from app.modules.billing.domain.repository import SubscriptionRepository
from app.modules.billing.domain.verification import PaymentApplier
from app.shared.core.cache import CacheService
from app.shared.core.datetime_utils import utcnow
from app.shared.core.exceptions import DuplicateVerification, ErrorKind, GatewayError
from app.shared.core.health import HealthService
from app.shared.core.locks import TENANT_LOCK_PATTERNS, LockKind, LockManager, lock_key
from app.shared.core.logging import audit_log
from app.shared.core.notifications import NotificationDispatcher
from app.shared.core.ops_metrics import RECONCILIATION_DURATION, RECONCILIATION_OUTCOMES
from app.shared.core.tracing import billing_span

logger = structlog.get_logger()

SWEEP_LOCK_TTL_SECONDS = 900
# Added to the per-attempt timeout for the tenant lease the sweeper holds
ATTEMPT_LOCK_MARGIN_SECONDS = 10


class SweepOutcome:
    RECOVERED = "recovered"
    FAILED = "failed"
    FLAGGED = "flagged"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class SweepReport:
    total: int = 0
    recovered: int = 0
    failed: int = 0
    flagged: int = 0
    skipped: int = 0
    errors: int = 0
    ran: bool = True

    def record(self, outcome: str) -> None:
        self.total += 1
        field_name = "errors" if outcome == SweepOutcome.ERROR else outcome
        setattr(self, field_name, getattr(self, field_name) + 1)
        RECONCILIATION_OUTCOMES.labels(outcome=outcome).inc()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ReconciliationSweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        gateway: PaymentGateway,
        locks: LockManager,
        monitor: BillingMonitor,
        notifier: Optional[NotificationDispatcher] = None,
        cache: Optional[CacheService] = None,
        staleness: timedelta = timedelta(minutes=30),
        transaction_timeout_seconds: float = 90.0,
        batch_size: int = 100,
        orphan_after_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.locks = locks
        self.monitor = monitor
        self.notifier = notifier
        self.cache = cache
        self.staleness = staleness
        self.transaction_timeout_seconds = transaction_timeout_seconds
        # Outlives the bounded attempt, so the lease cannot lapse while it runs
        self.attempt_lock_ttl_seconds = max(
            locks.ttl_seconds,
            math.ceil(transaction_timeout_seconds) + ATTEMPT_LOCK_MARGIN_SECONDS,
        )
        self.batch_size = batch_size
        self.orphan_after_seconds = orphan_after_seconds

    async def sweep_stale_renewals(self) -> SweepReport:
        """One pass over stale pending renewals. Skipped if another sweep holds the lock."""
        key = lock_key(LockKind.RECONCILIATION, "global")
        token = await self.locks.acquire(key, ttl_seconds=SWEEP_LOCK_TTL_SECONDS)
        if token is None:
            logger.info("reconciliation_sweep_skipped", reason="another_sweep_running")
            return SweepReport(ran=False)

        report = SweepReport()
        start = time.perf_counter()
        try:
            with billing_span("reconciliation_sweep") as span:
                cutoff = utcnow() - self.staleness
                async with self.session_factory() as db:
                    stale = await SubscriptionRepository(db).find_stale_pending(cutoff, limit=self.batch_size)
                    attempt_ids = [attempt.id for attempt in stale]

                span.set_attribute("billing.stale_attempts", len(attempt_ids))
                for attempt_id in attempt_ids:
                    report.record(await self._reconcile_bounded(attempt_id))
                span.set_attribute("billing.recovered", report.recovered)
        finally:
            RECONCILIATION_DURATION.observe(time.perf_counter() - start)
            await self.locks.release(key, token)

        logger.info("reconciliation_sweep_completed", **report.to_dict())
        return report

    async def _reconcile_bounded(self, attempt_id: UUID) -> str:
        try:
            return await asyncio.wait_for(
                self._reconcile_attempt(attempt_id),
                timeout=self.transaction_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "reconciliation_attempt_timed_out",
                attempt_id=str(attempt_id),
                timeout_seconds=self.transaction_timeout_seconds,
            )
            return SweepOutcome.ERROR
        except Exception as e:
            logger.error("reconciliation_attempt_failed", attempt_id=str(attempt_id), error=str(e), exc_info=True)
            return SweepOutcome.ERROR

    async def _reconcile_attempt(self, attempt_id: UUID) -> str:
        async with self.session_factory() as db:
            repo = SubscriptionRepository(db)
            attempt = await repo.get_attempt(attempt_id)
            if attempt is None or attempt.payment_status != PaymentStatus.PENDING.value:
                return SweepOutcome.SKIPPED

            # Never race a live callback for the same tenant
            key = lock_key(LockKind.VERIFICATION, attempt.tenant_id)
            token = await self.locks.acquire(key, ttl_seconds=self.attempt_lock_ttl_seconds)
            if token is None:
                logger.info("reconciliation_attempt_deferred", attempt_id=str(attempt_id), reason="verification_in_progress")
                return SweepOutcome.SKIPPED
            try:
                await db.refresh(attempt)
                if attempt.payment_status != PaymentStatus.PENDING.value:
                    return SweepOutcome.SKIPPED
                try:
                    return await self._resolve(db, attempt)
                except Exception:
                    await db.rollback()
                    raise
            finally:
                await self.locks.release(key, token)

    async def _resolve(self, db: AsyncSession, attempt: RenewalAttempt) -> str:
        if attempt.gateway_order_id is None:
            order = None
            if attempt.receipt:
                try:
                    order = await self.gateway.find_order_by_receipt(attempt.receipt)
                except GatewayError as e:
                    return await self._flag(db, attempt, ReviewReason.GATEWAY_API_ERROR, error=e.message)
            if order is None:
                return await self._fail(db, attempt, FailureReason.NO_PAYMENT_INITIATED)

            recorded = await SubscriptionRepository(db).record_gateway_order(
                attempt, order.id, order=order.raw, order_recovered_by_receipt=True
            )
            await db.commit()
            if not recorded:
                return SweepOutcome.SKIPPED
            logger.warning("stale_renewal_order_recovered_by_receipt", attempt_id=str(attempt.id), order_id=order.id)
        else:
            try:
                order = await self.gateway.fetch_order(attempt.gateway_order_id)
            except GatewayError as e:
                return await self._flag(db, attempt, ReviewReason.GATEWAY_API_ERROR, error=e.message)

        return await self._resolve_order(db, attempt, order)

    async def _resolve_order(self, db: AsyncSession, attempt: RenewalAttempt, order: GatewayOrder) -> str:
        if order.status in (OrderStatus.CREATED, OrderStatus.ATTEMPTED):
            return await self._fail(db, attempt, FailureReason.TIMEOUT_UNPAID, order_status=order.status)
        if order.status != OrderStatus.PAID:
            return await self._flag(db, attempt, ReviewReason.UNEXPECTED_ORDER_STATUS, order_status=order.status)

        try:
            payments = await self.gateway.fetch_order_payments(order.id)
        except GatewayError as e:
            return await self._flag(db, attempt, ReviewReason.GATEWAY_API_ERROR, error=e.message)

        captured = next((p for p in payments if p.is_captured), None)
        if captured is None:
            reason = ReviewReason.PAYMENT_ATTEMPTED_NOT_CAPTURED if payments else ReviewReason.PAID_BUT_NO_PAYMENT_DETAILS
            return await self._flag(
                db, attempt, reason,
                payment_statuses=[p.status for p in payments] or None,
            )

        if captured.amount != attempt.amount_minor:
            logger.critical(
                "reconciliation_amount_mismatch",
                order_id=order.id,
                expected_minor=attempt.amount_minor,
                paid_minor=captured.amount,
            )
            return await self._flag(
                db, attempt, ReviewReason.AMOUNT_MISMATCH,
                expected_minor=attempt.amount_minor,
                paid_minor=captured.amount,
            )

        applier = PaymentApplier(db, cache=self.cache, notifier=self.notifier)
        try:
            subscription = await applier.apply(attempt, captured, source="reconciliation")
            await db.commit()
        except DuplicateVerification:
            await db.rollback()
            return SweepOutcome.SKIPPED

        logger.warning(
            "stale_renewal_recovered",
            tenant_id=str(attempt.tenant_id),
            order_id=order.id,
            payment_id=captured.id,
        )
        audit_log(
            "subscription_renewed",
            tenant_id=attempt.tenant_id,
            details={"order_id": order.id, "payment_id": captured.id, "recovered": True},
        )
        await applier.after_commit(subscription, attempt, captured)
        if self.notifier is not None:
            await self.notifier.notify_super_admin(
                "payment_recovered",
                {
                    "tenant_id": str(attempt.tenant_id),
                    "order_id": order.id,
                    "payment_id": captured.id,
                    "amount": f"{Decimal(captured.amount) / 100:.2f}",
                },
            )
        return SweepOutcome.RECOVERED

    async def _fail(self, db: AsyncSession, attempt: RenewalAttempt, reason: FailureReason, **details: Any) -> str:
        changed = await SubscriptionRepository(db).mark_attempt_failed(attempt, reason.value, failed_by="reconciliation", **details)
        await db.commit()
        if not changed:
            return SweepOutcome.SKIPPED
        await self.monitor.record_failure(
            ErrorKind.STALE_RENEWAL_ORPHANED,
            {"tenant_id": attempt.tenant_id, "reason": reason.value},
        )
        logger.info(
            "stale_renewal_failed",
            attempt_id=str(attempt.id),
            order_id=attempt.gateway_order_id,
            reason=reason.value,
        )
        return SweepOutcome.FAILED

    async def _flag(self, db: AsyncSession, attempt: RenewalAttempt, reason: ReviewReason, **details: Any) -> str:
        newly_flagged = await SubscriptionRepository(db).flag_for_review(attempt, reason.value, **details)
        await db.commit()
        if not newly_flagged:
            logger.debug("renewal_still_under_review", attempt_id=str(attempt.id), reason=reason.value)
            return SweepOutcome.FLAGGED

        logger.error(
            "renewal_flagged_for_review",
            attempt_id=str(attempt.id),
            tenant_id=str(attempt.tenant_id),
            order_id=attempt.gateway_order_id,
            reason=reason.value,
        )
        await self.monitor.record_failure(
            ErrorKind.ADMIN_REVIEW_REQUIRED,
            {"tenant_id": attempt.tenant_id, "order_id": attempt.gateway_order_id, "reason": reason.value},
        )
        if self.notifier is not None:
            await self.notifier.send_alert(
                "Renewal requires admin review",
                f"Order {attempt.gateway_order_id or attempt.receipt} for tenant {attempt.tenant_id}: {reason.value}",
                severity="critical",
                context={
                    "tenant_id": str(attempt.tenant_id),
                    "order_id": attempt.gateway_order_id or "-",
                    "receipt": attempt.receipt,
                    "reason": reason.value,
                },
            )
        return SweepOutcome.FLAGGED

    async def cleanup_orphaned_locks(self) -> int:
        cleared = await self.locks.cleanup_orphaned(TENANT_LOCK_PATTERNS, self.orphan_after_seconds)
        if cleared:
            logger.warning("orphaned_locks_cleared", count=cleared)
        return cleared

    async def check_health(self) -> Dict[str, Any]:
        """Dependency health snapshot; alerts when anything is down."""
        async with self.session_factory() as db:
            snapshot = await HealthService(
                db, lock_store=self.locks.store, gateway=self.gateway, cache=self.cache
            ).check_all()

        await self.monitor.emit_health(snapshot)
        status = snapshot["status"]
        if status != "healthy":
            down = [name for name, details in snapshot.items() if isinstance(details, dict) and details.get("status") == "down"]
            logger.error("billing_dependencies_unhealthy", status=status, down=down)
            if self.notifier is not None:
                await self.notifier.send_alert(
                    f"Billing dependencies {status}",
                    f"Down: {', '.join(down)}",
                    severity="critical" if status == "unhealthy" else "warning",
                )
        return snapshot

    async def run_monitoring_tasks(self) -> Dict[str, Any]:
        """Sweep, lock cleanup and health snapshot; one failing step does not stop the others."""
        results: Dict[str, Any] = {}
        try:
            results["sweep"] = (await self.sweep_stale_renewals()).to_dict()
        except Exception as e:
            logger.error("monitoring_step_failed", step="sweep", error=str(e), exc_info=True)
            results["sweep"] = {"error": str(e)}
        try:
            results["orphaned_locks_cleared"] = await self.cleanup_orphaned_locks()
        except Exception as e:
            logger.error("monitoring_step_failed", step="lock_cleanup", error=str(e), exc_info=True)
            results["orphaned_locks_cleared"] = {"error": str(e)}
        try:
            results["health"] = await self.check_health()
        except Exception as e:
            logger.error("monitoring_step_failed", step="health", error=str(e), exc_info=True)
            results["health"] = {"error": str(e)}
        return results
