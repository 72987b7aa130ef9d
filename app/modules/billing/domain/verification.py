"""
Verification Orchestrator

Applies a gateway payment callback {order_id, payment_id, signature}
exactly once, under the tenant's verification lock:

    duplicate check -> signature -> gateway payment (captured, same order)
    -> pending attempt -> amount (paise) -> apply -> commit
    -> post-processing (cache, receipt email)

The callback body is never trusted for status or amount; both come from
the gateway. Post-processing runs after commit and cannot undo a payment.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import (
    PaymentStatus,
    RenewalAttempt,
    ReviewReason,
    Subscription,
    SubscriptionStatus,
)
from app.modules.billing.domain.gateway import GatewayPayment, PaymentGateway, verify_payment_signature
from app.modules.billing.domain.monitoring import BillingMonitor
from app.modules.billing.domain.renewal import has_paid_time_left
from app.modules.billing.domain.repository import SubscriptionRepository, merge_gateway_response
from app.shared.core.cache import CacheService
from app.shared.core.datetime_utils import ensure_utc, utcnow
from app.shared.core.exceptions import (
    AdminReviewRequired,
    AmountMismatch,
    BillingError,
    DuplicateVerification,
    IntegrityViolation,
    PaymentNotCaptured,
    RenewalNotFound,
    SignatureMismatch,
    ValidationError,
)
from app.shared.core.locks import LockKind, LockManager, lock_key
from app.shared.core.logging import audit_log
from app.shared.core.notifications import NotificationDispatcher
from app.shared.core.ops_metrics import VERIFICATIONS_TOTAL
from app.shared.core.tracing import billing_span

logger = structlog.get_logger()


class VerificationOutcome:
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"


@dataclass(frozen=True)
class VerificationResult:
    outcome: str
    order_id: str
    payment_id: Optional[str]
    subscription_id: UUID
    doctor_count: int
    billing_cycle: str
    end_date: Optional[datetime]

    @property
    def already_applied(self) -> bool:
        return self.outcome == VerificationOutcome.ALREADY_APPLIED


def _plan_price(attempt: RenewalAttempt) -> Decimal:
    """Plan subtotal for the new period, the basis of the next proration."""
    breakdown = attempt.price_breakdown or {}
    if breakdown.get("subtotal") is not None:
        return Decimal(str(breakdown["subtotal"]))
    return Decimal(attempt.total_price)


class PaymentApplier:
    """
    The single success path shared by callback verification and the
    reconciliation sweeper.
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[CacheService] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.repo = SubscriptionRepository(db)
        self.cache = cache
        self.notifier = notifier

    async def apply(self, attempt: RenewalAttempt, payment: GatewayPayment, source: str) -> Subscription:
        """
        pending -> success, then move the subscription onto the attempt's plan.

        Raises DuplicateVerification when another worker applied the attempt
        first. Does not commit.
        """
        now = utcnow()
        was_flagged = bool(attempt.requires_admin_review)
        blob = merge_gateway_response(
            attempt,
            payment=payment.raw or None,
            applied_at=now.isoformat(),
            applied_by=source,
            # A flagged attempt that gets paid settles its own review
            review_resolved_at=now.isoformat() if was_flagged else None,
            review_resolution=f"applied_by_{source}" if was_flagged else None,
        )
        result = await self.db.execute(
            update(RenewalAttempt)
            .where(
                RenewalAttempt.id == attempt.id,
                RenewalAttempt.payment_status == PaymentStatus.PENDING.value,
            )
            .values(
                payment_status=PaymentStatus.SUCCESS.value,
                gateway_payment_id=payment.id,
                gateway_response=blob,
                requires_admin_review=False,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            raise DuplicateVerification(details={"order_id": attempt.gateway_order_id})
        if was_flagged:
            logger.info("renewal_review_resolved", order_id=attempt.gateway_order_id, resolved_by=source)

        subscription = await self.db.get(Subscription, attempt.subscription_id)
        # A cancelled plan with paid days left continues rather than restarts
        if not has_paid_time_left(subscription, now) or subscription.start_date is None:
            subscription.start_date = attempt.start_date

        subscription.doctor_count = attempt.doctor_count
        subscription.billing_cycle = attempt.billing_cycle
        subscription.total_price = _plan_price(attempt)
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.payment_status = PaymentStatus.SUCCESS.value
        subscription.current_period_start = attempt.start_date
        subscription.end_date = attempt.end_date
        subscription.cancelled_at = None
        subscription.auto_renew = True
        subscription.updated_at = now
        await self.db.flush()
        return subscription

    async def after_commit(self, subscription: Subscription, attempt: RenewalAttempt, payment: GatewayPayment) -> None:
        """Cache invalidation and the tenant receipt. Failures are logged only."""
        if self.cache is not None:
            try:
                await self.cache.invalidate_subscription(subscription.tenant_id)
            except Exception as e:
                logger.warning("subscription_cache_invalidation_failed", tenant_id=str(subscription.tenant_id), error=str(e))

        if self.notifier is None:
            return
        try:
            hospital = await self.repo.get_hospital(subscription.tenant_id)
            await self.notifier.send_templated(
                hospital.admin_email if hospital else None,
                "payment_success",
                {
                    "hospital_name": hospital.name if hospital else "",
                    "doctor_count": subscription.doctor_count,
                    "billing_cycle": subscription.billing_cycle,
                    "amount": f"{Decimal(payment.amount) / 100:.2f}",
                    "end_date": ensure_utc(subscription.end_date).date().isoformat(),
                    "payment_id": payment.id,
                },
            )
        except Exception as e:
            logger.error("payment_notification_failed", order_id=attempt.gateway_order_id, error=str(e))


class VerificationOrchestrator:
    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        locks: LockManager,
        monitor: BillingMonitor,
        key_secret: str,
        cache: Optional[CacheService] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.repo = SubscriptionRepository(db)
        self.gateway = gateway
        self.locks = locks
        self.monitor = monitor
        self.key_secret = key_secret
        self.applier = PaymentApplier(db, cache=cache, notifier=notifier)

    async def verify(self, tenant_id: UUID, order_id: str, payment_id: str, signature: str) -> VerificationResult:
        """
        Verify and apply a payment callback.

        Replays return an ``already_applied`` result instead of raising.
        """
        try:
            if not order_id or not payment_id or not signature:
                raise ValidationError("order_id, payment_id and signature are required")
            with billing_span("verification", tenant_id, order_id=order_id, payment_id=payment_id):
                async with self.locks.hold(lock_key(LockKind.VERIFICATION, tenant_id), operation="verification"):
                    return await self._verify_locked(tenant_id, order_id, payment_id, signature)
        except BillingError as e:
            VERIFICATIONS_TOTAL.labels(outcome="failed").inc()
            await self.monitor.record_failure(e.kind, {"tenant_id": tenant_id, "order_id": order_id})
            logger.warning(
                "payment_verification_failed",
                tenant_id=str(tenant_id),
                order_id=order_id,
                kind=e.kind.value,
                error=e.message,
            )
            raise

    async def _verify_locked(self, tenant_id: UUID, order_id: str, payment_id: str, signature: str) -> VerificationResult:
        attempt = await self.repo.get_attempt_by_order(order_id, tenant_id=tenant_id)
        if attempt is not None and attempt.payment_status == PaymentStatus.SUCCESS.value:
            return await self._already_applied(attempt)

        if not verify_payment_signature(order_id, payment_id, signature, self.key_secret):
            logger.critical("payment_signature_mismatch", tenant_id=str(tenant_id), order_id=order_id)
            raise SignatureMismatch("Payment signature does not match", details={"order_id": order_id})

        payment = await self.gateway.fetch_payment(payment_id)
        if payment.order_id != order_id:
            logger.critical(
                "payment_order_mismatch",
                order_id=order_id,
                payment_order_id=payment.order_id,
                payment_id=payment_id,
            )
            raise IntegrityViolation("Payment does not belong to this order", details={"order_id": order_id})
        if not payment.is_captured:
            raise PaymentNotCaptured(
                f"Payment is {payment.status}, not captured",
                details={"order_id": order_id, "payment_status": payment.status},
            )

        if attempt is None:
            raise RenewalNotFound(details={"order_id": order_id})

        if attempt.payment_status != PaymentStatus.PENDING.value:
            await self._flag_captured_after_failure(attempt, payment)

        if payment.amount != attempt.amount_minor:
            logger.critical(
                "payment_amount_mismatch",
                tenant_id=str(tenant_id),
                order_id=order_id,
                expected_minor=attempt.amount_minor,
                paid_minor=payment.amount,
            )
            raise AmountMismatch(
                "Paid amount does not match the renewal total",
                details={"order_id": order_id, "expected": attempt.amount_minor, "paid": payment.amount},
            )

        try:
            subscription = await self.applier.apply(attempt, payment, source="callback")
            await self.db.commit()
        except DuplicateVerification:
            await self.db.rollback()
            attempt = await self.repo.get_attempt_by_order(order_id, tenant_id=tenant_id)
            return await self._already_applied(attempt)
        except Exception:
            await self.db.rollback()
            raise

        VERIFICATIONS_TOTAL.labels(outcome=VerificationOutcome.APPLIED).inc()
        logger.info(
            "payment_verified",
            tenant_id=str(tenant_id),
            order_id=order_id,
            payment_id=payment_id,
            doctor_count=subscription.doctor_count,
            billing_cycle=subscription.billing_cycle,
        )
        audit_log(
            "subscription_renewed",
            tenant_id=tenant_id,
            details={"order_id": order_id, "payment_id": payment_id, "amount_minor": payment.amount},
        )
        await self.monitor.record_success()
        await self.applier.after_commit(subscription, attempt, payment)

        return VerificationResult(
            outcome=VerificationOutcome.APPLIED,
            order_id=order_id,
            payment_id=payment_id,
            subscription_id=subscription.id,
            doctor_count=subscription.doctor_count,
            billing_cycle=subscription.billing_cycle,
            end_date=ensure_utc(subscription.end_date),
        )

    async def _already_applied(self, attempt: RenewalAttempt) -> VerificationResult:
        VERIFICATIONS_TOTAL.labels(outcome=VerificationOutcome.ALREADY_APPLIED).inc()
        await self.monitor.record_failure(
            DuplicateVerification.kind,
            {"tenant_id": attempt.tenant_id, "order_id": attempt.gateway_order_id},
        )
        logger.info("payment_already_applied", order_id=attempt.gateway_order_id, tenant_id=str(attempt.tenant_id))
        return VerificationResult(
            outcome=VerificationOutcome.ALREADY_APPLIED,
            order_id=attempt.gateway_order_id,
            payment_id=attempt.gateway_payment_id,
            subscription_id=attempt.subscription_id,
            doctor_count=attempt.doctor_count,
            billing_cycle=attempt.billing_cycle,
            end_date=ensure_utc(attempt.end_date),
        )

    async def _flag_captured_after_failure(self, attempt: RenewalAttempt, payment: GatewayPayment) -> None:
        """Money arrived for an attempt that was already closed as unpaid."""
        await self.repo.flag_for_review(
            attempt,
            ReviewReason.CAPTURED_AFTER_FAILURE.value,
            captured_payment_id=payment.id,
            captured_amount=payment.amount,
        )
        await self.db.commit()
        logger.critical(
            "payment_captured_after_failure",
            order_id=attempt.gateway_order_id,
            payment_id=payment.id,
            attempt_status=attempt.payment_status,
        )
        raise AdminReviewRequired(
            "Payment was captured for a renewal already closed; it will be reviewed",
            reason=ReviewReason.CAPTURED_AFTER_FAILURE.value,
            details={"order_id": attempt.gateway_order_id, "payment_id": payment.id},
        )
