"""
Renewal Orchestrator

Turns a renewal request into exactly one gateway order per tenant:

    validate -> renewal lock -> load subscription -> doctor floor
    -> existing pending check -> price -> reserve attempt (receipt)
    -> gateway order -> record order id -> release lock

The attempt is committed with its receipt before the order is created
and the order id is recorded right after, so a crash or DB failure
between the two leaves a pending row the sweeper can resolve through a
receipt lookup.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import (
    BillingCycle,
    FailureReason,
    PaymentStatus,
    RenewalAttempt,
    ReviewReason,
    Subscription,
    SubscriptionStatus,
)
from app.modules.billing.domain.gateway import GatewayOrder, PaymentGateway, generate_receipt
from app.modules.billing.domain.monitoring import BillingMonitor
from app.modules.billing.domain.pricing import (
    PriceBreakdown,
    PricingPolicy,
    PriorSubscription,
    calculate_price,
    validate_request,
)
from app.modules.billing.domain.repository import SubscriptionRepository
from app.modules.billing.domain.roster import DoctorRosterQuery
from app.shared.core.datetime_utils import add_months, ensure_utc, utcnow
from app.shared.core.exceptions import (
    AdminReviewRequired,
    BillingError,
    GatewayAPIError,
    GatewayError,
    LockContention,
    ValidationError,
)
from app.shared.core.locks import LockKind, LockManager, lock_key
from app.shared.core.logging import audit_log
from app.shared.core.ops_metrics import (
    ORPHANED_GATEWAY_ORDERS,
    RENEWAL_ORDERS_CREATED,
    RENEWAL_REQUESTS_REUSED,
)
from app.shared.core.tracing import billing_span

logger = structlog.get_logger()


@dataclass(frozen=True)
class RenewalOrder:
    """What the client needs to open the gateway checkout."""
    attempt_id: UUID
    order_id: str
    amount_minor: int
    currency: str
    receipt: Optional[str]
    doctor_count: int
    billing_cycle: str
    total_price: Decimal
    price_breakdown: Dict[str, Any]
    start_date: datetime
    end_date: datetime
    key_id: Optional[str] = None
    reused: bool = False


def period_end(start: datetime, billing_cycle: str) -> datetime:
    return add_months(start, 12 if billing_cycle == BillingCycle.YEARLY.value else 1)


def has_paid_time_left(subscription: Optional[Subscription], now: datetime) -> bool:
    """
    Paid and not yet over. Cancelling only stops auto-renewal, so a
    cancelled plan keeps its remaining days.
    """
    if subscription is None:
        return False
    if subscription.status not in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLED.value):
        return False
    if subscription.payment_status != PaymentStatus.SUCCESS.value:
        return False
    end = ensure_utc(subscription.end_date)
    return end is not None and end > now


def prior_paid_period(subscription: Optional[Subscription], now: datetime) -> Optional[PriorSubscription]:
    """The unexpired paid period a renewal can take credit for, if any."""
    if not has_paid_time_left(subscription, now):
        return None
    start = ensure_utc(subscription.current_period_start or subscription.start_date)
    if start is None:
        return None
    return PriorSubscription(
        total_price=Decimal(subscription.total_price),
        start_date=start,
        end_date=ensure_utc(subscription.end_date),
    )


class RenewalOrchestrator:
    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        locks: LockManager,
        roster: DoctorRosterQuery,
        policy: PricingPolicy,
        monitor: BillingMonitor,
        staleness: timedelta = timedelta(minutes=30),
        currency: str = "INR",
        key_id: Optional[str] = None,
    ):
        self.db = db
        self.repo = SubscriptionRepository(db)
        self.gateway = gateway
        self.locks = locks
        self.roster = roster
        self.policy = policy
        self.monitor = monitor
        self.staleness = staleness
        self.currency = currency
        self.key_id = key_id

    async def create_renewal(self, tenant_id: UUID, doctor_count: int, billing_cycle: str) -> RenewalOrder:
        """
        Create (or return the in-flight) gateway order for a renewal.

        Raises ValidationError, LockContention, GatewayTimeout,
        GatewayAPIError or AdminReviewRequired.
        """
        try:
            cycle = validate_request(doctor_count, billing_cycle, self.policy)
            with billing_span("renewal", tenant_id, doctor_count=doctor_count, billing_cycle=cycle.value):
                async with self.locks.hold(lock_key(LockKind.RENEWAL, tenant_id), operation="renewal"):
                    return await self._create_locked(tenant_id, doctor_count, cycle)
        except BillingError as e:
            await self.monitor.record_failure(e.kind, {"tenant_id": tenant_id, "operation": "renewal"})
            logger.warning("renewal_request_rejected", tenant_id=str(tenant_id), kind=e.kind.value, error=e.message)
            raise

    async def _create_locked(self, tenant_id: UUID, doctor_count: int, cycle: BillingCycle) -> RenewalOrder:
        now = utcnow()
        subscription = await self.repo.get_subscription(tenant_id)

        provisioned = await self.roster.count_active_doctors(tenant_id)
        if doctor_count < provisioned:
            raise ValidationError(
                f"Cannot renew for {doctor_count} doctors: {provisioned} doctors are currently provisioned",
                details={"doctor_count": doctor_count, "provisioned": provisioned},
            )

        if subscription is not None:
            pending = await self.repo.get_pending_attempt(subscription.id)
            if pending is not None:
                existing = await self._resolve_pending(pending, doctor_count, cycle, now)
                if existing is not None:
                    return existing

        price = calculate_price(
            doctor_count, cycle, self.policy,
            prior=prior_paid_period(subscription, now),
            now=now,
        )

        if subscription is None:
            subscription = await self.repo.create_pending_subscription(tenant_id, doctor_count, cycle.value)

        attempt = await self._reserve_attempt(subscription, price, now)
        order = await self._create_order(attempt, price)
        return await self._record_order(attempt, order)

    async def _resolve_pending(
        self,
        pending: RenewalAttempt,
        doctor_count: int,
        cycle: BillingCycle,
        now: datetime,
    ) -> Optional[RenewalOrder]:
        """
        Decide what an existing pending renewal means for this request.

        Returns the pending order to reuse, None when it was cleared and a
        new renewal may proceed, or raises.
        """
        if pending.requires_admin_review:
            raise AdminReviewRequired(
                "The previous renewal is under review; contact support",
                reason=pending.review_reason or "UNDER_REVIEW",
                details={"order_id": pending.gateway_order_id},
            )

        if pending.gateway_order_id is None:
            if not await self._attach_order_by_receipt(pending):
                # Only the lock holder creates orders, so nothing is in flight
                await self.repo.mark_attempt_failed(
                    pending,
                    FailureReason.NO_PAYMENT_INITIATED.value,
                    superseded_at=now.isoformat(),
                )
                await self.db.commit()
                logger.info("stale_renewal_without_order_failed", attempt_id=str(pending.id))
                return None

        age = now - ensure_utc(pending.created_at)
        if age >= self.staleness:
            raise LockContention(
                "The previous renewal is awaiting payment reconciliation, retry in a few minutes",
                details={"order_id": pending.gateway_order_id},
            )

        if pending.doctor_count == doctor_count and pending.billing_cycle == cycle.value:
            RENEWAL_REQUESTS_REUSED.inc()
            logger.info("renewal_order_reused", order_id=pending.gateway_order_id, tenant_id=str(pending.tenant_id))
            return self._to_order(pending, reused=True)

        retry_after = int((self.staleness - age).total_seconds())
        raise LockContention(
            "A different renewal is already awaiting payment",
            details={"order_id": pending.gateway_order_id, "retry_after_seconds": retry_after},
        )

    async def _attach_order_by_receipt(self, attempt: RenewalAttempt) -> bool:
        """Find the order for a reserved attempt whose order id was never recorded."""
        if not attempt.receipt:
            return False
        order = await self.gateway.find_order_by_receipt(attempt.receipt)
        if order is None:
            return False
        recorded = await self.repo.record_gateway_order(
            attempt, order.id, order=order.raw, order_recovered_by_receipt=True
        )
        await self.db.commit()
        if not recorded:
            await self.db.refresh(attempt)
            return attempt.payment_status == PaymentStatus.PENDING.value and attempt.gateway_order_id is not None
        logger.warning("renewal_order_recovered_by_receipt", order_id=order.id, attempt_id=str(attempt.id))
        return True

    async def _reserve_attempt(self, subscription: Subscription, price: PriceBreakdown, now: datetime) -> RenewalAttempt:
        attempt = RenewalAttempt(
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            doctor_count=price.doctor_count,
            billing_cycle=price.billing_cycle,
            total_price=price.total,
            amount_minor=price.total_minor,
            currency=self.currency,
            price_breakdown=price.to_dict(),
            payment_status=PaymentStatus.PENDING.value,
            receipt=generate_receipt(subscription.tenant_id, now),
            start_date=now,
            end_date=period_end(now, price.billing_cycle),
            created_at=now,
        )
        self.db.add(attempt)
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return attempt

    async def _create_order(self, attempt: RenewalAttempt, price: PriceBreakdown) -> GatewayOrder:
        try:
            return await self.gateway.create_order(
                amount_minor=price.total_minor,
                currency=self.currency,
                receipt=attempt.receipt,
                notes={
                    "tenant_id": str(attempt.tenant_id),
                    "attempt_id": str(attempt.id),
                    "doctor_count": str(price.doctor_count),
                    "billing_cycle": price.billing_cycle,
                },
            )
        except GatewayAPIError as e:
            if not e.retryable:
                # Rejected outright: no order exists for this receipt
                await self.repo.mark_attempt_failed(
                    attempt, FailureReason.ORDER_CREATION_FAILED.value, error=e.message
                )
                await self.db.commit()
            else:
                logger.warning("renewal_order_outcome_unknown", attempt_id=str(attempt.id), receipt=attempt.receipt)
            raise
        except GatewayError:
            # Timed out: the order may exist; the receipt lookup settles it later
            logger.warning("renewal_order_outcome_unknown", attempt_id=str(attempt.id), receipt=attempt.receipt)
            raise

    async def _record_order(self, attempt: RenewalAttempt, order: GatewayOrder) -> RenewalOrder:
        try:
            recorded = await self.repo.record_gateway_order(attempt, order.id, order=order.raw)
            if not recorded:
                await self._keep_late_order(attempt, order)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            ORPHANED_GATEWAY_ORDERS.inc()
            logger.critical(
                "renewal_order_not_recorded",
                order_id=order.id,
                receipt=attempt.receipt,
                attempt_id=str(attempt.id),
                tenant_id=str(attempt.tenant_id),
                error=str(e),
            )
            raise

        if not recorded:
            ORPHANED_GATEWAY_ORDERS.inc()
            logger.critical(
                "renewal_order_created_after_close",
                order_id=order.id,
                attempt_id=str(attempt.id),
                tenant_id=str(attempt.tenant_id),
                attempt_status=attempt.payment_status,
            )
            raise AdminReviewRequired(
                "The renewal was closed while its order was being created; it will be reviewed",
                reason=ReviewReason.ORDER_CREATED_AFTER_CLOSE.value,
                details={"order_id": order.id},
            )

        RENEWAL_ORDERS_CREATED.labels(billing_cycle=attempt.billing_cycle).inc()
        logger.info(
            "renewal_order_created",
            tenant_id=str(attempt.tenant_id),
            order_id=order.id,
            amount_minor=attempt.amount_minor,
            doctor_count=attempt.doctor_count,
            billing_cycle=attempt.billing_cycle,
        )
        audit_log(
            "renewal_order_created",
            tenant_id=attempt.tenant_id,
            details={"order_id": order.id, "amount_minor": attempt.amount_minor},
        )
        return self._to_order(attempt)

    async def _keep_late_order(self, attempt: RenewalAttempt, order: GatewayOrder) -> None:
        """
        The attempt was closed while its order was being created. The order
        stays on the closed row, flagged, so a payment against it still finds
        its attempt and is routed to review.
        """
        await self.db.refresh(attempt)
        if attempt.gateway_order_id is None:
            attempt.gateway_order_id = order.id
        await self.repo.flag_for_review(
            attempt,
            ReviewReason.ORDER_CREATED_AFTER_CLOSE.value,
            late_order_id=order.id,
            late_order=order.raw or None,
        )

    def _to_order(self, attempt: RenewalAttempt, reused: bool = False) -> RenewalOrder:
        return RenewalOrder(
            attempt_id=attempt.id,
            order_id=attempt.gateway_order_id,
            amount_minor=attempt.amount_minor,
            currency=attempt.currency,
            receipt=attempt.receipt,
            doctor_count=attempt.doctor_count,
            billing_cycle=attempt.billing_cycle,
            total_price=Decimal(attempt.total_price),
            price_breakdown=attempt.price_breakdown or {},
            start_date=ensure_utc(attempt.start_date),
            end_date=ensure_utc(attempt.end_date),
            key_id=self.key_id,
            reused=reused,
        )
