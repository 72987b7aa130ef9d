"""
Subscription persistence.

Queries and guarded transitions over Subscription and its history rows.
Nothing here commits: the orchestrators own the transaction boundary so
a Subscription change and its history row always land together.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Sequence
from uuid import UUID

import structlog
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.hospital import Hospital
from app.models.subscription import (
    HistoryEvent,
    PaymentStatus,
    RenewalAttempt,
    Subscription,
    SubscriptionStatus,
)
from app.shared.core.datetime_utils import utcnow

logger = structlog.get_logger()


def merge_gateway_response(attempt: RenewalAttempt, **entries: Any) -> Dict[str, Any]:
    """Return the attempt's gateway blob with ``entries`` merged in."""
    merged = dict(attempt.gateway_response or {})
    merged.update({k: v for k, v in entries.items() if v is not None})
    return merged


class SubscriptionRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_hospital(self, tenant_id: UUID) -> Optional[Hospital]:
        result = await self.db.execute(select(Hospital).where(Hospital.id == tenant_id))
        return result.scalar_one_or_none()

    async def get_subscription(self, tenant_id: UUID) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def get_active_subscription(self, tenant_id: UUID) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.tenant_id == tenant_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def create_pending_subscription(self, tenant_id: UUID, doctor_count: int, billing_cycle: str) -> Subscription:
        """First purchase: a pending subscription that verification activates."""
        subscription = Subscription(
            tenant_id=tenant_id,
            doctor_count=doctor_count,
            billing_cycle=billing_cycle,
            status=SubscriptionStatus.PENDING.value,
            payment_status=PaymentStatus.PENDING.value,
            auto_renew=True,
        )
        self.db.add(subscription)
        await self.db.flush()
        return subscription

    async def get_pending_attempt(self, subscription_id: UUID) -> Optional[RenewalAttempt]:
        """The in-flight renewal for a subscription, if any (newest first)."""
        result = await self.db.execute(
            select(RenewalAttempt)
            .where(
                RenewalAttempt.subscription_id == subscription_id,
                RenewalAttempt.event_type == HistoryEvent.RENEWAL.value,
                RenewalAttempt.payment_status == PaymentStatus.PENDING.value,
            )
            .order_by(RenewalAttempt.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_attempt_by_order(self, order_id: str, tenant_id: Optional[UUID] = None) -> Optional[RenewalAttempt]:
        query = select(RenewalAttempt).where(RenewalAttempt.gateway_order_id == order_id)
        if tenant_id is not None:
            query = query.where(RenewalAttempt.tenant_id == tenant_id)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_attempt(self, attempt_id: UUID) -> Optional[RenewalAttempt]:
        result = await self.db.execute(select(RenewalAttempt).where(RenewalAttempt.id == attempt_id))
        return result.scalar_one_or_none()

    async def find_stale_pending(self, cutoff: datetime, limit: int = 100) -> Sequence[RenewalAttempt]:
        """Pending renewals created before ``cutoff``, oldest first."""
        result = await self.db.execute(
            select(RenewalAttempt)
            .where(
                RenewalAttempt.event_type == HistoryEvent.RENEWAL.value,
                RenewalAttempt.payment_status == PaymentStatus.PENDING.value,
                RenewalAttempt.created_at < cutoff,
            )
            .order_by(RenewalAttempt.created_at.asc())
            .limit(limit)
        )
        return result.scalars().all()

    async def list_history(self, tenant_id: UUID, limit: int = 20, offset: int = 0) -> Sequence[RenewalAttempt]:
        result = await self.db.execute(
            select(RenewalAttempt)
            .where(RenewalAttempt.tenant_id == tenant_id)
            .order_by(RenewalAttempt.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return result.scalars().all()

    async def count_history(self, tenant_id: UUID) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(RenewalAttempt).where(RenewalAttempt.tenant_id == tenant_id)
        )
        return int(result.scalar_one())

    async def record_gateway_order(self, attempt: RenewalAttempt, order_id: str, **entries: Any) -> bool:
        """
        Attach a gateway order to an attempt that is still pending and has
        no order yet. False, with nothing written, when the attempt was
        closed or given an order elsewhere.
        """
        result = await self.db.execute(
            update(RenewalAttempt)
            .where(
                RenewalAttempt.id == attempt.id,
                RenewalAttempt.payment_status == PaymentStatus.PENDING.value,
                RenewalAttempt.gateway_order_id.is_(None),
            )
            .values(
                gateway_order_id=order_id,
                gateway_response=merge_gateway_response(attempt, **entries),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    async def mark_attempt_failed(
        self,
        attempt: RenewalAttempt,
        reason: str,
        **details: Any,
    ) -> bool:
        """
        pending -> failed, guarded so a row another worker already moved is
        left alone. A first-purchase subscription that was still pending
        is failed with it.
        """
        now = utcnow()
        blob = merge_gateway_response(
            attempt,
            failure_reason=reason,
            failed_at=now.isoformat(),
            **details,
        )
        result = await self.db.execute(
            update(RenewalAttempt)
            .where(
                RenewalAttempt.id == attempt.id,
                RenewalAttempt.payment_status == PaymentStatus.PENDING.value,
            )
            .values(
                payment_status=PaymentStatus.FAILED.value,
                failure_reason=reason,
                gateway_response=blob,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            return False

        await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == attempt.subscription_id,
                Subscription.status == SubscriptionStatus.PENDING.value,
            )
            .values(payment_status=PaymentStatus.FAILED.value, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        return True

    async def flag_for_review(self, attempt: RenewalAttempt, reason: str, **details: Any) -> bool:
        """
        Mark for human review; the payment status is left as-is.

        Returns True only when the row was not flagged before.
        """
        newly_flagged = not attempt.requires_admin_review
        now = utcnow()
        attempt.gateway_response = merge_gateway_response(
            attempt,
            review_reason=reason,
            review_flagged_at=now.isoformat() if newly_flagged else None,
            **details,
        )
        attempt.requires_admin_review = True
        attempt.review_reason = reason
        if newly_flagged:
            attempt.flagged_at = now
        await self.db.flush()
        return newly_flagged

    async def find_expired_active(self, now: datetime) -> Sequence[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.end_date < now,
            )
        )
        return result.scalars().all()

    async def mark_expired(self, subscription: Subscription, now: datetime) -> bool:
        """active -> expired, only while the row is still active and overdue."""
        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription.id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.end_date < now,
            )
            .values(status=SubscriptionStatus.EXPIRED.value, updated_at=now)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    async def find_expiring(self, now: datetime, until: datetime, notified_before: datetime) -> Sequence[Subscription]:
        """Active subscriptions ending in (now, until] not notified since ``notified_before``."""
        result = await self.db.execute(
            select(Subscription).where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.end_date > now,
                Subscription.end_date <= until,
                (Subscription.last_notified_at.is_(None)) | (Subscription.last_notified_at < notified_before),
            )
        )
        return result.scalars().all()

    def add_history_event(
        self,
        subscription: Subscription,
        event: HistoryEvent,
        details: Optional[Dict[str, Any]] = None,
    ) -> RenewalAttempt:
        """Append a non-payment lifecycle row (expiry, cancellation)."""
        entry = RenewalAttempt(
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            event_type=event.value,
            doctor_count=subscription.doctor_count,
            billing_cycle=subscription.billing_cycle,
            total_price=subscription.total_price,
            payment_status=None,
            start_date=subscription.start_date,
            end_date=subscription.end_date,
            gateway_response=details or None,
        )
        self.db.add(entry)
        return entry

