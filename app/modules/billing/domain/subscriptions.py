"""Read side of subscriptions plus cancellation."""

from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import HistoryEvent, RenewalAttempt, Subscription, SubscriptionStatus
from app.modules.billing.domain.repository import SubscriptionRepository
from app.shared.core.cache import CacheService
from app.shared.core.datetime_utils import ensure_utc, utcnow
from app.shared.core.exceptions import ResourceNotFoundError, ValidationError
from app.shared.core.locks import LockKind, LockManager, lock_key
from app.shared.core.logging import audit_log
from app.shared.core.notifications import NotificationDispatcher

logger = structlog.get_logger()


def _iso(value) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def subscription_view(subscription: Subscription) -> Dict[str, Any]:
    return {
        "id": str(subscription.id),
        "tenant_id": str(subscription.tenant_id),
        "doctor_count": subscription.doctor_count,
        "billing_cycle": subscription.billing_cycle,
        "status": subscription.status,
        "payment_status": subscription.payment_status,
        "total_price": str(subscription.total_price),
        "start_date": _iso(subscription.start_date),
        "end_date": _iso(subscription.end_date),
        "auto_renew": subscription.auto_renew,
        "cancelled_at": _iso(subscription.cancelled_at),
    }


def history_view(entry: RenewalAttempt) -> Dict[str, Any]:
    return {
        "id": str(entry.id),
        "event_type": entry.event_type,
        "doctor_count": entry.doctor_count,
        "billing_cycle": entry.billing_cycle,
        "total_price": str(entry.total_price),
        "payment_status": entry.payment_status,
        "order_id": entry.gateway_order_id,
        "payment_id": entry.gateway_payment_id,
        "failure_reason": entry.failure_reason,
        "requires_admin_review": entry.requires_admin_review,
        "start_date": _iso(entry.start_date),
        "end_date": _iso(entry.end_date),
        "created_at": _iso(entry.created_at),
    }


class SubscriptionService:
    def __init__(
        self,
        db: AsyncSession,
        cache: Optional[CacheService] = None,
        locks: Optional[LockManager] = None,
        notifier: Optional[NotificationDispatcher] = None,
    ):
        self.db = db
        self.repo = SubscriptionRepository(db)
        self.cache = cache
        self.locks = locks
        self.notifier = notifier

    async def get_current(self, tenant_id: UUID) -> Dict[str, Any]:
        """Current subscription view, read through the cache."""
        if self.cache is not None:
            cached = await self.cache.get_subscription(tenant_id)
            if cached:
                return cached

        subscription = await self.repo.get_subscription(tenant_id)
        if subscription is None:
            raise ResourceNotFoundError("No subscription for this hospital")

        view = subscription_view(subscription)
        if self.cache is not None:
            await self.cache.set_subscription(tenant_id, view)
        return view

    async def get_history(self, tenant_id: UUID, limit: int = 20, offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        entries = await self.repo.list_history(tenant_id, limit=limit, offset=offset)
        total = await self.repo.count_history(tenant_id)
        return [history_view(entry) for entry in entries], total

    async def cancel(self, tenant_id: UUID, actor: str = "tenant_admin") -> Dict[str, Any]:
        """
        Stop auto-renewal and mark the subscription cancelled.

        Runs under the renewal lock so it cannot interleave with a renewal
        being created for the same tenant.
        """
        if self.locks is None:
            return await self._cancel(tenant_id, actor)
        async with self.locks.hold(lock_key(LockKind.RENEWAL, tenant_id), operation="cancellation"):
            return await self._cancel(tenant_id, actor)

    async def _cancel(self, tenant_id: UUID, actor: str) -> Dict[str, Any]:
        subscription = await self.repo.get_subscription(tenant_id)
        if subscription is None:
            raise ResourceNotFoundError("No subscription for this hospital")
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise ValidationError(
                f"Only an active subscription can be cancelled (status: {subscription.status})",
                details={"status": subscription.status},
            )

        now = utcnow()
        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.auto_renew = False
        subscription.cancelled_at = now
        subscription.updated_at = now
        self.repo.add_history_event(subscription, HistoryEvent.CANCELLATION, {"cancelled_by": actor})
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info("subscription_cancelled", tenant_id=str(tenant_id))
        audit_log("subscription_cancelled", tenant_id=tenant_id, actor=actor)

        if self.cache is not None:
            await self.cache.invalidate_subscription(tenant_id)
        if self.notifier is not None:
            hospital = await self.repo.get_hospital(tenant_id)
            if hospital is not None:
                await self.notifier.send_templated(
                    hospital.admin_email,
                    "subscription_cancelled",
                    {"hospital_name": hospital.name, "end_date": _iso(subscription.end_date)},
                )
        return subscription_view(subscription)
