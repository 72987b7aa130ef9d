"""
Subscription expiry jobs.

Daily: active subscriptions past their end date become expired, and
subscriptions ending within the warning window get one reminder a day.
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.models.subscription import HistoryEvent, Subscription
from app.modules.billing.domain.repository import SubscriptionRepository
from app.shared.core.cache import CacheService
from app.shared.core.datetime_utils import ensure_utc, utcnow
from app.shared.core.logging import audit_log
from app.shared.core.notifications import NotificationDispatcher

logger = structlog.get_logger()


class ExpiryService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        notifier: Optional[NotificationDispatcher] = None,
        cache: Optional[CacheService] = None,
        warning_days: int = 7,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.cache = cache
        self.warning_days = warning_days

    async def expire_overdue(self, now: Optional[datetime] = None) -> int:
        """Mark every active subscription whose end date has passed as expired."""
        now = now or utcnow()
        expired = 0
        async with self.session_factory() as db:
            repo = SubscriptionRepository(db)
            for subscription in await repo.find_expired_active(now):
                try:
                    # A renewal may have landed since the scan
                    if not await repo.mark_expired(subscription, now):
                        logger.info("subscription_expiry_skipped", tenant_id=str(subscription.tenant_id))
                        continue
                    repo.add_history_event(
                        subscription,
                        HistoryEvent.EXPIRY,
                        {"expired_at": now.isoformat()},
                    )
                    await db.commit()
                except Exception as e:
                    await db.rollback()
                    logger.error("subscription_expiry_failed", tenant_id=str(subscription.tenant_id), error=str(e))
                    continue

                expired += 1
                logger.info("subscription_expired", tenant_id=str(subscription.tenant_id))
                audit_log("subscription_expired", tenant_id=subscription.tenant_id)
                await self._after_change(repo, subscription, "subscription_expired", {})

        logger.info("subscription_expiry_check_completed", expired=expired)
        return expired

    async def send_expiry_warnings(self, now: Optional[datetime] = None) -> int:
        """Remind admins of subscriptions ending within the warning window, once per day."""
        now = now or utcnow()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        until = now + timedelta(days=self.warning_days)
        warned = 0
        async with self.session_factory() as db:
            repo = SubscriptionRepository(db)
            for subscription in await repo.find_expiring(now, until, notified_before=start_of_day):
                days_remaining = max((ensure_utc(subscription.end_date) - now).days, 0)
                sent = await self._notify(
                    repo, subscription, "subscription_expiring", {"days_remaining": days_remaining}
                )
                if not sent:
                    continue
                subscription.last_notified_at = now
                await db.commit()
                warned += 1

        logger.info("subscription_expiry_warnings_sent", count=warned)
        return warned

    async def _after_change(self, repo: SubscriptionRepository, subscription: Subscription, template: str, data: dict) -> None:
        if self.cache is not None:
            await self.cache.invalidate_subscription(subscription.tenant_id)
        await self._notify(repo, subscription, template, data)

    async def _notify(self, repo: SubscriptionRepository, subscription: Subscription, template: str, data: dict) -> bool:
        if self.notifier is None:
            return False
        hospital = await repo.get_hospital(subscription.tenant_id)
        if hospital is None:
            return False
        end_date = ensure_utc(subscription.end_date)
        return await self.notifier.send_templated(
            hospital.admin_email,
            template,
            {
                "hospital_name": hospital.name,
                "end_date": end_date.date().isoformat() if end_date else "",
                **data,
            },
        )
