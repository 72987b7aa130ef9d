"""
Builds the billing services from settings.

The API, the Celery tasks and the scheduler all go through here so every
entry point shares the same lock store, metrics sink and gateway config.
"""

from datetime import timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.modules.billing.domain.expiry import ExpiryService
from app.modules.billing.domain.gateway import get_gateway_client
from app.modules.billing.domain.monitoring import BillingMonitor
from app.modules.billing.domain.pricing import PricingPolicy
from app.modules.billing.domain.reconciliation import ReconciliationSweeper
from app.modules.billing.domain.renewal import RenewalOrchestrator
from app.modules.billing.domain.roster import SqlDoctorRoster
from app.modules.billing.domain.subscriptions import SubscriptionService
from app.modules.billing.domain.verification import VerificationOrchestrator
from app.shared.core.cache import get_cache_service
from app.shared.core.config import get_settings
from app.shared.core.locks import get_lock_manager
from app.shared.core.metrics import get_metrics_sink
from app.shared.core.notifications import get_notification_dispatcher
from app.shared.db.session import async_session_maker


def build_monitor() -> BillingMonitor:
    return BillingMonitor.from_settings(get_settings(), get_metrics_sink(), get_notification_dispatcher())


def build_renewal_orchestrator(db: AsyncSession) -> RenewalOrchestrator:
    settings = get_settings()
    return RenewalOrchestrator(
        db,
        gateway=get_gateway_client(),
        locks=get_lock_manager(),
        roster=SqlDoctorRoster(db),
        policy=PricingPolicy.from_settings(settings),
        monitor=build_monitor(),
        staleness=timedelta(minutes=settings.RENEWAL_STALENESS_MINUTES),
        currency=settings.BILLING_CURRENCY,
        key_id=settings.RAZORPAY_KEY_ID,
    )


def build_verification_orchestrator(db: AsyncSession) -> VerificationOrchestrator:
    settings = get_settings()
    return VerificationOrchestrator(
        db,
        gateway=get_gateway_client(),
        locks=get_lock_manager(),
        monitor=build_monitor(),
        key_secret=settings.RAZORPAY_KEY_SECRET,
        cache=get_cache_service(),
        notifier=get_notification_dispatcher(),
    )


def build_subscription_service(db: AsyncSession) -> SubscriptionService:
    return SubscriptionService(
        db,
        cache=get_cache_service(),
        locks=get_lock_manager(),
        notifier=get_notification_dispatcher(),
    )


def build_sweeper(session_factory: Optional[async_sessionmaker] = None) -> ReconciliationSweeper:
    settings = get_settings()
    return ReconciliationSweeper(
        session_factory or async_session_maker,
        gateway=get_gateway_client(),
        locks=get_lock_manager(),
        monitor=build_monitor(),
        notifier=get_notification_dispatcher(),
        cache=get_cache_service(),
        staleness=timedelta(minutes=settings.RENEWAL_STALENESS_MINUTES),
        transaction_timeout_seconds=settings.RECONCILIATION_TRANSACTION_TIMEOUT_SECONDS,
        batch_size=settings.RECONCILIATION_BATCH_SIZE,
        orphan_after_seconds=settings.LOCK_ORPHAN_AFTER_SECONDS,
    )


def build_expiry_service(session_factory: Optional[async_sessionmaker] = None) -> ExpiryService:
    return ExpiryService(
        session_factory or async_session_maker,
        notifier=get_notification_dispatcher(),
        cache=get_cache_service(),
        warning_days=get_settings().SUBSCRIPTION_EXPIRY_WARNING_DAYS,
    )
