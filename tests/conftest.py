import os
# Disable DB SSL and rate limiting for all tests BEFORE any app imports
os.environ["DB_SSL_MODE"] = "disable"
os.environ["RATELIMIT_ENABLED"] = "False"
os.environ["ENVIRONMENT"] = "development"
os.environ["TESTING"] = "True"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ.pop("REDIS_URL", None)
os.environ.pop("UPSTASH_REDIS_URL", None)

import asyncio
import itertools
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Ensure all models are registered in the metadata
from app.models.hospital import Hospital, Doctor
from app.models.subscription import (
    BillingCycle,
    PaymentStatus,
    RenewalAttempt,
    Subscription,
    SubscriptionStatus,
)
from app.modules.billing.domain.gateway import (
    GatewayOrder,
    GatewayPayment,
    OrderStatus,
    compute_payment_signature,
)
from app.modules.billing.domain.monitoring import BillingMonitor
from app.modules.billing.domain.pricing import PricingPolicy
from app.modules.billing.domain.renewal import RenewalOrchestrator
from app.modules.billing.domain.roster import SqlDoctorRoster
from app.modules.billing.domain.verification import VerificationOrchestrator
from app.shared.core.datetime_utils import add_months, utcnow
from app.shared.core.exceptions import GatewayAPIError
from app.shared.core.locks import InMemoryLockStore, LockManager
from app.shared.core.metrics import InMemoryMetricsSink
from app.shared.core.notifications import NotificationDispatcher
from app.shared.db.base import Base

TEST_KEY_SECRET = "rzp_test_secret"


@pytest.fixture(autouse=True)
def disable_rate_limiting():
    """Manually disable rate limiting for every test."""
    from app.shared.core.rate_limit import get_limiter
    limiter = get_limiter()
    limiter.enabled = False
    yield
    limiter.enabled = True


class FakeGateway:
    """In-memory Razorpay stand-in implementing PaymentGateway."""

    def __init__(self):
        self.orders: Dict[str, dict] = {}
        self.payments: Dict[str, dict] = {}
        self.create_calls: List[str] = []
        self.create_error: Optional[Exception] = None
        self.read_error: Optional[Exception] = None
        self.create_delay: float = 0.0
        self.ping_error: Optional[Exception] = None
        self._ids = itertools.count(1)

    async def create_order(self, amount_minor, currency, receipt, notes=None) -> GatewayOrder:
        self.create_calls.append(receipt)
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_error is not None:
            raise self.create_error
        return GatewayOrder.from_api(self.add_order(amount_minor, receipt=receipt, currency=currency, notes=notes))

    def add_order(self, amount_minor, receipt=None, status=OrderStatus.CREATED, currency="INR", notes=None) -> dict:
        order = {
            "id": f"order_T{next(self._ids):06d}",
            "entity": "order",
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "status": status,
            "attempts": 0,
            "notes": notes or {},
        }
        self.orders[order["id"]] = order
        return order

    def add_payment(self, order_id, amount=None, status="captured", mark_paid=True) -> str:
        order = self.orders[order_id]
        payment_id = f"pay_T{next(self._ids):06d}"
        self.payments[payment_id] = {
            "id": payment_id,
            "entity": "payment",
            "order_id": order_id,
            "amount": order["amount"] if amount is None else amount,
            "currency": order["currency"],
            "status": status,
            "method": "upi",
        }
        order["attempts"] += 1
        if mark_paid and status == "captured":
            order["status"] = OrderStatus.PAID
        elif order["status"] == OrderStatus.CREATED:
            order["status"] = OrderStatus.ATTEMPTED
        return payment_id

    def _check_read(self):
        if self.read_error is not None:
            raise self.read_error

    async def fetch_order(self, order_id) -> GatewayOrder:
        self._check_read()
        if order_id not in self.orders:
            raise GatewayAPIError("Razorpay error 404: order not found", gateway_status=404)
        return GatewayOrder.from_api(self.orders[order_id])

    async def fetch_payment(self, payment_id) -> GatewayPayment:
        self._check_read()
        if payment_id not in self.payments:
            raise GatewayAPIError("Razorpay error 404: payment not found", gateway_status=404)
        return GatewayPayment.from_api(self.payments[payment_id])

    async def fetch_order_payments(self, order_id) -> List[GatewayPayment]:
        self._check_read()
        return [GatewayPayment.from_api(p) for p in self.payments.values() if p["order_id"] == order_id]

    async def find_order_by_receipt(self, receipt) -> Optional[GatewayOrder]:
        self._check_read()
        for order in self.orders.values():
            if order["receipt"] == receipt:
                return GatewayOrder.from_api(order)
        return None

    async def ping(self) -> None:
        if self.ping_error is not None:
            raise self.ping_error


def sign(order_id: str, payment_id: str, secret: str = TEST_KEY_SECRET) -> str:
    return compute_payment_signature(order_id, payment_id, secret)


@pytest.fixture
async def engine():
    # StaticPool keeps one in-memory database across sessions
    test_engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session on the per-test database. Services under test commit for real."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def lock_store() -> InMemoryLockStore:
    return InMemoryLockStore()


@pytest.fixture
def locks(lock_store) -> LockManager:
    return LockManager(lock_store, ttl_seconds=60)


@pytest.fixture
def sink() -> InMemoryMetricsSink:
    return InMemoryMetricsSink()


@pytest.fixture
def notifier() -> MagicMock:
    mock = MagicMock(spec=NotificationDispatcher)
    mock.send_templated = AsyncMock(return_value=True)
    mock.notify_super_admin = AsyncMock(return_value=True)
    mock.send_alert = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def cache() -> MagicMock:
    mock = MagicMock()
    mock.get_subscription = AsyncMock(return_value=None)
    mock.set_subscription = AsyncMock(return_value=True)
    mock.invalidate_subscription = AsyncMock(return_value=True)
    mock.ping = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def monitor(sink, notifier) -> BillingMonitor:
    return BillingMonitor(sink, notifier)


@pytest.fixture
def policy() -> PricingPolicy:
    return PricingPolicy()


@pytest.fixture
def make_renewal(gateway, locks, policy, monitor):
    def _make(session: AsyncSession, **overrides) -> RenewalOrchestrator:
        kwargs = dict(
            gateway=gateway,
            locks=locks,
            roster=SqlDoctorRoster(session),
            policy=policy,
            monitor=monitor,
            key_id="rzp_test_key",
        )
        kwargs.update(overrides)
        return RenewalOrchestrator(session, **kwargs)
    return _make


@pytest.fixture
def make_verification(gateway, locks, monitor, cache, notifier):
    def _make(session: AsyncSession) -> VerificationOrchestrator:
        return VerificationOrchestrator(
            session,
            gateway=gateway,
            locks=locks,
            monitor=monitor,
            key_secret=TEST_KEY_SECRET,
            cache=cache,
            notifier=notifier,
        )
    return _make


async def seed_hospital(session: AsyncSession, doctors: int = 0, admin_email: str = "admin@citycare.test") -> Hospital:
    hospital = Hospital(name="City Care Hospital", admin_email=admin_email)
    session.add(hospital)
    await session.flush()
    for i in range(doctors):
        session.add(Doctor(hospital_id=hospital.id, name=f"Dr. {i + 1}"))
    await session.commit()
    return hospital


async def seed_subscription(
    session: AsyncSession,
    hospital: Hospital,
    doctor_count: int = 5,
    billing_cycle: str = BillingCycle.MONTHLY.value,
    total_price: Decimal = Decimal("28495.25"),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    status: str = SubscriptionStatus.ACTIVE.value,
) -> Subscription:
    start_date = start_date or utcnow() - timedelta(days=10)
    end_date = end_date or add_months(start_date, 1)
    subscription = Subscription(
        tenant_id=hospital.id,
        doctor_count=doctor_count,
        billing_cycle=billing_cycle,
        status=status,
        payment_status=PaymentStatus.SUCCESS.value,
        total_price=total_price,
        start_date=start_date,
        current_period_start=start_date,
        end_date=end_date,
    )
    session.add(subscription)
    await session.commit()
    return subscription


async def seed_pending_attempt(
    session: AsyncSession,
    subscription: Subscription,
    amount_minor: int = 3000000,
    order_id: Optional[str] = None,
    receipt: Optional[str] = "rn_test_receipt",
    age: timedelta = timedelta(hours=1),
    doctor_count: int = 5,
    billing_cycle: str = BillingCycle.MONTHLY.value,
) -> RenewalAttempt:
    created = utcnow() - age
    attempt = RenewalAttempt(
        subscription_id=subscription.id,
        tenant_id=subscription.tenant_id,
        doctor_count=doctor_count,
        billing_cycle=billing_cycle,
        total_price=Decimal(amount_minor) / 100,
        amount_minor=amount_minor,
        price_breakdown={"subtotal": str(Decimal(amount_minor) / 100)},
        payment_status=PaymentStatus.PENDING.value,
        gateway_order_id=order_id,
        receipt=receipt,
        start_date=created,
        end_date=add_months(created, 12 if billing_cycle == BillingCycle.YEARLY.value else 1),
        created_at=created,
    )
    session.add(attempt)
    await session.commit()
    return attempt


@pytest.fixture
async def ac(db) -> AsyncGenerator[AsyncClient, None]:
    """Async client fixture for testing API endpoints."""
    from app.main import app
    from app.shared.db.session import get_db

    async def _get_test_db():
        yield db

    app.dependency_overrides[get_db] = _get_test_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()
