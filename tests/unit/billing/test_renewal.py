"""
Tests for RenewalOrchestrator

1. One order per tenant under concurrent requests
2. Reuse of the in-flight order for an identical request
3. Doctor floor, staleness and review gating
4. Order creation failures
5. Slow gateway calls: lease survives the orphan scan, late orders are flagged
"""

import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select

from app.models.subscription import (
    FailureReason,
    PaymentStatus,
    RenewalAttempt,
    ReviewReason,
    Subscription,
    SubscriptionStatus,
)
from app.modules.billing.domain.repository import SubscriptionRepository
from app.shared.core.config import get_settings
from app.shared.core.exceptions import (
    AdminReviewRequired,
    GatewayAPIError,
    GatewayTimeout,
    LockContention,
    ValidationError,
)
from app.shared.core.locks import InMemoryLockStore, LockKind, LockManager, lock_key

from conftest import seed_hospital, seed_pending_attempt, seed_subscription


async def _attempts(db, tenant_id):
    result = await db.execute(select(RenewalAttempt).where(RenewalAttempt.tenant_id == tenant_id))
    return result.scalars().all()


@pytest.mark.asyncio
async def test_first_purchase_creates_pending_subscription_and_order(db, make_renewal, gateway):
    hospital = await seed_hospital(db, doctors=3)

    order = await make_renewal(db).create_renewal(hospital.id, 3, "monthly")

    assert order.order_id in gateway.orders
    assert gateway.orders[order.order_id]["amount"] == order.amount_minor
    assert order.reused is False
    assert order.key_id == "rzp_test_key"

    attempts = await _attempts(db, hospital.id)
    assert len(attempts) == 1
    attempt = attempts[0]
    assert attempt.payment_status == PaymentStatus.PENDING.value
    assert attempt.gateway_order_id == order.order_id
    assert attempt.receipt == order.receipt
    assert attempt.amount_minor == order.amount_minor
    assert attempt.price_breakdown["total_minor"] == order.amount_minor

    subscription = await db.get(Subscription, attempt.subscription_id)
    assert subscription.status == SubscriptionStatus.PENDING.value


@pytest.mark.asyncio
async def test_concurrent_renewals_create_one_order(session_factory, make_renewal, gateway):
    async with session_factory() as setup:
        hospital = await seed_hospital(setup, doctors=2)
        await seed_subscription(setup, hospital, doctor_count=2)

    gateway.create_delay = 0.05

    async def renew():
        async with session_factory() as session:
            return await make_renewal(session).create_renewal(hospital.id, 4, "yearly")

    results = await asyncio.gather(renew(), renew(), return_exceptions=True)

    orders = [r for r in results if not isinstance(r, Exception)]
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(orders) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], LockContention)
    assert len(gateway.create_calls) == 1


@pytest.mark.asyncio
async def test_identical_request_reuses_pending_order(db, make_renewal, gateway):
    hospital = await seed_hospital(db, doctors=1)
    await seed_subscription(db, hospital, doctor_count=1)
    orchestrator = make_renewal(db)

    first = await orchestrator.create_renewal(hospital.id, 5, "monthly")
    second = await orchestrator.create_renewal(hospital.id, 5, "monthly")

    assert second.reused is True
    assert second.order_id == first.order_id
    assert second.amount_minor == first.amount_minor
    assert len(gateway.create_calls) == 1


@pytest.mark.asyncio
async def test_different_request_while_pending_is_refused(db, make_renewal):
    hospital = await seed_hospital(db, doctors=1)
    await seed_subscription(db, hospital, doctor_count=1)
    orchestrator = make_renewal(db)

    await orchestrator.create_renewal(hospital.id, 5, "monthly")
    with pytest.raises(LockContention) as exc:
        await orchestrator.create_renewal(hospital.id, 6, "monthly")

    assert exc.value.details["retry_after_seconds"] > 0


@pytest.mark.asyncio
async def test_stale_pending_order_waits_for_reconciliation(db, make_renewal, gateway):
    hospital = await seed_hospital(db)
    subscription = await seed_subscription(db, hospital)
    order = gateway.add_order(3000000, receipt="rn_old")
    await seed_pending_attempt(db, subscription, order_id=order["id"], receipt="rn_old", age=timedelta(hours=2))

    with pytest.raises(LockContention):
        await make_renewal(db).create_renewal(hospital.id, 5, "monthly")
    assert gateway.create_calls == []


@pytest.mark.asyncio
async def test_pending_without_order_is_cleared(db, make_renewal, gateway):
    hospital = await seed_hospital(db)
    subscription = await seed_subscription(db, hospital)
    stale = await seed_pending_attempt(db, subscription, order_id=None, receipt="rn_never_sent")

    order = await make_renewal(db).create_renewal(hospital.id, 5, "monthly")

    await db.refresh(stale)
    assert stale.payment_status == PaymentStatus.FAILED.value
    assert stale.failure_reason == FailureReason.NO_PAYMENT_INITIATED.value
    assert order.order_id in gateway.orders


@pytest.mark.asyncio
async def test_pending_without_order_recovered_by_receipt(db, make_renewal, gateway):
    hospital = await seed_hospital(db)
    subscription = await seed_subscription(db, hospital)
    landed = gateway.add_order(3000000, receipt="rn_landed")
    attempt = await seed_pending_attempt(
        db, subscription, order_id=None, receipt="rn_landed", age=timedelta(minutes=1)
    )

    order = await make_renewal(db).create_renewal(hospital.id, 5, "monthly")

    assert order.reused is True
    assert order.order_id == landed["id"]
    await db.refresh(attempt)
    assert attempt.gateway_order_id == landed["id"]
    assert gateway.create_calls == []


@pytest.mark.asyncio
async def test_flagged_pending_blocks_renewal(db, make_renewal):
    hospital = await seed_hospital(db)
    subscription = await seed_subscription(db, hospital)
    attempt = await seed_pending_attempt(db, subscription, order_id="order_flagged")
    attempt.requires_admin_review = True
    attempt.review_reason = "GATEWAY_API_ERROR"
    await db.commit()

    with pytest.raises(AdminReviewRequired) as exc:
        await make_renewal(db).create_renewal(hospital.id, 5, "monthly")
    assert exc.value.details["reason"] == "GATEWAY_API_ERROR"


@pytest.mark.asyncio
async def test_doctor_count_below_roster_is_rejected(db, make_renewal, gateway):
    hospital = await seed_hospital(db, doctors=8)

    with pytest.raises(ValidationError) as exc:
        await make_renewal(db).create_renewal(hospital.id, 5, "monthly")

    assert exc.value.details["provisioned"] == 8
    assert gateway.create_calls == []


@pytest.mark.asyncio
async def test_invalid_request_does_not_take_lock(db, make_renewal, locks):
    hospital = await seed_hospital(db)
    with pytest.raises(ValidationError):
        await make_renewal(db).create_renewal(hospital.id, 0, "monthly")
    assert await locks.acquire(lock_key(LockKind.RENEWAL, hospital.id)) is not None


@pytest.mark.asyncio
async def test_proration_uses_active_subscription(db, make_renewal):
    hospital = await seed_hospital(db)
    await seed_subscription(db, hospital, total_price=Decimal("3000"))

    order = await make_renewal(db).create_renewal(hospital.id, 5, "monthly")

    assert Decimal(order.price_breakdown["proration_credit"]) > 0
    assert order.price_breakdown["remaining_days"] > 0


@pytest.mark.asyncio
async def test_rejected_order_fails_attempt(db, make_renewal, gateway, sink):
    hospital = await seed_hospital(db)
    await seed_subscription(db, hospital)
    gateway.create_error = GatewayAPIError("Razorpay error 400: bad request", gateway_status=400)

    with pytest.raises(GatewayAPIError):
        await make_renewal(db).create_renewal(hospital.id, 5, "monthly")

    attempts = await _attempts(db, hospital.id)
    assert attempts[0].payment_status == PaymentStatus.FAILED.value
    assert attempts[0].failure_reason == FailureReason.ORDER_CREATION_FAILED.value
    assert await sink.get("failure:gateway_api") == 1


@pytest.mark.asyncio
async def test_timed_out_order_stays_pending_for_receipt_lookup(db, make_renewal, gateway, sink, locks):
    hospital = await seed_hospital(db)
    await seed_subscription(db, hospital)
    gateway.create_error = GatewayTimeout("Razorpay create_order exceeded 30s")

    with pytest.raises(GatewayTimeout):
        await make_renewal(db).create_renewal(hospital.id, 5, "monthly")

    attempts = await _attempts(db, hospital.id)
    assert attempts[0].payment_status == PaymentStatus.PENDING.value
    assert attempts[0].gateway_order_id is None
    assert attempts[0].receipt
    assert await sink.get("failure:gateway_timeout") == 1
    # Lock released for the retry
    assert await locks.acquire(lock_key(LockKind.RENEWAL, hospital.id)) is not None


@pytest.mark.asyncio
async def test_proration_credits_cancelled_subscription(db, make_renewal):
    hospital = await seed_hospital(db)
    # Cancelled ten days into a paid monthly period
    await seed_subscription(db, hospital, total_price=Decimal("3000"), status=SubscriptionStatus.CANCELLED.value)

    order = await make_renewal(db).create_renewal(hospital.id, 5, "monthly")

    assert Decimal(order.price_breakdown["proration_credit"]) > 0
    assert order.price_breakdown["remaining_days"] > 0


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_slow_order_keeps_lease_through_orphan_scan(session_factory, make_renewal, gateway):
    settings = get_settings()
    clock = FakeClock()
    locks = LockManager(InMemoryLockStore(clock=clock), ttl_seconds=settings.LOCK_TTL_SECONDS)
    async with session_factory() as session:
        hospital = await seed_hospital(session, doctors=3)

    create_order = gateway.create_order
    seen = {}

    async def slow_create_order(*args, **kwargs):
        # The whole locked-operation budget passes inside the gateway call
        clock.now += settings.longest_locked_operation_seconds
        seen["cleared"] = await locks.cleanup_orphaned()
        async with session_factory() as other:
            with pytest.raises(LockContention):
                await make_renewal(other, locks=locks).create_renewal(hospital.id, 3, "monthly")
        return await create_order(*args, **kwargs)

    gateway.create_order = slow_create_order
    async with session_factory() as session:
        order = await make_renewal(session, locks=locks).create_renewal(hospital.id, 3, "monthly")

    assert seen["cleared"] == 0
    assert list(gateway.orders) == [order.order_id]
    async with session_factory() as session:
        attempts = await _attempts(session, hospital.id)
    assert [a.payment_status for a in attempts] == [PaymentStatus.PENDING.value]
    assert attempts[0].gateway_order_id == order.order_id


@pytest.mark.asyncio
async def test_order_for_closed_attempt_is_flagged(session_factory, make_renewal, gateway):
    async with session_factory() as session:
        hospital = await seed_hospital(session)
        await seed_subscription(session, hospital)

    create_order = gateway.create_order

    async def create_after_close(*args, **kwargs):
        # Another worker closes the attempt while the order is being created
        async with session_factory() as other:
            result = await other.execute(select(RenewalAttempt).where(RenewalAttempt.receipt == kwargs["receipt"]))
            await SubscriptionRepository(other).mark_attempt_failed(
                result.scalar_one(), FailureReason.NO_PAYMENT_INITIATED.value
            )
            await other.commit()
        return await create_order(*args, **kwargs)

    gateway.create_order = create_after_close
    async with session_factory() as session:
        with pytest.raises(AdminReviewRequired) as exc:
            await make_renewal(session).create_renewal(hospital.id, 5, "monthly")

    assert exc.value.reason == ReviewReason.ORDER_CREATED_AFTER_CLOSE.value
    [order_id] = list(gateway.orders)
    async with session_factory() as session:
        [attempt] = await _attempts(session, hospital.id)
    assert attempt.payment_status == PaymentStatus.FAILED.value
    assert attempt.failure_reason == FailureReason.NO_PAYMENT_INITIATED.value
    assert attempt.requires_admin_review is True
    assert attempt.review_reason == ReviewReason.ORDER_CREATED_AFTER_CLOSE.value
    # Kept on the closed row so a later payment is routed to review
    assert attempt.gateway_order_id == order_id
    assert attempt.gateway_response["late_order_id"] == order_id
