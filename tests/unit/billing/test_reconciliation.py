"""
Tests for ReconciliationSweeper

Stale pending renewals are resolved against the gateway:
- no order / unpaid order  -> failed, exactly once
- paid with a captured payment of the right amount -> recovered
- anything ambiguous -> flagged for review, alerted once, left pending
"""

from datetime import timedelta

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
from app.modules.billing.domain.gateway import OrderStatus
from app.modules.billing.domain.reconciliation import ReconciliationSweeper
from app.shared.core.exceptions import GatewayAPIError
from app.shared.core.locks import LockKind, lock_key

from conftest import seed_hospital, seed_pending_attempt, seed_subscription

AMOUNT = 3000000


@pytest.fixture
def sweeper(session_factory, gateway, locks, monitor, notifier, cache):
    return ReconciliationSweeper(
        session_factory,
        gateway=gateway,
        locks=locks,
        monitor=monitor,
        notifier=notifier,
        cache=cache,
        staleness=timedelta(minutes=30),
        transaction_timeout_seconds=5,
    )


@pytest.fixture
async def subscription(session_factory):
    async with session_factory() as session:
        hospital = await seed_hospital(session)
        return await seed_subscription(session, hospital, doctor_count=5)


async def _stale(session_factory, subscription, **kwargs) -> RenewalAttempt:
    async with session_factory() as session:
        return await seed_pending_attempt(session, subscription, amount_minor=AMOUNT, **kwargs)


async def _reload(session_factory, model, id_):
    async with session_factory() as session:
        return await session.get(model, id_)


@pytest.mark.asyncio
async def test_attempt_without_order_is_failed_exactly_once(sweeper, session_factory, subscription, sink):
    attempt = await _stale(session_factory, subscription, order_id=None, receipt="rn_unknown")

    first = await sweeper.sweep_stale_renewals()
    second = await sweeper.sweep_stale_renewals()

    assert first.failed == 1
    assert second.total == 0
    row = await _reload(session_factory, RenewalAttempt, attempt.id)
    assert row.payment_status == PaymentStatus.FAILED.value
    assert row.failure_reason == FailureReason.NO_PAYMENT_INITIATED.value
    assert row.gateway_response["failed_by"] == "reconciliation"
    assert await sink.get("failure:stale_renewal_orphaned") == 1


@pytest.mark.asyncio
async def test_paid_order_is_recovered(sweeper, session_factory, subscription, gateway, notifier, cache):
    order = gateway.add_order(AMOUNT, receipt="rn_paid")
    payment_id = gateway.add_payment(order["id"])
    attempt = await _stale(session_factory, subscription, order_id=order["id"], receipt="rn_paid", doctor_count=9)

    report = await sweeper.sweep_stale_renewals()

    assert report.recovered == 1
    row = await _reload(session_factory, RenewalAttempt, attempt.id)
    assert row.payment_status == PaymentStatus.SUCCESS.value
    assert row.gateway_payment_id == payment_id
    assert row.gateway_response["applied_by"] == "reconciliation"

    sub = await _reload(session_factory, Subscription, subscription.id)
    assert sub.doctor_count == 9
    assert sub.status == SubscriptionStatus.ACTIVE.value

    cache.invalidate_subscription.assert_awaited_once_with(subscription.tenant_id)
    assert notifier.notify_super_admin.await_args.args[0] == "payment_recovered"


@pytest.mark.asyncio
async def test_landed_order_found_by_receipt_is_recovered(sweeper, session_factory, subscription, gateway):
    order = gateway.add_order(AMOUNT, receipt="rn_landed")
    gateway.add_payment(order["id"])
    attempt = await _stale(session_factory, subscription, order_id=None, receipt="rn_landed")

    report = await sweeper.sweep_stale_renewals()

    assert report.recovered == 1
    row = await _reload(session_factory, RenewalAttempt, attempt.id)
    assert row.gateway_order_id == order["id"]
    assert row.payment_status == PaymentStatus.SUCCESS.value


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [OrderStatus.CREATED, OrderStatus.ATTEMPTED])
async def test_unpaid_order_is_failed(sweeper, session_factory, subscription, gateway, status):
    order = gateway.add_order(AMOUNT, receipt="rn_unpaid", status=status)
    attempt = await _stale(session_factory, subscription, order_id=order["id"], receipt="rn_unpaid")

    report = await sweeper.sweep_stale_renewals()

    assert report.failed == 1
    row = await _reload(session_factory, RenewalAttempt, attempt.id)
    assert row.failure_reason == FailureReason.TIMEOUT_UNPAID.value
    sub = await _reload(session_factory, Subscription, subscription.id)
    assert sub.doctor_count == 5


@pytest.mark.asyncio
async def test_unexpected_status_is_flagged(sweeper, session_factory, subscription, gateway, notifier):
    order = gateway.add_order(AMOUNT, receipt="rn_odd", status="cancelled")
    attempt = await _stale(session_factory, subscription, order_id=order["id"], receipt="rn_odd")

    report = await sweeper.sweep_stale_renewals()

    assert report.flagged == 1
    row = await _reload(session_factory, RenewalAttempt, attempt.id)
    assert row.payment_status == PaymentStatus.PENDING.value
    assert row.requires_admin_review is True
    assert row.review_reason == ReviewReason.UNEXPECTED_ORDER_STATUS.value
    notifier.send_alert.assert_awaited_once()


@pytest.mark.asyncio
async def test_gateway_error_is_flagged_and_alerted_once(sweeper, session_factory, subscription, gateway, notifier):
    attempt = await _stale(session_factory, subscription, order_id="order_unreachable", receipt="rn_x")
    gateway.read_error = GatewayAPIError("Razorpay error 500: internal", gateway_status=500, retryable=True)

    first = await sweeper.sweep_stale_renewals()
    second = await sweeper.sweep_stale_renewals()

    assert first.flagged == 1
    assert second.flagged == 1
    row = await _reload(session_factory, RenewalAttempt, attempt.id)
    assert row.payment_status == PaymentStatus.PENDING.value
    assert row.review_reason == ReviewReason.GATEWAY_API_ERROR.value
    assert notifier.send_alert.await_count == 1
    assert notifier.send_alert.await_args.kwargs["severity"] == "critical"


@pytest.mark.asyncio
async def test_paid_without_payment_details_is_flagged(sweeper, session_factory, subscription, gateway):
    order = gateway.add_order(AMOUNT, receipt="rn_nodetail", status=OrderStatus.PAID)
    attempt = await _stale(session_factory, subscription, order_id=order["id"], receipt="rn_nodetail")

    await sweeper.sweep_stale_renewals()

    row = await _reload(session_factory, RenewalAttempt, attempt.id)
    assert row.review_reason == ReviewReason.PAID_BUT_NO_PAYMENT_DETAILS.value
    assert row.payment_status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_paid_with_only_failed_payments_is_flagged(sweeper, session_factory, subscription, gateway):
    order = gateway.add_order(AMOUNT, receipt="rn_failedpay")
    gateway.add_payment(order["id"], status="failed")
    order["status"] = OrderStatus.PAID
    attempt = await _stale(session_factory, subscription, order_id=order["id"], receipt="rn_failedpay")

    await sweeper.sweep_stale_renewals()

    row = await _reload(session_factory, RenewalAttempt, attempt.id)
    assert row.review_reason == ReviewReason.PAYMENT_ATTEMPTED_NOT_CAPTURED.value


@pytest.mark.asyncio
async def test_amount_mismatch_is_flagged_not_applied(sweeper, session_factory, subscription, gateway):
    order = gateway.add_order(AMOUNT, receipt="rn_short")
    gateway.add_payment(order["id"], amount=AMOUNT - 1)
    attempt = await _stale(session_factory, subscription, order_id=order["id"], receipt="rn_short")

    report = await sweeper.sweep_stale_renewals()

    assert report.flagged == 1
    row = await _reload(session_factory, RenewalAttempt, attempt.id)
    assert row.review_reason == ReviewReason.AMOUNT_MISMATCH.value
    sub = await _reload(session_factory, Subscription, subscription.id)
    assert sub.doctor_count == 5


@pytest.mark.asyncio
async def test_fresh_attempts_are_left_alone(sweeper, session_factory, subscription):
    await _stale(session_factory, subscription, order_id=None, age=timedelta(minutes=5))

    report = await sweeper.sweep_stale_renewals()

    assert report.total == 0


@pytest.mark.asyncio
async def test_concurrent_sweep_is_skipped(sweeper, locks):
    await locks.acquire(lock_key(LockKind.RECONCILIATION, "global"), ttl_seconds=900)

    report = await sweeper.sweep_stale_renewals()

    assert report.ran is False


@pytest.mark.asyncio
async def test_tenant_under_verification_is_deferred(sweeper, session_factory, subscription, locks):
    attempt = await _stale(session_factory, subscription, order_id=None, receipt="rn_busy")
    await locks.acquire(lock_key(LockKind.VERIFICATION, subscription.tenant_id))

    report = await sweeper.sweep_stale_renewals()

    assert report.skipped == 1
    row = await _reload(session_factory, RenewalAttempt, attempt.id)
    assert row.payment_status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_monitoring_tasks_report_each_step(sweeper, session_factory, subscription, sink):
    results = await sweeper.run_monitoring_tasks()

    assert results["sweep"]["ran"] is True
    assert results["orphaned_locks_cleared"] == 0
    assert results["health"]["status"] == "healthy"
    assert sink.last_health["status"] == "healthy"


@pytest.mark.asyncio
async def test_unreachable_gateway_reports_degraded(sweeper, gateway, notifier):
    gateway.ping_error = GatewayAPIError("Razorpay unreachable", retryable=True)

    snapshot = await sweeper.check_health()

    assert snapshot["status"] == "degraded"
    assert snapshot["gateway"]["status"] == "down"
    notifier.send_alert.assert_awaited_once()
    assert notifier.send_alert.await_args.kwargs["severity"] == "warning"


@pytest.mark.asyncio
async def test_tenant_lease_outlasts_attempt_timeout(session_factory, gateway, locks, lock_store, monitor, subscription):
    sweeper = ReconciliationSweeper(
        session_factory,
        gateway=gateway,
        locks=locks,
        monitor=monitor,
        transaction_timeout_seconds=90,
    )
    order = gateway.add_order(AMOUNT, receipt="rn_slow")
    await _stale(session_factory, subscription, order_id=order["id"], receipt="rn_slow")
    fetch_order = gateway.fetch_order
    leases = []

    async def fetch_while_locked(order_id):
        leases.append(await lock_store.get_ttl(lock_key(LockKind.VERIFICATION, subscription.tenant_id)))
        return await fetch_order(order_id)

    gateway.fetch_order = fetch_while_locked

    report = await sweeper.sweep_stale_renewals()

    assert report.failed == 1
    # Longer than the default 60s lease and than the attempt's own timeout
    assert leases[0] > 90


@pytest.mark.asyncio
async def test_unreachable_cache_reports_degraded(sweeper, cache, notifier):
    cache.ping.side_effect = ConnectionError("upstash unreachable")

    snapshot = await sweeper.check_health()

    assert snapshot["status"] == "degraded"
    assert snapshot["cache"]["status"] == "down"
    assert snapshot["database"]["status"] == "up"
    assert notifier.send_alert.await_args.kwargs["severity"] == "warning"
