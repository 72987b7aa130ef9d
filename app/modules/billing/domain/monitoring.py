"""
Billing Monitor

Counts failures by category and raises alerts when a window crosses its
threshold:
- failed payments (integrity and gateway failures) per hour
- consecutive gateway timeouts, reset by a verified payment
- duplicate attempts (lock contention, replayed callbacks) per hour

Counters live in the injected MetricsSink, so every API worker and the
sweeper add to the same totals.
"""

from enum import Enum
from typing import Any, Dict, Optional

import structlog

from app.shared.core.exceptions import ErrorKind
from app.shared.core.metrics import MetricsSink
from app.shared.core.notifications import NotificationDispatcher
from app.shared.core.ops_metrics import BILLING_ALERTS_RAISED, BILLING_FAILURES

logger = structlog.get_logger()


class AlertCategory(str, Enum):
    FAILED_PAYMENTS = "failed_payments"
    CONSECUTIVE_TIMEOUTS = "consecutive_timeouts"
    DUPLICATE_ATTEMPTS = "duplicate_attempts"


ALERT_TITLES = {
    AlertCategory.FAILED_PAYMENTS: "High payment failure rate",
    AlertCategory.CONSECUTIVE_TIMEOUTS: "Consecutive payment gateway timeouts",
    AlertCategory.DUPLICATE_ATTEMPTS: "High duplicate renewal attempt rate",
}

_CATEGORY_BY_KIND = {
    ErrorKind.GATEWAY_TIMEOUT: AlertCategory.CONSECUTIVE_TIMEOUTS,
    ErrorKind.GATEWAY_API: AlertCategory.FAILED_PAYMENTS,
    ErrorKind.AMOUNT_MISMATCH: AlertCategory.FAILED_PAYMENTS,
    ErrorKind.SIGNATURE_MISMATCH: AlertCategory.FAILED_PAYMENTS,
    ErrorKind.INTEGRITY: AlertCategory.FAILED_PAYMENTS,
    ErrorKind.PAYMENT_NOT_CAPTURED: AlertCategory.FAILED_PAYMENTS,
    ErrorKind.ADMIN_REVIEW_REQUIRED: AlertCategory.FAILED_PAYMENTS,
    ErrorKind.LOCK_CONTENTION: AlertCategory.DUPLICATE_ATTEMPTS,
    ErrorKind.DUPLICATE_VERIFICATION: AlertCategory.DUPLICATE_ATTEMPTS,
}


class BillingMonitor:
    def __init__(
        self,
        sink: MetricsSink,
        notifier: Optional[NotificationDispatcher] = None,
        failed_payments_threshold: int = 5,
        consecutive_timeouts_threshold: int = 3,
        duplicate_attempts_threshold: int = 10,
    ):
        self.sink = sink
        self.notifier = notifier
        self.thresholds = {
            AlertCategory.FAILED_PAYMENTS: failed_payments_threshold,
            AlertCategory.CONSECUTIVE_TIMEOUTS: consecutive_timeouts_threshold,
            AlertCategory.DUPLICATE_ATTEMPTS: duplicate_attempts_threshold,
        }

    @classmethod
    def from_settings(cls, settings, sink: MetricsSink, notifier: Optional[NotificationDispatcher] = None) -> "BillingMonitor":
        return cls(
            sink,
            notifier,
            failed_payments_threshold=settings.ALERT_FAILED_PAYMENTS_THRESHOLD,
            consecutive_timeouts_threshold=settings.ALERT_CONSECUTIVE_TIMEOUTS_THRESHOLD,
            duplicate_attempts_threshold=settings.ALERT_DUPLICATE_ATTEMPTS_THRESHOLD,
        )

    async def record_failure(self, kind: ErrorKind, context: Optional[Dict[str, Any]] = None) -> None:
        """Count a failure by kind and alert when its category crosses the threshold. Never raises."""
        BILLING_FAILURES.labels(category=kind.value).inc()
        try:
            await self.sink.increment(f"failure:{kind.value}")
            category = _CATEGORY_BY_KIND.get(kind)
            if category is None:
                return
            count = await self.sink.increment(category.value)
            threshold = self.thresholds[category]
            # Once per window, on the crossing
            if count == threshold:
                await self._alert(category, count, threshold, context or {})
        except Exception as e:
            logger.error("billing_monitor_record_failed", kind=kind.value, error=str(e))

    async def record_success(self) -> None:
        """A verified payment ends a run of gateway timeouts."""
        try:
            await self.sink.reset(AlertCategory.CONSECUTIVE_TIMEOUTS.value)
        except Exception as e:
            logger.error("billing_monitor_reset_failed", error=str(e))

    async def _alert(self, category: AlertCategory, count: int, threshold: int, context: Dict[str, Any]) -> None:
        BILLING_ALERTS_RAISED.labels(alert=category.value).inc()
        logger.error(
            "billing_alert_threshold_reached",
            alert=category.value,
            count=count,
            threshold=threshold,
            **{k: str(v) for k, v in context.items()},
        )
        if self.notifier is None:
            return
        detail = ", ".join(f"{k}={v}" for k, v in context.items())
        message = f"{count} events reached the threshold of {threshold}."
        if detail:
            message = f"{message} Last: {detail}"
        await self.notifier.send_alert(ALERT_TITLES[category], message, severity="critical")

    async def emit_health(self, snapshot: Dict[str, Any]) -> None:
        try:
            await self.sink.emit_health(snapshot)
        except Exception as e:
            logger.error("health_snapshot_emit_failed", error=str(e))
