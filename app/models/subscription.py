"""
Subscription and Renewal History Models

One Subscription row per tenant, plus the append-only subscription_history
trail. In-flight renewals are history rows with payment_status=pending;
they are never deleted.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from sqlalchemy import String, Integer, Boolean, Numeric, DateTime, ForeignKey, JSON, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.hospital import Hospital
from app.shared.db.base import Base


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    PENDING = "pending"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    EXPIRED = "expired"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class HistoryEvent(str, Enum):
    RENEWAL = "renewal"
    EXPIRY = "expiry"
    CANCELLATION = "cancellation"


class FailureReason(str, Enum):
    NO_PAYMENT_INITIATED = "NO_PAYMENT_INITIATED"
    TIMEOUT_UNPAID = "TIMEOUT_UNPAID"
    ORDER_CREATION_FAILED = "ORDER_CREATION_FAILED"


class ReviewReason(str, Enum):
    PAID_BUT_NO_PAYMENT_DETAILS = "PAID_BUT_NO_PAYMENT_DETAILS"
    PAYMENT_ATTEMPTED_NOT_CAPTURED = "PAYMENT_ATTEMPTED_NOT_CAPTURED"
    UNEXPECTED_ORDER_STATUS = "UNEXPECTED_ORDER_STATUS"
    GATEWAY_API_ERROR = "GATEWAY_API_ERROR"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    CAPTURED_AFTER_FAILURE = "CAPTURED_AFTER_FAILURE"
    ORDER_CREATED_AFTER_CLOSE = "ORDER_CREATED_AFTER_CLOSE"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Subscription(Base):
    """
    Current plan for a tenant.

    Mutated only together with a subscription_history row in the same
    transaction.
    """
    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("hospitals.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True
    )

    doctor_count: Mapped[int] = mapped_column(Integer, default=1)
    billing_cycle: Mapped[str] = mapped_column(String(10), default=BillingCycle.MONTHLY.value)
    status: Mapped[str] = mapped_column(String(20), default=SubscriptionStatus.PENDING.value, index=True)
    payment_status: Mapped[str] = mapped_column(String(20), default=PaymentStatus.PENDING.value)
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))

    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    # Start of the paid period the current price covers; basis for proration
    current_period_start: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=True)

    last_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    hospital: Mapped["Hospital"] = relationship()
    history: Mapped[List["RenewalAttempt"]] = relationship(
        back_populates="subscription",
        order_by="RenewalAttempt.created_at",
    )

    def __repr__(self) -> str:
        return f"<Subscription tenant={self.tenant_id} status={self.status} end={self.end_date}>"


class RenewalAttempt(Base):
    """
    Append-only subscription history entry.

    Renewal rows carry the gateway order and the price computed together
    with it; expiry and cancellation rows record lifecycle events and have
    no payment status.
    """
    __tablename__ = "subscription_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tenant_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(20), default=HistoryEvent.RENEWAL.value)

    doctor_count: Mapped[int] = mapped_column(Integer)
    billing_cycle: Mapped[str] = mapped_column(String(10))
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    amount_minor: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # paise
    currency: Mapped[str] = mapped_column(String(3), default="INR")
    price_breakdown: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    payment_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True, index=True)
    gateway_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True, index=True)
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    receipt: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    gateway_response: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)

    start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    failure_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    requires_admin_review: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    review_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    flagged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    subscription: Mapped["Subscription"] = relationship(back_populates="history")

    def __repr__(self) -> str:
        return f"<RenewalAttempt order={self.gateway_order_id} status={self.payment_status}>"
