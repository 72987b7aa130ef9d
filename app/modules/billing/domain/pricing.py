"""
Subscription Pricing Calculator

Pure, deterministic price math for doctor-seat subscriptions:
- per-doctor monthly rate with the highest qualifying volume tier
- yearly cycle = 12 months at a further percentage discount
- linear proration credit for unexpired paid time
- gateway platform fee + GST on that fee
- payable amount in integer minor units (paise), at least 1

No I/O and no settings lookups inside the calculation; the policy is
passed in so every result can be reproduced in a unit test.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional, Tuple

from app.models.subscription import BillingCycle
from app.shared.core.datetime_utils import ensure_utc, utcnow
from app.shared.core.exceptions import ValidationError

PAISE = Decimal("0.01")
HUNDRED = Decimal("100")

# (minimum doctors, discount percent), highest qualifying tier wins
DEFAULT_VOLUME_DISCOUNTS: Tuple[Tuple[int, Decimal], ...] = (
    (5, Decimal("5")),
    (10, Decimal("10")),
    (20, Decimal("15")),
    (50, Decimal("20")),
)


class FeeBasis:
    PRE_CREDIT = "pre_credit"
    POST_CREDIT = "post_credit"


def _money(value: Decimal) -> Decimal:
    return value.quantize(PAISE, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricingPolicy:
    price_per_doctor: Decimal = Decimal("5999")
    yearly_discount_percent: Decimal = Decimal("20")
    volume_discounts: Tuple[Tuple[int, Decimal], ...] = DEFAULT_VOLUME_DISCOUNTS
    platform_fee_percent: Decimal = Decimal("2")
    gst_percent: Decimal = Decimal("18")
    fee_basis: str = FeeBasis.PRE_CREDIT
    min_doctors: int = 1
    max_doctors: int = 1000
    minor_units: int = 100

    @classmethod
    def from_settings(cls, settings) -> "PricingPolicy":
        return cls(
            price_per_doctor=Decimal(settings.PRICE_PER_DOCTOR),
            yearly_discount_percent=Decimal(settings.YEARLY_DISCOUNT_PERCENT),
            platform_fee_percent=Decimal(settings.PLATFORM_FEE_PERCENT),
            gst_percent=Decimal(settings.GST_PERCENT),
            fee_basis=settings.FEE_BASIS,
            min_doctors=settings.MIN_DOCTORS,
            max_doctors=settings.MAX_DOCTORS,
        )


@dataclass(frozen=True)
class PriorSubscription:
    """The paid period a renewal replaces."""
    total_price: Decimal
    start_date: datetime
    end_date: datetime


@dataclass(frozen=True)
class PriceBreakdown:
    doctor_count: int
    billing_cycle: str
    base_price: Decimal
    volume_discount_percent: Decimal
    subtotal: Decimal
    proration_credit: Decimal
    platform_fee: Decimal
    gst: Decimal
    total: Decimal
    total_minor: int
    fee_basis: str = FeeBasis.PRE_CREDIT
    remaining_days: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe form stored with the renewal attempt."""
        return {
            "doctor_count": self.doctor_count,
            "billing_cycle": self.billing_cycle,
            "base_price": str(self.base_price),
            "volume_discount_percent": str(self.volume_discount_percent),
            "subtotal": str(self.subtotal),
            "proration_credit": str(self.proration_credit),
            "platform_fee": str(self.platform_fee),
            "gst": str(self.gst),
            "total": str(self.total),
            "total_minor": self.total_minor,
            "fee_basis": self.fee_basis,
            "remaining_days": self.remaining_days,
        }


def validate_request(doctor_count: Any, billing_cycle: Any, policy: PricingPolicy) -> BillingCycle:
    """Raises ValidationError for a bad doctor count or billing cycle."""
    if isinstance(doctor_count, bool) or not isinstance(doctor_count, int):
        raise ValidationError("Doctor count must be an integer", details={"doctor_count": doctor_count})
    if doctor_count < policy.min_doctors or doctor_count > policy.max_doctors:
        raise ValidationError(
            f"Doctor count must be between {policy.min_doctors} and {policy.max_doctors}",
            details={"doctor_count": doctor_count},
        )
    try:
        return BillingCycle(billing_cycle)
    except ValueError:
        raise ValidationError(
            "Billing cycle must be 'monthly' or 'yearly'",
            details={"billing_cycle": billing_cycle},
        )


def volume_discount_percent(doctor_count: int, policy: PricingPolicy) -> Decimal:
    discount = Decimal("0")
    for min_doctors, percent in sorted(policy.volume_discounts):
        if doctor_count >= min_doctors:
            discount = percent
    return discount


def _discounted_monthly(doctor_count: int, policy: PricingPolicy) -> Decimal:
    discount = volume_discount_percent(doctor_count, policy)
    return doctor_count * policy.price_per_doctor * (HUNDRED - discount) / HUNDRED


def monthly_price(doctor_count: int, policy: PricingPolicy) -> Decimal:
    """
    Monthly price for ``doctor_count`` seats.

    Crossing a tier boundary can make n seats cheaper than n-1 (20 at 15%
    off < 19 at 10% off). The price is floored at the last count below
    every boundary reached, so it never decreases as seats are added.
    """
    price = _discounted_monthly(doctor_count, policy)
    for min_doctors, _ in policy.volume_discounts:
        if 1 < min_doctors <= doctor_count:
            price = max(price, _discounted_monthly(min_doctors - 1, policy))
    return price


def cycle_price(doctor_count: int, billing_cycle: BillingCycle, policy: PricingPolicy) -> Decimal:
    monthly = monthly_price(doctor_count, policy)
    if billing_cycle == BillingCycle.YEARLY:
        return monthly * 12 * (HUNDRED - policy.yearly_discount_percent) / HUNDRED
    return monthly


def remaining_whole_days(prior: PriorSubscription, now: datetime) -> Tuple[int, int]:
    """(total_days, remaining_days) of the prior period, whole days."""
    start = ensure_utc(prior.start_date)
    end = ensure_utc(prior.end_date)
    now = ensure_utc(now)
    total_days = max(1, (end - start).days)
    if now >= end:
        return total_days, 0
    remaining = (end - max(now, start)).days
    return total_days, min(max(0, remaining), total_days)


def proration_credit(prior: Optional[PriorSubscription], now: datetime) -> Tuple[Decimal, int]:
    """
    Linear daily-rate credit for unexpired paid time.

    credit = total_price / total_days * remaining_days, rounded to paise.
    """
    if prior is None or prior.total_price <= 0:
        return Decimal("0.00"), 0
    total_days, remaining_days = remaining_whole_days(prior, now)
    if remaining_days <= 0:
        return Decimal("0.00"), 0
    daily_rate = Decimal(prior.total_price) / Decimal(total_days)
    return _money(daily_rate * remaining_days), remaining_days


def calculate_price(
    doctor_count: int,
    billing_cycle,
    policy: PricingPolicy,
    prior: Optional[PriorSubscription] = None,
    now: Optional[datetime] = None,
) -> PriceBreakdown:
    """
    Full price for a renewal.

    total = subtotal - credit + fee + gst, where fee is a percentage of the
    fee basis (the pre-credit subtotal unless the policy says otherwise)
    and gst is a percentage of the fee.
    """
    cycle = validate_request(doctor_count, billing_cycle, policy)
    now = now or utcnow()

    base_price = _money(doctor_count * policy.price_per_doctor)
    subtotal = _money(cycle_price(doctor_count, cycle, policy))

    credit, remaining_days = proration_credit(prior, now)
    # A credit larger than the new price is not refunded
    credit = min(credit, subtotal)
    net = subtotal - credit

    fee_base = subtotal if policy.fee_basis == FeeBasis.PRE_CREDIT else net
    raw_fee = fee_base * policy.platform_fee_percent / HUNDRED
    platform_fee = _money(raw_fee)
    gst = _money(raw_fee * policy.gst_percent / HUNDRED)

    total = _money(net + platform_fee + gst)
    minor_unit = Decimal(1) / Decimal(policy.minor_units)
    if total < minor_unit:
        total = minor_unit
    total_minor = int((total * policy.minor_units).to_integral_value(rounding=ROUND_HALF_UP))

    return PriceBreakdown(
        doctor_count=doctor_count,
        billing_cycle=cycle.value,
        base_price=base_price,
        volume_discount_percent=volume_discount_percent(doctor_count, policy),
        subtotal=subtotal,
        proration_credit=credit,
        platform_fee=platform_fee,
        gst=gst,
        total=total,
        total_minor=total_minor,
        fee_basis=policy.fee_basis,
        remaining_days=remaining_days,
    )
