"""
Subscription API Endpoints - Razorpay renewals

Provides:
- POST /subscriptions/renew - Create (or reuse) the renewal order
- POST /subscriptions/verify - Apply a Razorpay checkout callback
- GET /subscriptions/current - Current subscription
- GET /subscriptions/history - Renewal, expiry and cancellation history
- POST /subscriptions/cancel - Cancel auto-renewal

The tenant comes from request.state (set by the upstream auth layer) or
the X-Tenant-ID header forwarded by the gateway.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.domain.factory import (
    build_renewal_orchestrator,
    build_subscription_service,
    build_verification_orchestrator,
)
from app.modules.billing.domain.renewal import RenewalOrchestrator
from app.modules.billing.domain.subscriptions import SubscriptionService
from app.modules.billing.domain.verification import VerificationOrchestrator
from app.shared.core.rate_limit import TENANT_HEADER, renewal_limit, standard_limit, verification_limit
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


class RenewalRequest(BaseModel):
    doctor_count: int
    billing_cycle: str  # monthly, yearly


class RenewalResponse(BaseModel):
    attempt_id: UUID
    order_id: str
    amount: int  # paise
    currency: str
    key_id: Optional[str] = None
    receipt: Optional[str] = None
    doctor_count: int
    billing_cycle: str
    total_price: Decimal
    price_breakdown: Dict[str, Any]
    start_date: datetime
    end_date: datetime
    reused: bool = False


class VerificationRequest(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str


class VerificationResponse(BaseModel):
    status: str  # applied, already_applied
    order_id: str
    payment_id: Optional[str] = None
    subscription_id: UUID
    doctor_count: int
    billing_cycle: str
    end_date: Optional[datetime] = None


class HistoryResponse(BaseModel):
    items: List[Dict[str, Any]]
    total: int
    limit: int
    offset: int


def get_tenant_id(request: Request) -> UUID:
    """Resolve the tenant from auth state or the forwarded header."""
    raw = getattr(request.state, "tenant_id", None) or request.headers.get(TENANT_HEADER)
    if not raw:
        raise HTTPException(401, "Tenant context missing")
    try:
        return raw if isinstance(raw, UUID) else UUID(str(raw))
    except ValueError as e:
        raise HTTPException(400, "Invalid tenant id") from e


def get_renewal_orchestrator(db: AsyncSession = Depends(get_db)) -> RenewalOrchestrator:
    return build_renewal_orchestrator(db)


def get_verification_orchestrator(db: AsyncSession = Depends(get_db)) -> VerificationOrchestrator:
    return build_verification_orchestrator(db)


def get_subscription_service(db: AsyncSession = Depends(get_db)) -> SubscriptionService:
    return build_subscription_service(db)


@router.post("/renew", response_model=RenewalResponse)
@renewal_limit
async def renew_subscription(
    request: Request,
    body: RenewalRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    orchestrator: RenewalOrchestrator = Depends(get_renewal_orchestrator),
):
    """
    Create the Razorpay order for a renewal.

    Repeating the same request while the order is unpaid returns the same
    order (``reused=true``).
    """
    order = await orchestrator.create_renewal(tenant_id, body.doctor_count, body.billing_cycle)
    return RenewalResponse(
        attempt_id=order.attempt_id,
        order_id=order.order_id,
        amount=order.amount_minor,
        currency=order.currency,
        key_id=order.key_id,
        receipt=order.receipt,
        doctor_count=order.doctor_count,
        billing_cycle=order.billing_cycle,
        total_price=order.total_price,
        price_breakdown=order.price_breakdown,
        start_date=order.start_date,
        end_date=order.end_date,
        reused=order.reused,
    )


@router.post("/verify", response_model=VerificationResponse)
@verification_limit
async def verify_payment(
    request: Request,
    body: VerificationRequest,
    tenant_id: UUID = Depends(get_tenant_id),
    orchestrator: VerificationOrchestrator = Depends(get_verification_orchestrator),
):
    """Verify a checkout callback. Replays are answered with ``already_applied``."""
    result = await orchestrator.verify(
        tenant_id,
        body.razorpay_order_id,
        body.razorpay_payment_id,
        body.razorpay_signature,
    )
    return VerificationResponse(
        status=result.outcome,
        order_id=result.order_id,
        payment_id=result.payment_id,
        subscription_id=result.subscription_id,
        doctor_count=result.doctor_count,
        billing_cycle=result.billing_cycle,
        end_date=result.end_date,
    )


@router.get("/current")
@standard_limit
async def get_current_subscription(
    request: Request,
    tenant_id: UUID = Depends(get_tenant_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    return await service.get_current(tenant_id)


@router.get("/history", response_model=HistoryResponse)
@standard_limit
async def get_subscription_history(
    request: Request,
    tenant_id: UUID = Depends(get_tenant_id),
    service: SubscriptionService = Depends(get_subscription_service),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    items, total = await service.get_history(tenant_id, limit=limit, offset=offset)
    return HistoryResponse(items=items, total=total, limit=limit, offset=offset)


@router.post("/cancel")
@standard_limit
async def cancel_subscription(
    request: Request,
    tenant_id: UUID = Depends(get_tenant_id),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Cancel auto-renewal. Access continues until the current end date."""
    return await service.cancel(tenant_id)
