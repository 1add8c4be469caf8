# apps/api/learnhub/routers/payments.py
"""
Payments Router - LearnHub
Payment attempts for the current user's pending subscriptions.
Creation is rate limited; the payable link comes from the acquiring gateway.
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field

from learnhub.core.config import settings
from learnhub.core.deps import CurrentUser, DBSession, Dispatcher, Gateway
from learnhub.core.enums import Currency, PaymentStatus
from learnhub.core.exceptions import NotFoundError
from learnhub.db.models import Payment
from learnhub.middleware.auth import AuthUser
from learnhub.middleware.rate_limit import PAYMENT_CREATE_LIMIT, get_user_or_ip_key, limiter
from learnhub.services.payments import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


# ────────────────────────────────────────────────
# Models
# ────────────────────────────────────────────────
class PaymentCreate(BaseModel):
    subscription_id: UUID
    redirect_url: Optional[str] = Field(None, max_length=2000)


class PaymentLinkResponse(BaseModel):
    id: UUID
    payment_url: Optional[str]
    payment_link_expires_at: Optional[datetime]
    link_expires_in_minutes: int
    status: PaymentStatus


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    plan_id: UUID
    amount: int
    discount_amount: int
    final_amount: int
    currency: Currency
    status: PaymentStatus
    attempt_number: int
    invoice_id: Optional[str]
    transaction_id: Optional[str]
    payment_url: Optional[str]
    payment_link_expires_at: Optional[datetime]
    link_expires_in_minutes: int
    failure_reason: Optional[str]
    paid_at: Optional[datetime]
    refunded_amount: int
    refund_reason: Optional[str]
    refunded_at: Optional[datetime]
    created_at: datetime


class PaymentListResponse(BaseModel):
    items: List[PaymentResponse]
    total: int
    page: int
    limit: int


class SyncResponse(BaseModel):
    outcome: str
    payment: PaymentResponse


# ────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────
def ensure_owner(payment: Payment, user: AuthUser) -> Payment:
    if payment.user_id != user.id and not user.is_admin:
        raise NotFoundError("Payment not found")
    return payment


# ────────────────────────────────────────────────
# Endpoints
# ────────────────────────────────────────────────
@router.post("", response_model=PaymentLinkResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(PAYMENT_CREATE_LIMIT, key_func=get_user_or_ip_key)
async def create_payment(
    request: Request,
    payload: PaymentCreate,
    current_user: CurrentUser,
    db: DBSession,
    gateway: Gateway,
    dispatcher: Dispatcher,
):
    """
    Creates (or reuses) a payment attempt and returns the gateway link.
    Safe to retry after a gateway error: no invoice exists until this succeeds.
    """
    service = PaymentService(db, gateway)
    subscription = await service.subscriptions.get(payload.subscription_id)
    if subscription.user_id != current_user.id:
        raise NotFoundError("Subscription not found")

    payment = await service.create_payment(
        payload.subscription_id,
        redirect_url=payload.redirect_url or f"{settings.frontend_base}/payment/result",
    )
    dispatcher.dispatch(service.outbox)

    return PaymentLinkResponse(
        id=payment.id,
        payment_url=payment.payment_url,
        payment_link_expires_at=payment.payment_link_expires_at,
        link_expires_in_minutes=payment.link_expires_in_minutes,
        status=payment.status,
    )


@router.get("/user/me", response_model=PaymentListResponse)
async def list_my_payments(
    current_user: CurrentUser,
    db: DBSession,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    items, total = await PaymentService(db).list_for_user(current_user.id, page=page, limit=limit)
    return {"items": items, "total": total, "page": page, "limit": limit}


@router.get("/subscription/{subscription_id}", response_model=List[PaymentResponse])
async def list_subscription_payments(subscription_id: UUID, current_user: CurrentUser, db: DBSession):
    service = PaymentService(db)
    subscription = await service.subscriptions.get(subscription_id)
    if subscription.user_id != current_user.id and not current_user.is_admin:
        raise NotFoundError("Subscription not found")
    return await service.list_for_subscription(subscription_id)


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(payment_id: UUID, current_user: CurrentUser, db: DBSession):
    return ensure_owner(await PaymentService(db).get(payment_id), current_user)


@router.post("/{payment_id}/cancel", response_model=PaymentResponse)
async def cancel_payment(
    payment_id: UUID,
    current_user: CurrentUser,
    db: DBSession,
    gateway: Gateway,
    dispatcher: Dispatcher,
):
    service = PaymentService(db, gateway)
    ensure_owner(await service.get(payment_id), current_user)
    payment = await service.cancel_payment(payment_id, actor_id=current_user.id)
    dispatcher.dispatch(service.outbox)
    return payment


@router.post("/{payment_id}/sync", response_model=SyncResponse)
async def sync_payment(
    payment_id: UUID,
    current_user: CurrentUser,
    db: DBSession,
    gateway: Gateway,
    dispatcher: Dispatcher,
):
    """Poll the gateway for a missed webhook; applied exactly like a delivery."""
    service = PaymentService(db, gateway)
    ensure_owner(await service.get(payment_id), current_user)
    result = await service.sync_status(payment_id)
    dispatcher.dispatch(result.events)
    return {"outcome": result.outcome, "payment": await service.get(payment_id)}
