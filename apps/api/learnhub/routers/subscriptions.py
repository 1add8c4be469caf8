# apps/api/learnhub/routers/subscriptions.py
"""
Subscriptions Router - LearnHub
Checkout, the user's own subscriptions, cancellation, progress, ratings and
course access checks. Admins may act on any subscription.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, ConfigDict, Field

from learnhub.core.deps import CurrentAdminUser, CurrentUser, DBSession, Dispatcher
from learnhub.core.enums import Currency, PlanKind, SubscriptionStatus
from learnhub.core.exceptions import BadRequestError, NotFoundError
from learnhub.db.models import Subscription
from learnhub.middleware.auth import AuthUser
from learnhub.services.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscriptions", tags=["Subscriptions"])


# ────────────────────────────────────────────────
# Models
# ────────────────────────────────────────────────
class SubscriptionCreate(BaseModel):
    plan_id: UUID
    start_date: Optional[datetime] = None
    auto_renewal: bool = False
    notes: Optional[str] = Field(None, max_length=1000)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    immediate: bool = False


class ExtendRequest(BaseModel):
    months: int = Field(..., ge=1, le=24)


class ProgressRequest(BaseModel):
    completed_lessons: int = Field(..., ge=0)
    total_lessons: int = Field(..., ge=0)


class RatingRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)


class AutoRenewalRequest(BaseModel):
    enabled: bool


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    plan_id: UUID
    plan_kind: PlanKind
    course_id: Optional[str]
    plan_snapshot: Dict[str, Any]
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    days_remaining: int
    list_price: int
    price: int
    currency: Currency
    is_paid: bool
    paid_at: Optional[datetime]
    auto_renewal: bool
    cancel_at_period_end: bool
    completed_lessons: int
    total_lessons: int
    progress_percent: float
    rating: Optional[int]
    cancellation_reason: Optional[str]
    cancelled_at: Optional[datetime]
    created_at: datetime


class SubscriptionListResponse(BaseModel):
    items: List[SubscriptionResponse]
    total: int
    page: int
    limit: int


class AccessResponse(BaseModel):
    course_id: str
    has_access: bool
    subscription_id: Optional[UUID] = None
    end_date: Optional[datetime] = None


# ────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────
async def get_owned_subscription(
    service: SubscriptionService, subscription_id: UUID, user: AuthUser
) -> Subscription:
    """Other users' subscriptions look like missing ones."""
    subscription = await service.get(subscription_id)
    if subscription.user_id != user.id and not user.is_admin:
        raise NotFoundError("Subscription not found")
    return subscription


# ────────────────────────────────────────────────
# Checkout & reads
# ────────────────────────────────────────────────
@router.post("", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    payload: SubscriptionCreate,
    current_user: CurrentUser,
    db: DBSession,
    dispatcher: Dispatcher,
):
    """Creates a pending subscription at the plan's current discounted price."""
    if not current_user.email:
        raise BadRequestError("An email address is required to subscribe")

    service = SubscriptionService(db)
    subscription = await service.create(
        user_id=current_user.id,
        user_email=current_user.email,
        plan_id=payload.plan_id,
        start_date=payload.start_date,
        auto_renewal=payload.auto_renewal,
        notes=payload.notes,
    )
    dispatcher.dispatch(service.outbox)
    return subscription


@router.get("/me", response_model=SubscriptionListResponse)
async def list_my_subscriptions(
    current_user: CurrentUser,
    db: DBSession,
    status_filter: Optional[SubscriptionStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    items, total = await SubscriptionService(db).list(
        user_id=current_user.id, status=status_filter, page=page, limit=limit
    )
    return {"items": items, "total": total, "page": page, "limit": limit}


@router.get("", response_model=SubscriptionListResponse)
async def list_subscriptions(
    current_user: CurrentAdminUser,
    db: DBSession,
    user_id: Optional[str] = None,
    plan_id: Optional[UUID] = None,
    course_id: Optional[str] = None,
    status_filter: Optional[SubscriptionStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    items, total = await SubscriptionService(db).list(
        user_id=user_id,
        status=status_filter,
        plan_id=plan_id,
        course_id=course_id,
        page=page,
        limit=limit,
    )
    return {"items": items, "total": total, "page": page, "limit": limit}


@router.get("/access/{course_id}", response_model=AccessResponse)
async def check_course_access(course_id: str, current_user: CurrentUser, db: DBSession):
    subscription = await SubscriptionService(db).find_access(current_user.id, course_id)
    if subscription is None:
        return AccessResponse(course_id=course_id, has_access=False)
    return AccessResponse(
        course_id=course_id,
        has_access=True,
        subscription_id=subscription.id,
        end_date=subscription.end_date,
    )


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(subscription_id: UUID, current_user: CurrentUser, db: DBSession):
    return await get_owned_subscription(SubscriptionService(db), subscription_id, current_user)


# ────────────────────────────────────────────────
# Mutations
# ────────────────────────────────────────────────
@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: UUID,
    payload: CancelRequest,
    current_user: CurrentUser,
    db: DBSession,
    dispatcher: Dispatcher,
):
    service = SubscriptionService(db)
    await get_owned_subscription(service, subscription_id, current_user)
    subscription = await service.cancel(
        subscription_id,
        reason=payload.reason,
        actor_id=current_user.id,
        immediate=payload.immediate,
    )
    dispatcher.dispatch(service.outbox)
    return subscription


@router.post("/{subscription_id}/extend", response_model=SubscriptionResponse)
async def extend_subscription(
    subscription_id: UUID,
    payload: ExtendRequest,
    current_user: CurrentAdminUser,
    db: DBSession,
    dispatcher: Dispatcher,
):
    """Admin-only: push the end date forward without a payment."""
    service = SubscriptionService(db)
    subscription = await service.extend(subscription_id, payload.months, actor_id=current_user.id)
    dispatcher.dispatch(service.outbox)
    return subscription


@router.post("/{subscription_id}/progress", response_model=SubscriptionResponse)
async def record_progress(
    subscription_id: UUID,
    payload: ProgressRequest,
    current_user: CurrentUser,
    db: DBSession,
):
    service = SubscriptionService(db)
    await get_owned_subscription(service, subscription_id, current_user)
    return await service.record_progress(subscription_id, payload.completed_lessons, payload.total_lessons)


@router.post("/{subscription_id}/rate", response_model=SubscriptionResponse)
async def rate_subscription(
    subscription_id: UUID,
    payload: RatingRequest,
    current_user: CurrentUser,
    db: DBSession,
):
    service = SubscriptionService(db)
    subscription = await get_owned_subscription(service, subscription_id, current_user)
    if subscription.user_id != current_user.id:
        raise BadRequestError("Only the subscriber can rate a subscription")
    return await service.rate(subscription_id, payload.rating)


@router.post("/{subscription_id}/auto-renewal", response_model=SubscriptionResponse)
async def set_auto_renewal(
    subscription_id: UUID,
    payload: AutoRenewalRequest,
    current_user: CurrentUser,
    db: DBSession,
):
    service = SubscriptionService(db)
    await get_owned_subscription(service, subscription_id, current_user)
    return await service.set_auto_renewal(subscription_id, payload.enabled)
