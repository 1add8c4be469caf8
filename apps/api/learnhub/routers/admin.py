"""
Admin Router - LearnHub
Protected endpoints for platform administrators only.
Requires 'admin' role in JWT claims.
Refunds, payment/subscription/plan statistics, counter recompute, manual sweeps, plan seeding.
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Query, Request
from pydantic import BaseModel, Field

from learnhub.core.deps import CurrentAdminUser, DBSession, Dispatcher, Gateway
from learnhub.core.exceptions import NotFoundError
from learnhub.monitoring.metrics import subscriptions_swept_total
from learnhub.routers.payments import PaymentResponse
from learnhub.routers.plans import PlanResponse
from learnhub.services.logging import audit_log
from learnhub.services.payments import PaymentService
from learnhub.services.plans import PlanService
from learnhub.services.statistics import StatisticsService
from learnhub.services.subscriptions import SubscriptionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


# ────────────────────────────────────────────────
# Models
# ────────────────────────────────────────────────
class RefundRequest(BaseModel):
    amount: Optional[int] = Field(None, gt=0, description="Minor units; omit for the full remainder")
    reason: str = Field(..., min_length=3, max_length=500)


class SweepResponse(BaseModel):
    expired: int
    cancelled: int
    skipped: int


# ────────────────────────────────────────────────
# Refunds
# ────────────────────────────────────────────────
@router.post("/payments/{payment_id}/refund", response_model=PaymentResponse)
async def refund_payment(
    payment_id: UUID,
    current_user: CurrentAdminUser,
    db: DBSession,
    gateway: Gateway,
    dispatcher: Dispatcher,
    payload: RefundRequest = Body(...),
):
    """
    Full or partial refund through the gateway. A full refund also revokes
    the subscription.
    """
    service = PaymentService(db, gateway)
    payment = await service.refund(
        payment_id,
        amount=payload.amount,
        reason=payload.reason,
        actor_id=current_user.id,
    )
    dispatcher.dispatch(service.outbox)
    return payment


# ────────────────────────────────────────────────
# Statistics
# ────────────────────────────────────────────────
@router.get("/payments/statistics")
async def get_payment_statistics(current_user: CurrentAdminUser, db: DBSession) -> Dict[str, Any]:
    return await PaymentService(db).statistics()


@router.get("/subscriptions/statistics")
async def get_subscription_statistics(current_user: CurrentAdminUser, db: DBSession) -> Dict[str, Any]:
    return await SubscriptionService(db).statistics()


@router.get("/plans/{plan_id}/statistics")
async def get_plan_statistics(plan_id: UUID, current_user: CurrentAdminUser, db: DBSession):
    summary = await StatisticsService(db).plan_summary(plan_id)
    if summary is None:
        raise NotFoundError("Plan not found")
    return summary


@router.post("/statistics/recompute")
async def recompute_statistics(
    request: Request,
    current_user: CurrentAdminUser,
    db: DBSession,
    plan_id: Optional[UUID] = Query(None, description="Only this plan; all plans when omitted"),
):
    """Rebuild counters from subscriptions and payments (idempotent)."""
    service = StatisticsService(db)
    if plan_id is not None:
        result: Dict[str, Any] = {"plan_id": str(plan_id), "counters": await service.recompute_plan(plan_id)}
    else:
        result = await service.recompute_all()

    audit_log(
        action="statistics_recomputed",
        user_id=current_user.id,
        metadata={"plan_id": str(plan_id) if plan_id else None},
        request=request,
    )
    return result


# ────────────────────────────────────────────────
# Maintenance
# ────────────────────────────────────────────────
@router.post("/subscriptions/sweep", response_model=SweepResponse)
async def run_expiration_sweep(
    request: Request,
    current_user: CurrentAdminUser,
    db: DBSession,
    dispatcher: Dispatcher,
):
    """Same job beat runs periodically; safe to run concurrently with it."""
    counts = await SubscriptionService(db).expire_due(on_commit=dispatcher.dispatch)
    for status in ("expired", "cancelled"):
        if counts[status]:
            subscriptions_swept_total.labels(status=status).inc(counts[status])

    audit_log(action="expiration_sweep_triggered", user_id=current_user.id, metadata=counts, request=request)
    return counts


@router.post("/subscriptions/reminders")
async def send_expiry_reminders(
    current_user: CurrentAdminUser,
    db: DBSession,
    dispatcher: Dispatcher,
    within_days: Optional[int] = Query(None, ge=1, le=60),
):
    service = SubscriptionService(db)
    sent = await service.notify_expiring(within_days=within_days)
    dispatcher.dispatch(service.outbox)
    return {"queued": sent}


@router.post("/plans/seed", response_model=List[PlanResponse])
async def seed_plans(current_user: CurrentAdminUser, db: DBSession, dispatcher: Dispatcher):
    """Create the default period plans; existing slugs are left alone."""
    service = PlanService(db)
    plans = await service.seed_default_plans()
    dispatcher.dispatch(service.outbox)
    return plans
