# apps/api/learnhub/routers/plans.py
"""
Plans Router - LearnHub
Public catalogue reads; create / update / delete are admin-only.
"""

import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, ConfigDict, Field, model_validator

from learnhub.core.deps import CurrentAdminUser, DBSession, Dispatcher
from learnhub.core.enums import Currency, PlanKind
from learnhub.services.plans import NULLABLE_FIELDS, PlanService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plans", tags=["Plans"])


# ────────────────────────────────────────────────
# Models
# ────────────────────────────────────────────────
class PlanCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    slug: Optional[str] = Field(None, max_length=120, pattern=r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
    description: str = ""
    kind: PlanKind = PlanKind.PERIOD
    price: int = Field(..., ge=0, description="Minor units (kopecks / cents)")
    currency: Currency = Currency.UAH
    discount_percent: int = Field(0, ge=0, le=100)
    duration_months: int = Field(1, ge=1, le=120)
    course_id: Optional[str] = None
    includes_all_courses: bool = False
    excluded_course_ids: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)
    is_active: bool = True
    is_available: bool = True
    available_from: Optional[datetime] = None
    available_until: Optional[datetime] = None
    max_subscriptions: int = Field(0, ge=0, description="0 = unlimited")
    is_popular: bool = False
    is_featured: bool = False
    sort_order: int = 0


class PlanUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=200)
    slug: Optional[str] = Field(None, max_length=120)
    description: Optional[str] = None
    kind: Optional[PlanKind] = None
    price: Optional[int] = Field(None, ge=0)
    currency: Optional[Currency] = None
    discount_percent: Optional[int] = Field(None, ge=0, le=100)
    duration_months: Optional[int] = Field(None, ge=1, le=120)
    course_id: Optional[str] = None
    includes_all_courses: Optional[bool] = None
    excluded_course_ids: Optional[List[str]] = None
    features: Optional[List[str]] = None
    is_active: Optional[bool] = None
    is_available: Optional[bool] = None
    available_from: Optional[datetime] = None
    available_until: Optional[datetime] = None
    max_subscriptions: Optional[int] = Field(None, ge=0)
    is_popular: Optional[bool] = None
    is_featured: Optional[bool] = None
    sort_order: Optional[int] = None

    @model_validator(mode="after")
    def reject_nulls(self) -> "PlanUpdate":
        nulled = sorted(
            name for name in self.model_fields_set
            if getattr(self, name) is None and name not in NULLABLE_FIELDS
        )
        if nulled:
            raise ValueError(f"Fields cannot be null: {', '.join(nulled)}")
        return self


class PlanResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    slug: str
    description: str
    kind: PlanKind
    price: int
    currency: Currency
    discount_percent: int
    discounted_price: int
    duration_months: int
    course_id: Optional[str]
    includes_all_courses: bool
    excluded_course_ids: List[str]
    features: List[str]
    is_active: bool
    is_available: bool
    available_from: Optional[datetime]
    available_until: Optional[datetime]
    max_subscriptions: int
    current_subscriptions: int
    purchases_count: int
    average_rating: float
    rating_count: int
    is_popular: bool
    is_featured: bool
    sort_order: int


class PlanListResponse(BaseModel):
    items: List[PlanResponse]
    total: int
    page: int
    limit: int


# ────────────────────────────────────────────────
# Public reads
# ────────────────────────────────────────────────
@router.get("", response_model=PlanListResponse)
async def list_plans(
    db: DBSession,
    kind: Optional[PlanKind] = None,
    is_active: Optional[bool] = True,
    available_only: bool = False,
    min_price: Optional[int] = Query(None, ge=0),
    max_price: Optional[int] = Query(None, ge=0),
    course_id: Optional[str] = None,
    search: Optional[str] = Query(None, max_length=100),
    is_popular: Optional[bool] = None,
    is_featured: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    items, total = await PlanService(db).list(
        kind=kind,
        is_active=is_active,
        available_only=available_only,
        min_price=min_price,
        max_price=max_price,
        course_id=course_id,
        search=search,
        is_popular=is_popular,
        is_featured=is_featured,
        page=page,
        limit=limit,
    )
    return {"items": items, "total": total, "page": page, "limit": limit}


@router.get("/slug/{slug}", response_model=PlanResponse)
async def get_plan_by_slug(slug: str, db: DBSession):
    return await PlanService(db).get_by_slug(slug)


@router.get("/{plan_id}", response_model=PlanResponse)
async def get_plan(plan_id: UUID, db: DBSession):
    return await PlanService(db).get(plan_id)


# ────────────────────────────────────────────────
# Admin
# ────────────────────────────────────────────────
@router.post("", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(
    payload: PlanCreate,
    current_user: CurrentAdminUser,
    db: DBSession,
    dispatcher: Dispatcher,
):
    service = PlanService(db)
    plan = await service.create(payload.model_dump(), actor_id=current_user.id)
    dispatcher.dispatch(service.outbox)
    return plan


@router.patch("/{plan_id}", response_model=PlanResponse)
async def update_plan(
    plan_id: UUID,
    payload: PlanUpdate,
    current_user: CurrentAdminUser,
    db: DBSession,
    dispatcher: Dispatcher,
):
    service = PlanService(db)
    plan = await service.update(plan_id, payload.model_dump(exclude_unset=True), actor_id=current_user.id)
    dispatcher.dispatch(service.outbox)
    return plan


@router.delete("/{plan_id}")
async def delete_plan(
    plan_id: UUID,
    current_user: CurrentAdminUser,
    db: DBSession,
    dispatcher: Dispatcher,
):
    """
    Hard delete when nothing references the plan; otherwise the plan is
    deactivated and kept for history.
    """
    service = PlanService(db)
    deleted = await service.delete(plan_id, actor_id=current_user.id)
    dispatcher.dispatch(service.outbox)
    return {"id": str(plan_id), "deleted": deleted, "deactivated": not deleted}
