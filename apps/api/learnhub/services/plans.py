# apps/api/learnhub/services/plans.py
"""
Plan Catalog Service - LearnHub
Create / list / update / delete purchasable plans.
Scope rules:
- course plans need a course_id, and only one *active* plan may bind a course
- period plans need includes_all_courses or a non-empty exclusion list
Availability is derived at read time (Plan.is_available_now / Plan.available_clause).
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from learnhub.core.enums import Currency, PlanKind
from learnhub.core.exceptions import BadRequestError, ConflictError, NotFoundError
from learnhub.db.models import Payment, Plan, Subscription
from learnhub.db.models.utils import ensure_utc, generate_unique_slug, is_slug_unique, utc_now
from learnhub.services.events import Outbox

logger = logging.getLogger(__name__)

# Fields an administrator may set directly (counters are never writable)
EDITABLE_FIELDS = {
    "name",
    "slug",
    "description",
    "kind",
    "price",
    "currency",
    "discount_percent",
    "duration_months",
    "course_id",
    "includes_all_courses",
    "excluded_course_ids",
    "features",
    "is_active",
    "is_available",
    "available_from",
    "available_until",
    "max_subscriptions",
    "is_popular",
    "is_featured",
    "sort_order",
}

# Patch fields where an explicit null is meaningful (slug: regenerate)
NULLABLE_FIELDS = {"slug", "course_id", "available_from", "available_until"}

# ────────────────────────────────────────────────
# Default catalogue (prices in kopecks)
# ────────────────────────────────────────────────
DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "name": "Basic 1 month",
        "slug": "basic-1-month",
        "description": "Access to every course for 1 month",
        "duration_months": 1,
        "price": 50_000,
        "discount_percent": 0,
        "features": ["All courses", "Online support", "Mobile app"],
        "sort_order": 1,
    },
    {
        "name": "Standard 3 months",
        "slug": "standard-3-months",
        "description": "The balanced plan for steady learning",
        "duration_months": 3,
        "price": 150_000,
        "discount_percent": 33,
        "is_popular": True,
        "features": ["All courses", "Personal support", "Certificates", "Reviewed homework"],
        "sort_order": 2,
    },
    {
        "name": "Premium 6 months",
        "slug": "premium-6-months",
        "description": "Half a year with priority support",
        "duration_months": 6,
        "price": 300_000,
        "discount_percent": 33,
        "is_featured": True,
        "features": ["All courses", "Priority support", "Certificates", "1:1 consultations"],
        "sort_order": 3,
    },
    {
        "name": "Professional 12 months",
        "slug": "professional-12-months",
        "description": "A full year for professional growth",
        "duration_months": 12,
        "price": 600_000,
        "discount_percent": 42,
        "features": ["All courses", "VIP support", "Personal mentor", "Career assistance"],
        "sort_order": 4,
    },
]


def validate_plan_shape(values: Dict[str, Any]) -> None:
    """Scope, discount and window invariants on a (merged) plan shape."""
    kind = PlanKind(values["kind"])

    if kind == PlanKind.COURSE:
        if not values.get("course_id"):
            raise BadRequestError("course_id is required for course plans")
    else:
        if not values.get("includes_all_courses") and not values.get("excluded_course_ids"):
            raise BadRequestError(
                "Period plans must include all courses or define excluded courses"
            )

    if values.get("price", 0) < 0:
        raise BadRequestError("price cannot be negative")
    if not 0 <= values.get("discount_percent", 0) <= 100:
        raise BadRequestError("discount_percent must be between 0 and 100")
    if values.get("duration_months", 1) < 1:
        raise BadRequestError("duration_months must be at least 1")
    if values.get("max_subscriptions", 0) < 0:
        raise BadRequestError("max_subscriptions cannot be negative")

    available_from = ensure_utc(values.get("available_from"))
    available_until = ensure_utc(values.get("available_until"))
    if available_from and available_until and available_from > available_until:
        raise BadRequestError("available_from must be before available_until")


def normalize_scope(values: Dict[str, Any]) -> Dict[str, Any]:
    """Drop fields that do not apply to the plan kind."""
    if PlanKind(values["kind"]) == PlanKind.COURSE:
        values["includes_all_courses"] = False
        values["excluded_course_ids"] = []
    else:
        values["course_id"] = None
        values["excluded_course_ids"] = sorted(set(values.get("excluded_course_ids") or []))
    return values


class PlanService:
    def __init__(self, db: AsyncSession, outbox: Optional[Outbox] = None):
        self.db = db
        self.outbox = outbox if outbox is not None else Outbox()

    # ────────────────────────────────────────────────
    # Helpers
    # ────────────────────────────────────────────────
    async def _ensure_course_binding_free(self, course_id: str, exclude_id: Optional[UUID] = None) -> None:
        stmt = select(Plan.id).where(
            Plan.kind == PlanKind.COURSE,
            Plan.course_id == course_id,
            Plan.is_active.is_(True),
        )
        if exclude_id is not None:
            stmt = stmt.where(Plan.id != exclude_id)

        if await self.db.scalar(stmt.limit(1)) is not None:
            raise ConflictError(f"An active plan already exists for course {course_id}")

    async def _has_history(self, plan_id: UUID) -> bool:
        subscriptions = await self.db.scalar(
            select(func.count(Subscription.id)).where(Subscription.plan_id == plan_id)
        )
        payments = await self.db.scalar(select(func.count(Payment.id)).where(Payment.plan_id == plan_id))
        return bool(subscriptions or payments)

    # ────────────────────────────────────────────────
    # CRUD
    # ────────────────────────────────────────────────
    async def create(self, data: Dict[str, Any], actor_id: Optional[str] = None) -> Plan:
        values = {k: v for k, v in data.items() if k in EDITABLE_FIELDS}
        values.setdefault("kind", PlanKind.PERIOD)
        values.setdefault("currency", Currency.UAH)
        values.setdefault("discount_percent", 0)
        values.setdefault("duration_months", 1)
        values.setdefault("is_active", True)

        validate_plan_shape(values)
        values = normalize_scope(values)

        slug = values.pop("slug", None)
        if slug:
            if not await is_slug_unique(slug, Plan, self.db):
                raise ConflictError(f"Plan slug '{slug}' is already in use")
        else:
            slug = await generate_unique_slug(values["name"], Plan, self.db)

        if values["kind"] == PlanKind.COURSE and values["is_active"]:
            await self._ensure_course_binding_free(values["course_id"])

        plan = Plan(slug=slug, **values)
        self.db.add(plan)
        await self.db.commit()
        await self.db.refresh(plan)

        logger.info(f"Plan created: {plan.slug} ({plan.kind.value}, {plan.price} {plan.currency.value})")
        self.outbox.audit("plan_created", actor_id, "plan", plan.id, slug=plan.slug, price=plan.price)
        return plan

    async def list(
        self,
        *,
        kind: Optional[PlanKind] = None,
        is_active: Optional[bool] = None,
        available_only: bool = False,
        min_price: Optional[int] = None,
        max_price: Optional[int] = None,
        course_id: Optional[str] = None,
        search: Optional[str] = None,
        is_popular: Optional[bool] = None,
        is_featured: Optional[bool] = None,
        page: int = 1,
        limit: int = 20,
        now: Optional[datetime] = None,
    ) -> Tuple[List[Plan], int]:
        conditions = []
        if kind is not None:
            conditions.append(Plan.kind == kind)
        if is_active is not None:
            conditions.append(Plan.is_active.is_(is_active))
        if available_only:
            conditions.append(Plan.available_clause(now or utc_now()))
        if min_price is not None:
            conditions.append(Plan.price >= min_price)
        if max_price is not None:
            conditions.append(Plan.price <= max_price)
        if course_id:
            conditions.append(Plan.course_id == course_id)
        if search:
            pattern = f"%{search.strip()}%"
            conditions.append(or_(Plan.name.ilike(pattern), Plan.description.ilike(pattern)))
        if is_popular is not None:
            conditions.append(Plan.is_popular.is_(is_popular))
        if is_featured is not None:
            conditions.append(Plan.is_featured.is_(is_featured))

        total = await self.db.scalar(select(func.count(Plan.id)).where(*conditions))

        stmt = (
            select(Plan)
            .where(*conditions)
            .order_by(Plan.sort_order.asc(), Plan.price.asc(), Plan.created_at.asc())
            .offset((max(page, 1) - 1) * limit)
            .limit(limit)
        )
        items = list((await self.db.scalars(stmt)).all())
        return items, int(total or 0)

    async def get(self, plan_id: UUID) -> Plan:
        plan = await self.db.get(Plan, plan_id, populate_existing=True)
        if plan is None:
            raise NotFoundError("Plan not found")
        return plan

    async def get_by_slug(self, slug: str) -> Plan:
        plan = await self.db.scalar(select(Plan).where(Plan.slug == slug))
        if plan is None:
            raise NotFoundError("Plan not found")
        return plan

    async def update(self, plan_id: UUID, patch: Dict[str, Any], actor_id: Optional[str] = None) -> Plan:
        """
        Apply an admin patch. Existing subscriptions keep their frozen price
        and snapshot whatever changes here.
        """
        plan = await self.get(plan_id)
        changes = {k: v for k, v in patch.items() if k in EDITABLE_FIELDS}
        nulled = sorted(k for k, v in changes.items() if v is None and k not in NULLABLE_FIELDS)
        if nulled:
            raise BadRequestError(f"Fields cannot be null: {', '.join(nulled)}")
        if not changes:
            return plan

        merged = {field: getattr(plan, field) for field in EDITABLE_FIELDS}
        merged.update(changes)
        validate_plan_shape(merged)
        merged = normalize_scope(merged)

        if "slug" in changes and changes["slug"] != plan.slug:
            if not changes["slug"]:
                merged["slug"] = await generate_unique_slug(merged["name"], Plan, self.db, exclude_id=plan.id)
            elif not await is_slug_unique(changes["slug"], Plan, self.db, exclude_id=plan.id):
                raise ConflictError(f"Plan slug '{changes['slug']}' is already in use")

        binding_changed = any(f in changes for f in ("kind", "course_id", "is_active"))
        if binding_changed and merged["kind"] == PlanKind.COURSE and merged["is_active"]:
            await self._ensure_course_binding_free(merged["course_id"], exclude_id=plan.id)

        for field, value in merged.items():
            if getattr(plan, field) != value:
                setattr(plan, field, value)

        await self.db.commit()
        await self.db.refresh(plan)

        logger.info(f"Plan {plan.slug} updated: {sorted(changes)}")
        self.outbox.audit("plan_updated", actor_id, "plan", plan.id, fields=sorted(changes))
        return plan

    async def delete(self, plan_id: UUID, actor_id: Optional[str] = None) -> bool:
        """
        Returns True when the row was removed, False when it was soft-deactivated
        because subscriptions or payments still reference it.
        """
        plan = await self.get(plan_id)

        if plan.current_subscriptions > 0:
            raise ConflictError(
                f"Plan has {plan.current_subscriptions} active subscriptions and cannot be deleted"
            )

        if await self._has_history(plan.id):
            plan.is_active = False
            await self.db.commit()
            logger.info(f"Plan {plan.slug} has history – deactivated instead of deleted")
            self.outbox.audit("plan_deactivated", actor_id, "plan", plan.id, slug=plan.slug)
            return False

        await self.db.execute(delete(Plan).where(Plan.id == plan.id))
        await self.db.commit()
        self.db.expunge(plan)

        logger.info(f"Plan {plan.slug} deleted")
        self.outbox.audit("plan_deleted", actor_id, "plan", plan_id, slug=plan.slug)
        return True

    async def seed_default_plans(self) -> List[Plan]:
        """Create the default period catalogue. Existing slugs are left untouched."""
        plans: List[Plan] = []
        for template in DEFAULT_PLANS:
            existing = await self.db.scalar(select(Plan).where(Plan.slug == template["slug"]))
            if existing is not None:
                logger.debug(f"Default plan {template['slug']} already present – skipping")
                plans.append(existing)
                continue

            plans.append(
                await self.create(
                    {
                        **template,
                        "kind": PlanKind.PERIOD,
                        "currency": Currency.UAH,
                        "includes_all_courses": True,
                    }
                )
            )
        return plans
