# apps/api/tests/test_plans.py
from datetime import timedelta

import pytest

from learnhub.core.enums import PlanKind
from learnhub.core.exceptions import BadRequestError, ConflictError, NotFoundError
from learnhub.db.models import Plan
from learnhub.db.models.utils import utc_now
from learnhub.services.plans import DEFAULT_PLANS, PlanService


async def test_create_period_plan_generates_slug(make_plan):
    plan = await make_plan(name="Premium 6 Months!")

    assert plan.slug == "premium-6-months"
    assert plan.discounted_price == 900
    assert plan.course_id is None
    assert plan.purchases_count == 0


async def test_duplicate_slug_is_a_conflict(make_plan):
    await make_plan(slug="standard")

    with pytest.raises(ConflictError):
        await make_plan(name="Other", slug="standard")


async def test_same_name_gets_distinct_slugs(make_plan):
    first = await make_plan(name="Monthly")
    second = await make_plan(name="Monthly")

    assert first.slug != second.slug


async def test_course_plan_requires_course_id(make_plan):
    with pytest.raises(BadRequestError):
        await make_plan(kind=PlanKind.COURSE, includes_all_courses=False)


async def test_period_plan_requires_scope(make_plan):
    with pytest.raises(BadRequestError):
        await make_plan(includes_all_courses=False, excluded_course_ids=[])


async def test_course_plan_drops_period_scope(make_plan):
    plan = await make_plan(kind=PlanKind.COURSE, course_id="course-1", excluded_course_ids=["x"])

    assert plan.includes_all_courses is False
    assert plan.excluded_course_ids == []


async def test_only_one_active_plan_per_course(make_plan):
    await make_plan(name="Python course", kind=PlanKind.COURSE, course_id="course-1")

    with pytest.raises(ConflictError):
        await make_plan(name="Python course again", kind=PlanKind.COURSE, course_id="course-1")

    # inactive bindings do not count
    inactive = await make_plan(
        name="Python course archived", kind=PlanKind.COURSE, course_id="course-1", is_active=False
    )
    assert inactive.is_active is False


async def test_reactivating_second_course_binding_conflicts(db, make_plan):
    await make_plan(name="Course A", kind=PlanKind.COURSE, course_id="course-1")
    archived = await make_plan(name="Course A old", kind=PlanKind.COURSE, course_id="course-1", is_active=False)

    with pytest.raises(ConflictError):
        await PlanService(db).update(archived.id, {"is_active": True})


async def test_invalid_discount_and_window_rejected(make_plan):
    with pytest.raises(BadRequestError):
        await make_plan(discount_percent=120)

    now = utc_now()
    with pytest.raises(BadRequestError):
        await make_plan(available_from=now, available_until=now - timedelta(days=1))


async def test_list_filters_and_pagination(db, make_plan):
    await make_plan(name="Cheap", price=100, sort_order=1)
    await make_plan(name="Popular", price=500, is_popular=True, sort_order=2)
    await make_plan(name="Course", kind=PlanKind.COURSE, course_id="c-9", price=300, sort_order=3)
    await make_plan(name="Retired", price=50, is_active=False)

    service = PlanService(db)

    items, total = await service.list(is_active=True)
    assert total == 3
    assert [p.name for p in items] == ["Cheap", "Popular", "Course"]

    items, total = await service.list(kind=PlanKind.COURSE)
    assert total == 1 and items[0].course_id == "c-9"

    items, total = await service.list(min_price=200, max_price=600, is_active=True)
    assert {p.name for p in items} == {"Popular", "Course"}

    items, total = await service.list(search="popu")
    assert [p.name for p in items] == ["Popular"]

    items, total = await service.list(is_active=True, page=2, limit=2)
    assert total == 3
    assert [p.name for p in items] == ["Course"]


async def test_available_only_respects_window_and_capacity(db, make_plan):
    now = utc_now()
    await make_plan(name="Open")
    await make_plan(name="Future", available_from=now + timedelta(days=3))
    await make_plan(name="Past", available_until=now - timedelta(days=3))
    await make_plan(name="Hidden", is_available=False)

    items, _ = await PlanService(db).list(available_only=True, now=now)

    assert [p.name for p in items] == ["Open"]


async def test_update_revalidates_and_keeps_counters(db, make_plan):
    plan = await make_plan()
    service = PlanService(db)

    updated = await service.update(plan.id, {"price": 2000, "purchases_count": 99})

    assert updated.price == 2000
    assert updated.purchases_count == 0

    with pytest.raises(BadRequestError):
        await service.update(plan.id, {"kind": PlanKind.COURSE})


async def test_update_rejects_null_for_required_fields(db, make_plan):
    plan = await make_plan(available_until=utc_now() + timedelta(days=30))
    service = PlanService(db)

    for field in ("price", "kind", "name", "discount_percent", "is_active"):
        with pytest.raises(BadRequestError):
            await service.update(plan.id, {field: None})

    cleared = await service.update(plan.id, {"available_until": None})
    assert cleared.available_until is None
    assert cleared.price == 1000


async def test_get_by_slug(db, make_plan):
    plan = await make_plan(slug="yearly")

    assert (await PlanService(db).get_by_slug("yearly")).id == plan.id
    with pytest.raises(NotFoundError):
        await PlanService(db).get_by_slug("missing")


# ────────────────────────────────────────────────
# Deletion guard
# ────────────────────────────────────────────────
async def test_delete_without_history_removes_row(db, make_plan):
    plan = await make_plan()
    plan_id = plan.id

    assert await PlanService(db).delete(plan_id) is True
    assert await db.get(Plan, plan_id) is None


async def test_delete_with_active_subscriptions_is_refused(db, make_plan, make_subscription, pay):
    plan = await make_plan()
    await pay(await make_subscription(plan))

    with pytest.raises(ConflictError):
        await PlanService(db).delete(plan.id)

    assert (await PlanService(db).get(plan.id)).is_active is True


async def test_delete_with_history_soft_deactivates(db, make_plan, make_subscription):
    plan = await make_plan()
    await make_subscription(plan)  # pending: history, not counted as active

    assert await PlanService(db).delete(plan.id) is False

    reloaded = await PlanService(db).get(plan.id)
    assert reloaded.is_active is False


async def test_seed_default_plans_is_idempotent(db):
    service = PlanService(db)

    first = await service.seed_default_plans()
    second = await service.seed_default_plans()

    assert len(first) == len(DEFAULT_PLANS)
    assert [p.id for p in first] == [p.id for p in second]
    assert all(p.includes_all_courses for p in first)
