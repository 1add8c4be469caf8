# apps/api/tests/test_statistics.py
from uuid import uuid4

import pytest
from sqlalchemy import update

from learnhub.core.exceptions import NotFoundError
from learnhub.db.models import Plan
from learnhub.services.payments import PaymentService
from learnhub.services.plans import PlanService
from learnhub.services.statistics import StatisticsService
from learnhub.services.subscriptions import SubscriptionService

COUNTERS = (
    "purchases_count",
    "total_revenue",
    "total_refunded",
    "current_subscriptions",
    "rating_count",
    "rating_sum",
)


def counters_of(plan):
    return {name: getattr(plan, name) for name in COUNTERS}


@pytest.fixture
async def busy_plan(db, gateway, make_plan, make_subscription, pay):
    """Two purchases, one rating, one partial refund, one scheduled cancellation."""
    plan = await make_plan()
    first = await make_subscription(plan)
    second = await make_subscription(plan, user_id="user-2", email="u2@example.com")
    await make_subscription(plan, user_id="user-3", email="u3@example.com")

    first_payment = await pay(first)
    await pay(second)

    subscriptions = SubscriptionService(db)
    await subscriptions.rate(first.id, 4)
    await subscriptions.cancel(second.id, immediate=False)
    await PaymentService(db, gateway).refund(first_payment.id, amount=100)
    return plan


async def test_incremental_counters_match_recompute(db, busy_plan):
    plan = await PlanService(db).get(busy_plan.id)

    expected = await StatisticsService(db).compute_plan_counters(plan.id)

    assert counters_of(plan) == expected
    assert expected == {
        "purchases_count": 2,
        "total_revenue": 1700,
        "total_refunded": 100,
        "current_subscriptions": 1,
        "rating_count": 1,
        "rating_sum": 4,
    }


async def test_recompute_corrects_drift(db, busy_plan):
    await db.execute(
        update(Plan)
        .where(Plan.id == busy_plan.id)
        .values(purchases_count=40, total_revenue=-5, current_subscriptions=9, rating_sum=0)
    )
    await db.commit()

    counters = await StatisticsService(db).recompute_plan(busy_plan.id)
    again = await StatisticsService(db).recompute_plan(busy_plan.id)

    plan = await PlanService(db).get(busy_plan.id)
    assert counters == again == counters_of(plan)
    assert plan.current_subscriptions == 1
    assert plan.total_revenue == 1700


async def test_recompute_all(db, busy_plan, make_plan):
    await make_plan(name="Empty plan")

    result = await StatisticsService(db).recompute_all()

    assert result == {"plans": 2, "recomputed": 2, "failed": []}


async def test_recompute_unknown_plan(db):
    with pytest.raises(NotFoundError):
        await StatisticsService(db).recompute_plan(uuid4())


async def test_decrement_never_goes_negative(db, make_plan):
    plan = await make_plan()
    statistics = StatisticsService(db)

    assert await statistics.decrement_active(plan.id) is True
    await db.commit()

    assert (await PlanService(db).get(plan.id)).current_subscriptions == 0


async def test_plan_summary(db, busy_plan):
    summary = await StatisticsService(db).plan_summary(busy_plan.id)

    assert summary["plan_id"] == str(busy_plan.id)
    assert summary["purchases_count"] == 2
    assert summary["average_rating"] == 4.0
