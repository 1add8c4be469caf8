# apps/api/tests/test_sweep.py
from datetime import timedelta

import pytest
from dateutil.relativedelta import relativedelta
from sqlalchemy import update

from learnhub.core.config import settings
from learnhub.core.enums import NotificationKind, SubscriptionStatus
from learnhub.db.models import Subscription
from learnhub.db.models.utils import utc_now
from learnhub.services import subscriptions as subscriptions_module
from learnhub.services.events import Outbox
from learnhub.services.plans import PlanService
from learnhub.services.statistics import StatisticsService
from learnhub.services.subscriptions import SubscriptionService
from learnhub.tasks.subscriptions import queue_expiry_reminders, sweep_expired_subscriptions


@pytest.fixture
def paid_subscription(make_subscription, pay):
    """Active subscription whose window ends `ends_in` from now (negative = already elapsed)."""

    async def _make(plan, ends_in: timedelta, user_id="user-1", email="student@example.com"):
        start = utc_now() + ends_in - relativedelta(months=plan.duration_months)
        subscription = await make_subscription(plan, user_id=user_id, email=email, start_date=start)
        await pay(subscription, paid_at=start)
        return subscription

    return _make


@pytest.fixture
def recording_dispatch(monkeypatch, dispatcher):
    monkeypatch.setattr("learnhub.tasks.subscriptions.get_dispatcher", lambda: dispatcher)
    return dispatcher


async def test_sweep_expires_elapsed_grants(db, make_plan, paid_subscription):
    plan = await make_plan()
    elapsed = await paid_subscription(plan, timedelta(days=-1))
    current = await paid_subscription(plan, timedelta(days=10), user_id="user-2", email="u2@example.com")
    assert (await PlanService(db).get(plan.id)).current_subscriptions == 2

    service = SubscriptionService(db)
    counts = await service.expire_due()

    assert counts == {"expired": 1, "cancelled": 0, "skipped": 0}
    assert (await service.get(elapsed.id)).status == SubscriptionStatus.EXPIRED
    assert (await service.get(current.id)).status == SubscriptionStatus.ACTIVE
    assert (await PlanService(db).get(plan.id)).current_subscriptions == 1
    assert [e.kind for e in service.outbox.notifications()] == [NotificationKind.SUBSCRIPTION_EXPIRED]

    # second run finds nothing to do
    assert await SubscriptionService(db).expire_due() == {"expired": 0, "cancelled": 0, "skipped": 0}
    assert (await PlanService(db).get(plan.id)).current_subscriptions == 1


async def test_scheduled_cancellation_closes_without_second_decrement(db, make_plan, paid_subscription):
    plan = await make_plan()
    subscription = await paid_subscription(plan, timedelta(days=5))
    await SubscriptionService(db).cancel(subscription.id, immediate=False)
    assert (await PlanService(db).get(plan.id)).current_subscriptions == 0

    counts = await SubscriptionService(db).expire_due(now=utc_now() + timedelta(days=6))

    assert counts["cancelled"] == 1
    closed = await SubscriptionService(db).get(subscription.id)
    assert closed.status == SubscriptionStatus.CANCELLED
    assert (await PlanService(db).get(plan.id)).current_subscriptions == 0


async def test_pending_subscriptions_are_not_swept(db, make_plan, make_subscription):
    plan = await make_plan(duration_months=1)
    pending = await make_subscription(plan, start_date=utc_now() - timedelta(days=90))

    counts = await SubscriptionService(db).expire_due()

    assert counts["expired"] == 0
    assert (await SubscriptionService(db).get(pending.id)).status == SubscriptionStatus.PENDING


async def test_sweep_runs_in_batches(db, make_plan, paid_subscription):
    plan = await make_plan()
    for n in range(3):
        await paid_subscription(plan, timedelta(days=-(n + 1)), user_id=f"user-{n}", email=f"u{n}@example.com")

    counts = await SubscriptionService(db).expire_due(batch_size=1)

    assert counts["expired"] == 3
    assert (await PlanService(db).get(plan.id)).current_subscriptions == 0


async def test_sweep_helper_dispatches_after_commit(db, session_factory, make_plan, paid_subscription, recording_dispatch):
    plan = await make_plan()
    await paid_subscription(plan, timedelta(days=-2))
    await db.commit()

    counts = await sweep_expired_subscriptions(session_factory)

    assert counts["expired"] == 1
    assert recording_dispatch.kinds() == [NotificationKind.SUBSCRIPTION_EXPIRED]


async def test_concurrent_sweeps_apply_each_row_once(db, session_factory, make_plan, paid_subscription):
    plan = await make_plan()
    subscription = await paid_subscription(plan, timedelta(days=-1))
    await db.commit()

    async with session_factory() as first:
        first_counts = await SubscriptionService(first).expire_due()
    async with session_factory() as second:
        second_counts = await SubscriptionService(second).expire_due()

    assert first_counts["expired"] == 1
    assert second_counts == {"expired": 0, "cancelled": 0, "skipped": 0}
    assert (await SubscriptionService(db).get(subscription.id)).status == SubscriptionStatus.EXPIRED
    assert (await PlanService(db).get(plan.id)).current_subscriptions == 0


async def test_row_closed_by_another_worker_is_skipped(db, make_plan, paid_subscription, monkeypatch):
    plan = await make_plan()
    subscription = await paid_subscription(plan, timedelta(days=-1))
    transition = subscriptions_module.transition_subscription

    async def closed_elsewhere_first(session, subscription_id, target, values=None, extra_conditions=()):
        # another worker expires the row between selection and update
        await session.execute(
            update(Subscription)
            .where(Subscription.id == subscription_id)
            .values(status=SubscriptionStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        return await transition(session, subscription_id, target, values, extra_conditions=extra_conditions)

    monkeypatch.setattr(subscriptions_module, "transition_subscription", closed_elsewhere_first)
    service = SubscriptionService(db)

    counts = await service.expire_due()

    assert counts == {"expired": 0, "cancelled": 0, "skipped": 1}
    assert service.outbox.notifications() == []
    assert (await SubscriptionService(db).get(subscription.id)).status == SubscriptionStatus.EXPIRED
    # the winning worker owns the decrement
    assert (await PlanService(db).get(plan.id)).current_subscriptions == 1


async def test_committed_batches_are_dispatched_when_a_later_batch_fails(
    db, session_factory, make_plan, paid_subscription, recording_dispatch, monkeypatch
):
    plan = await make_plan()
    first = await paid_subscription(plan, timedelta(days=-2))
    second = await paid_subscription(plan, timedelta(days=-1), user_id="user-2", email="u2@example.com")
    await db.commit()

    decrement = StatisticsService.decrement_active
    calls = []

    async def failing_on_second_batch(self, plan_id, n=1):
        calls.append(plan_id)
        if len(calls) > 1:
            raise RuntimeError("database went away")
        return await decrement(self, plan_id, n)

    monkeypatch.setattr(StatisticsService, "decrement_active", failing_on_second_batch)
    monkeypatch.setattr(settings, "EXPIRATION_SWEEP_BATCH_SIZE", 1)

    with pytest.raises(RuntimeError):
        await sweep_expired_subscriptions(session_factory)

    assert recording_dispatch.kinds() == [NotificationKind.SUBSCRIPTION_EXPIRED]
    assert (await SubscriptionService(db).get(first.id)).status == SubscriptionStatus.EXPIRED
    assert (await SubscriptionService(db).get(second.id)).status == SubscriptionStatus.ACTIVE


# ────────────────────────────────────────────────
# Expiry reminders
# ────────────────────────────────────────────────
async def test_reminders_are_sent_once(db, make_plan, paid_subscription):
    plan = await make_plan()
    soon = await paid_subscription(plan, timedelta(days=3))
    await paid_subscription(plan, timedelta(days=30), user_id="user-2", email="u2@example.com")
    scheduled = await paid_subscription(plan, timedelta(days=2), user_id="user-3", email="u3@example.com")
    await SubscriptionService(db).cancel(scheduled.id, immediate=False)

    outbox = Outbox()
    sent = await SubscriptionService(db, outbox).notify_expiring()

    assert sent == 1
    [reminder] = outbox.notifications()
    assert reminder.kind == NotificationKind.SUBSCRIPTION_EXPIRING
    assert reminder.recipient == "student@example.com"
    assert 0 <= reminder.template_data["days_remaining"] <= 3
    assert (await SubscriptionService(db).get(soon.id)).expiry_notification_sent is True

    assert await SubscriptionService(db).notify_expiring() == 0


async def test_reminder_helper(db, session_factory, make_plan, paid_subscription, recording_dispatch):
    plan = await make_plan()
    await paid_subscription(plan, timedelta(days=1))
    await db.commit()

    assert await queue_expiry_reminders(session_factory) == 1
    assert recording_dispatch.kinds() == [NotificationKind.SUBSCRIPTION_EXPIRING]
