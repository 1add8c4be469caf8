# apps/api/learnhub/services/subscriptions.py
"""
Subscription Manager - LearnHub
Owns a user's access grant: checkout (pending), activation (via reconciler),
cancellation, extension, progress, ratings, the expiration sweep and expiry
reminders.

Every status change is a compare-and-set (services/transitions.py); counter
changes go through StatisticsService.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from dateutil.relativedelta import relativedelta
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from learnhub.core.config import settings
from learnhub.core.enums import NotificationKind, PlanKind, SubscriptionStatus
from learnhub.core.exceptions import BadRequestError, ConflictError, NotFoundError
from learnhub.db.models import Plan, Subscription
from learnhub.db.models.utils import ensure_utc, utc_now
from learnhub.services.events import Outbox
from learnhub.services.statistics import StatisticsService
from learnhub.services.transitions import transition_subscription

logger = logging.getLogger(__name__)

OPEN_STATUSES = (SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE)


def plan_snapshot(plan: Plan) -> Dict[str, Any]:
    """Plan terms frozen onto the subscription at checkout."""
    return {
        "name": plan.name,
        "slug": plan.slug,
        "kind": plan.kind.value,
        "duration_months": plan.duration_months,
        "price": plan.price,
        "discount_percent": plan.discount_percent,
        "discounted_price": plan.discounted_price,
        "currency": plan.currency.value,
        "course_id": plan.course_id,
        "includes_all_courses": plan.includes_all_courses,
        "excluded_course_ids": list(plan.excluded_course_ids or []),
    }


def compute_progress(completed_lessons: int, total_lessons: int) -> float:
    if total_lessons <= 0:
        return 0.0
    percent = completed_lessons / total_lessons * 100
    return round(min(100.0, max(0.0, percent)), 2)


class SubscriptionService:
    def __init__(self, db: AsyncSession, outbox: Optional[Outbox] = None):
        self.db = db
        self.outbox = outbox if outbox is not None else Outbox()
        self.plan_stats = StatisticsService(db)

    # ────────────────────────────────────────────────
    # Reads
    # ────────────────────────────────────────────────
    async def get(self, subscription_id: UUID) -> Subscription:
        subscription = await self.db.get(Subscription, subscription_id, populate_existing=True)
        if subscription is None:
            raise NotFoundError("Subscription not found")
        return subscription

    async def list(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[SubscriptionStatus] = None,
        plan_id: Optional[UUID] = None,
        course_id: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Tuple[List[Subscription], int]:
        conditions = []
        if user_id:
            conditions.append(Subscription.user_id == user_id)
        if status is not None:
            conditions.append(Subscription.status == status)
        if plan_id is not None:
            conditions.append(Subscription.plan_id == plan_id)
        if course_id:
            conditions.append(Subscription.course_id == course_id)

        total = await self.db.scalar(select(func.count(Subscription.id)).where(*conditions))
        stmt = (
            select(Subscription)
            .where(*conditions)
            .order_by(Subscription.created_at.desc())
            .offset((max(page, 1) - 1) * limit)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        items = list((await self.db.scalars(stmt)).all())
        return items, int(total or 0)

    async def find_access(
        self, user_id: str, course_id: str, now: Optional[datetime] = None
    ) -> Optional[Subscription]:
        """The subscription granting `course_id` to the user right now, if any."""
        now = ensure_utc(now) or utc_now()
        stmt = (
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.start_date <= now,
                Subscription.end_date > now,
                or_(
                    Subscription.course_id == course_id,
                    Subscription.plan_kind == PlanKind.PERIOD,
                ),
            )
            .order_by(Subscription.end_date.desc())
            .execution_options(populate_existing=True)
        )
        for subscription in (await self.db.scalars(stmt)).all():
            if subscription.grants_course(course_id):
                return subscription
        return None

    async def has_access(self, user_id: str, course_id: str, now: Optional[datetime] = None) -> bool:
        return await self.find_access(user_id, course_id, now) is not None

    async def statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Platform-wide overview: counts per status, paid revenue, conversion."""
        now = ensure_utc(now) or utc_now()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        rows = (
            await self.db.execute(
                select(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status)
            )
        ).all()
        by_status = {status.value: 0 for status in SubscriptionStatus}
        for status, count in rows:
            by_status[SubscriptionStatus(status).value] = int(count)
        total = sum(by_status.values())

        paid_revenue = func.coalesce(func.sum(Subscription.price), 0)
        revenue_total = await self.db.scalar(select(paid_revenue).where(Subscription.is_paid.is_(True)))
        revenue_monthly = await self.db.scalar(
            select(paid_revenue).where(Subscription.is_paid.is_(True), Subscription.paid_at >= month_start)
        )

        active = by_status[SubscriptionStatus.ACTIVE.value]
        return {
            "total": total,
            **by_status,
            "revenue": {"total": int(revenue_total or 0), "monthly": int(revenue_monthly or 0)},
            "conversion_rate": round(active / total * 100, 2) if total else 0.0,
        }

    # ────────────────────────────────────────────────
    # Checkout
    # ────────────────────────────────────────────────
    async def create(
        self,
        user_id: str,
        user_email: str,
        plan_id: UUID,
        start_date: Optional[datetime] = None,
        auto_renewal: bool = False,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        now = ensure_utc(now) or utc_now()

        plan = await self.db.get(Plan, plan_id, populate_existing=True)
        if plan is None:
            raise NotFoundError("Plan not found")
        if not plan.is_available_now(now):
            raise BadRequestError("Plan is not available for purchase")

        if plan.kind == PlanKind.COURSE:
            existing = await self.db.scalar(
                select(Subscription.id)
                .where(
                    Subscription.user_id == user_id,
                    Subscription.course_id == plan.course_id,
                    Subscription.status.in_(OPEN_STATUSES),
                )
                .limit(1)
            )
            if existing is not None:
                raise ConflictError("You already have a subscription for this course")

        start = ensure_utc(start_date) or now
        months = (
            settings.COURSE_PLAN_DURATION_MONTHS
            if plan.kind == PlanKind.COURSE
            else plan.duration_months
        )

        subscription = Subscription(
            user_id=user_id,
            user_email=user_email,
            plan_id=plan.id,
            plan_kind=plan.kind,
            course_id=plan.course_id if plan.kind == PlanKind.COURSE else None,
            plan_snapshot=plan_snapshot(plan),
            start_date=start,
            end_date=start + relativedelta(months=months),
            status=SubscriptionStatus.PENDING,
            list_price=plan.price,
            price=plan.discounted_price,
            currency=plan.currency,
            is_paid=False,
            auto_renewal=auto_renewal,
            notes=notes,
        )
        self.db.add(subscription)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise ConflictError("You already have a subscription for this course") from e
        await self.db.refresh(subscription)

        logger.info(
            f"Subscription {subscription.id} created for user {user_id} on plan {plan.slug} "
            f"(price={subscription.price} {subscription.currency.value})"
        )
        self.outbox.audit(
            "subscription_created",
            user_id,
            "subscription",
            subscription.id,
            plan_id=str(plan.id),
            price=subscription.price,
        )
        return subscription

    # ────────────────────────────────────────────────
    # Activation (reconciler only, caller commits)
    # ────────────────────────────────────────────────
    async def activate(
        self,
        subscription_id: UUID,
        transaction_id: Optional[str] = None,
        paid_at: Optional[datetime] = None,
    ) -> bool:
        """
        pending → active + paid. The access window starts at payment time
        when the requested start date has already passed.
        """
        paid_at = ensure_utc(paid_at) or utc_now()
        subscription = await self.get(subscription_id)

        values: Dict[str, Any] = {
            "is_paid": True,
            "paid_at": paid_at,
            "payment_transaction_id": transaction_id,
        }
        start = ensure_utc(subscription.start_date)
        if start < paid_at:
            values["start_date"] = paid_at
            values["end_date"] = paid_at + (ensure_utc(subscription.end_date) - start)

        applied = await transition_subscription(
            self.db, subscription_id, SubscriptionStatus.ACTIVE, values
        )
        if applied:
            logger.info(f"Subscription {subscription_id} activated (transaction={transaction_id})")
        return applied

    # ────────────────────────────────────────────────
    # Cancellation
    # ────────────────────────────────────────────────
    async def _cancel_now(
        self,
        subscription: Subscription,
        reason: Optional[str],
        actor_id: Optional[str],
        now: datetime,
    ) -> bool:
        """Immediate cancel without committing. Decrements the plan if the grant was counted."""
        start = ensure_utc(subscription.start_date)
        end = ensure_utc(subscription.end_date)
        was_counted = (
            subscription.status == SubscriptionStatus.ACTIVE and not subscription.cancel_at_period_end
        )

        applied = await transition_subscription(
            self.db,
            subscription.id,
            SubscriptionStatus.CANCELLED,
            {
                "cancellation_reason": reason,
                "cancelled_by": actor_id,
                "cancelled_at": now,
                "auto_renewal": False,
                "end_date": max(start, min(end, now)),
            },
            extra_conditions=(Subscription.status == subscription.status,),
        )
        if applied and was_counted:
            await self.plan_stats.decrement_active(subscription.plan_id)
        return applied

    async def deactivate_for_refund(self, subscription_id: UUID, now: Optional[datetime] = None) -> bool:
        """Revoke access after a full refund (local or gateway reversal). Caller commits."""
        now = ensure_utc(now) or utc_now()
        subscription = await self.get(subscription_id)
        if subscription.status not in OPEN_STATUSES:
            return False

        applied = await self._cancel_now(subscription, "refunded", None, now)
        if applied:
            logger.info(f"Subscription {subscription_id} deactivated after refund")
            self.outbox.audit(
                "subscription_deactivated",
                subscription.user_id,
                "subscription",
                subscription.id,
                reason="refunded",
            )
        return applied

    async def cancel(
        self,
        subscription_id: UUID,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        immediate: bool = True,
        now: Optional[datetime] = None,
    ) -> Subscription:
        now = ensure_utc(now) or utc_now()
        subscription = await self.get(subscription_id)

        if subscription.status not in OPEN_STATUSES:
            raise ConflictError(f"Subscription is already {subscription.status.value}")
        # a scheduled cancellation may still be escalated to an immediate one
        if subscription.cancel_at_period_end and not immediate:
            raise ConflictError("Subscription is already scheduled for cancellation")

        if immediate or subscription.status == SubscriptionStatus.PENDING:
            applied = await self._cancel_now(subscription, reason, actor_id, now)
        else:
            result = await self.db.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription.id,
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    Subscription.cancel_at_period_end.is_(False),
                )
                .values(
                    cancel_at_period_end=True,
                    auto_renewal=False,
                    cancellation_reason=reason,
                    cancelled_by=actor_id,
                    cancelled_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1
            if applied:
                await self.plan_stats.decrement_active(subscription.plan_id)

        if not applied:
            await self.db.rollback()
            raise ConflictError("Subscription changed concurrently, please retry")

        await self.db.commit()
        subscription = await self.get(subscription_id)

        logger.info(
            f"Subscription {subscription.id} cancelled "
            f"({'immediately' if immediate else 'at period end'}) by {actor_id}"
        )
        self.outbox.notify(
            NotificationKind.SUBSCRIPTION_CANCELLED,
            subscription.user_email,
            plan_name=subscription.plan_snapshot.get("name"),
            immediate=immediate,
            end_date=ensure_utc(subscription.end_date).isoformat(),
            reason=reason,
        )
        self.outbox.audit(
            "subscription_cancelled",
            actor_id,
            "subscription",
            subscription.id,
            immediate=immediate,
            reason=reason,
        )
        return subscription

    # ────────────────────────────────────────────────
    # Mutations on active grants
    # ────────────────────────────────────────────────
    async def extend(self, subscription_id: UUID, months: int, actor_id: Optional[str] = None) -> Subscription:
        """Push end_date forward. No payment is created."""
        if months < 1:
            raise BadRequestError("months must be at least 1")

        subscription = await self.get(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise BadRequestError("Only active subscriptions can be extended")

        current_end = ensure_utc(subscription.end_date)
        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription.id,
                Subscription.status == SubscriptionStatus.ACTIVE,
            )
            .values(end_date=current_end + relativedelta(months=months))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise ConflictError("Subscription changed concurrently, please retry")

        await self.db.commit()
        subscription = await self.get(subscription_id)

        logger.info(f"Subscription {subscription.id} extended by {months} months")
        self.outbox.audit("subscription_extended", actor_id, "subscription", subscription.id, months=months)
        return subscription

    async def set_auto_renewal(self, subscription_id: UUID, enabled: bool) -> Subscription:
        subscription = await self.get(subscription_id)
        if subscription.status not in OPEN_STATUSES or subscription.cancel_at_period_end:
            raise BadRequestError("Auto-renewal can only be changed on an open subscription")

        subscription.auto_renewal = enabled
        await self.db.commit()
        return subscription

    async def record_progress(
        self, subscription_id: UUID, completed_lessons: int, total_lessons: int
    ) -> Subscription:
        if completed_lessons < 0 or total_lessons < 0:
            raise BadRequestError("Lesson counts cannot be negative")

        subscription = await self.get(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise BadRequestError("Progress can only be recorded on an active subscription")

        subscription.completed_lessons = completed_lessons
        subscription.total_lessons = total_lessons
        subscription.progress_percent = compute_progress(completed_lessons, total_lessons)
        subscription.last_activity_at = utc_now()
        await self.db.commit()
        return subscription

    async def rate(self, subscription_id: UUID, rating: int) -> Subscription:
        if not 1 <= rating <= 5:
            raise BadRequestError("Rating must be between 1 and 5")

        subscription = await self.get(subscription_id)
        if not subscription.is_paid:
            raise BadRequestError("Only paid subscriptions can be rated")

        previous = subscription.rating
        if previous == rating:
            return subscription

        guard = Subscription.rating.is_(None) if previous is None else Subscription.rating == previous
        result = await self.db.execute(
            update(Subscription)
            .where(Subscription.id == subscription.id, guard)
            .values(rating=rating)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise ConflictError("Rating changed concurrently, please retry")

        if previous is None:
            await self.plan_stats.add_rating(subscription.plan_id, rating)
        else:
            await self.plan_stats.replace_rating(subscription.plan_id, previous, rating)

        await self.db.commit()
        return await self.get(subscription_id)

    # ────────────────────────────────────────────────
    # Periodic jobs
    # ────────────────────────────────────────────────
    async def expire_due(
        self,
        now: Optional[datetime] = None,
        batch_size: Optional[int] = None,
        max_batches: int = 50,
        on_commit: Optional[Callable[[List[Any]], None]] = None,
    ) -> Dict[str, int]:
        """
        Close active subscriptions whose window has elapsed, in bounded batches.
        Each row is guarded by `status = active AND end_date < now` in its own
        UPDATE, so concurrent sweeps never double-apply. Commits per batch.

        With `on_commit`, the events of each committed batch are handed over
        and cleared from the outbox before the next batch starts.
        """
        now = ensure_utc(now) or utc_now()
        batch_size = batch_size or settings.EXPIRATION_SWEEP_BATCH_SIZE
        due = (Subscription.status == SubscriptionStatus.ACTIVE, Subscription.end_date < now)
        counts = {"expired": 0, "cancelled": 0, "skipped": 0}

        for _ in range(max_batches):
            rows = (
                await self.db.execute(
                    select(
                        Subscription.id,
                        Subscription.plan_id,
                        Subscription.user_id,
                        Subscription.user_email,
                        Subscription.cancel_at_period_end,
                        Subscription.plan_snapshot,
                    )
                    .where(*due)
                    .order_by(Subscription.end_date.asc())
                    .limit(batch_size)
                )
            ).all()
            if not rows:
                break

            for row in rows:
                target = (
                    SubscriptionStatus.CANCELLED if row.cancel_at_period_end else SubscriptionStatus.EXPIRED
                )
                applied = await transition_subscription(
                    self.db, row.id, target, {"auto_renewal": False}, extra_conditions=due
                )
                if not applied:
                    counts["skipped"] += 1
                    continue

                if target == SubscriptionStatus.EXPIRED:
                    await self.plan_stats.decrement_active(row.plan_id)
                counts[target.value] += 1

                self.outbox.notify(
                    NotificationKind.SUBSCRIPTION_EXPIRED,
                    row.user_email,
                    plan_name=(row.plan_snapshot or {}).get("name"),
                    status=target.value,
                )
                self.outbox.audit("subscription_" + target.value, None, "subscription", row.id)

            await self.db.commit()
            if on_commit is not None:
                on_commit(list(self.outbox))
                self.outbox.clear()
            if len(rows) < batch_size:
                break

        if counts["expired"] or counts["cancelled"]:
            logger.info(
                f"Expiration sweep: {counts['expired']} expired, {counts['cancelled']} cancelled",
                extra=counts,
            )
        return counts

    async def notify_expiring(self, now: Optional[datetime] = None, within_days: Optional[int] = None) -> int:
        """One reminder per subscription ending within `within_days`."""
        now = ensure_utc(now) or utc_now()
        horizon = now + timedelta(days=within_days or settings.EXPIRY_REMINDER_DAYS)

        rows = (
            await self.db.execute(
                select(
                    Subscription.id,
                    Subscription.user_email,
                    Subscription.end_date,
                    Subscription.plan_snapshot,
                ).where(
                    Subscription.status == SubscriptionStatus.ACTIVE,
                    Subscription.cancel_at_period_end.is_(False),
                    Subscription.expiry_notification_sent.is_(False),
                    Subscription.end_date >= now,
                    Subscription.end_date <= horizon,
                )
            )
        ).all()

        sent = 0
        for row in rows:
            result = await self.db.execute(
                update(Subscription)
                .where(Subscription.id == row.id, Subscription.expiry_notification_sent.is_(False))
                .values(expiry_notification_sent=True)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                continue

            end_date = ensure_utc(row.end_date)
            self.outbox.notify(
                NotificationKind.SUBSCRIPTION_EXPIRING,
                row.user_email,
                plan_name=(row.plan_snapshot or {}).get("name"),
                end_date=end_date.isoformat(),
                days_remaining=max(0, (end_date - now).days),
                renew_url=f"{settings.frontend_base}/plans",
            )
            sent += 1

        await self.db.commit()
        if sent:
            logger.info(f"Queued {sent} expiry reminders")
        return sent
