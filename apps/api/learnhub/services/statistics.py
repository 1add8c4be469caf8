# apps/api/learnhub/services/statistics.py
"""
Statistics Aggregator - LearnHub
Plan-level counters: purchases, revenue, refunds, active subscriptions, ratings.

Two modes:
- incremental: single `UPDATE plans SET col = col ± n` statements, run inside a
  SAVEPOINT so a failure is logged and never rolls back the caller's transition
- full recompute: rebuilds every counter from subscriptions/payments
"""

import logging
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from learnhub.core.enums import PaymentStatus, SubscriptionStatus
from learnhub.core.exceptions import NotFoundError
from learnhub.db.models import Payment, Plan, Subscription

logger = logging.getLogger(__name__)

# Payments that were collected at some point
COLLECTED_STATUSES = (PaymentStatus.SUCCESS, PaymentStatus.REFUNDED)


class StatisticsService:
    def __init__(self, db: AsyncSession):
        self.db = db

    # ────────────────────────────────────────────────
    # Incremental (hot path)
    # ────────────────────────────────────────────────
    async def _increment(self, plan_id: UUID, label: str, *conditions, **deltas: int) -> bool:
        values = {name: getattr(Plan, name) + delta for name, delta in deltas.items()}
        try:
            async with self.db.begin_nested():
                await self.db.execute(
                    update(Plan)
                    .where(Plan.id == plan_id, *conditions)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError:
            logger.exception(
                f"Statistics update '{label}' failed for plan {plan_id}",
                extra={"plan_id": str(plan_id), "deltas": deltas},
            )
            return False
        return True

    async def record_purchase(self, plan_id: UUID, amount: int, activated: bool = True) -> bool:
        """First-time payment success: one purchase, revenue and (normally) one active grant."""
        return await self._increment(
            plan_id,
            "purchase",
            purchases_count=1,
            total_revenue=amount,
            current_subscriptions=1 if activated else 0,
        )

    async def record_refund(self, plan_id: UUID, amount: int) -> bool:
        return await self._increment(
            plan_id,
            "refund",
            total_revenue=-amount,
            total_refunded=amount,
        )

    async def increment_active(self, plan_id: UUID, n: int = 1) -> bool:
        return await self._increment(plan_id, "increment_active", current_subscriptions=n)

    async def decrement_active(self, plan_id: UUID, n: int = 1) -> bool:
        return await self._increment(
            plan_id,
            "decrement_active",
            Plan.current_subscriptions >= n,
            current_subscriptions=-n,
        )

    async def add_rating(self, plan_id: UUID, rating: int) -> bool:
        return await self._increment(plan_id, "add_rating", rating_count=1, rating_sum=rating)

    async def replace_rating(self, plan_id: UUID, old_rating: int, new_rating: int) -> bool:
        return await self._increment(plan_id, "replace_rating", rating_sum=new_rating - old_rating)

    # ────────────────────────────────────────────────
    # Full recompute (admin / scheduled drift correction)
    # ────────────────────────────────────────────────
    async def compute_plan_counters(self, plan_id: UUID) -> Dict[str, int]:
        """Counters as they should be, derived from subscriptions and payments."""
        payments = (
            await self.db.execute(
                select(
                    func.count(Payment.id),
                    func.coalesce(func.sum(Payment.final_amount - Payment.refunded_amount), 0),
                    func.coalesce(func.sum(Payment.refunded_amount), 0),
                ).where(Payment.plan_id == plan_id, Payment.status.in_(COLLECTED_STATUSES))
            )
        ).one()

        subscriptions = (
            await self.db.execute(
                select(
                    func.coalesce(
                        func.sum(
                            case(
                                (
                                    (Subscription.status == SubscriptionStatus.ACTIVE)
                                    & (Subscription.cancel_at_period_end.is_(False)),
                                    1,
                                ),
                                else_=0,
                            )
                        ),
                        0,
                    ),
                    func.count(Subscription.rating),
                    func.coalesce(func.sum(Subscription.rating), 0),
                ).where(Subscription.plan_id == plan_id)
            )
        ).one()

        return {
            "purchases_count": int(payments[0]),
            "total_revenue": int(payments[1]),
            "total_refunded": int(payments[2]),
            "current_subscriptions": int(subscriptions[0]),
            "rating_count": int(subscriptions[1]),
            "rating_sum": int(subscriptions[2]),
        }

    async def recompute_plan(self, plan_id: UUID, commit: bool = True) -> Dict[str, int]:
        """Overwrite a plan's counters with values derived from source truth. Idempotent."""
        exists = await self.db.scalar(select(Plan.id).where(Plan.id == plan_id))
        if exists is None:
            raise NotFoundError("Plan not found")

        counters = await self.compute_plan_counters(plan_id)
        await self.db.execute(
            update(Plan)
            .where(Plan.id == plan_id)
            .values(**counters)
            .execution_options(synchronize_session=False)
        )
        if commit:
            await self.db.commit()

        logger.info(f"Recomputed statistics for plan {plan_id}", extra={"counters": counters})
        return counters

    async def recompute_all(self) -> Dict[str, Any]:
        """
        Recompute every plan, committing per plan.
        A failing plan is logged and skipped; the rest still run.
        """
        plan_ids: List[UUID] = list((await self.db.scalars(select(Plan.id))).all())
        failed: List[str] = []

        for plan_id in plan_ids:
            try:
                await self.recompute_plan(plan_id)
            except SQLAlchemyError:
                await self.db.rollback()
                failed.append(str(plan_id))
                logger.exception(f"Statistics recompute failed for plan {plan_id}")

        logger.info(
            f"Statistics recompute finished: {len(plan_ids) - len(failed)}/{len(plan_ids)} plans",
            extra={"failed": failed},
        )
        return {"plans": len(plan_ids), "recomputed": len(plan_ids) - len(failed), "failed": failed}

    async def plan_summary(self, plan_id: UUID) -> Optional[Dict[str, Any]]:
        plan = await self.db.get(Plan, plan_id, populate_existing=True)
        if plan is None:
            return None
        return {
            "plan_id": str(plan.id),
            "purchases_count": plan.purchases_count,
            "total_revenue": plan.total_revenue,
            "total_refunded": plan.total_refunded,
            "current_subscriptions": plan.current_subscriptions,
            "average_rating": plan.average_rating,
            "rating_count": plan.rating_count,
        }
