# apps/api/learnhub/db/models/subscription.py
"""
SQLAlchemy Subscription Model - LearnHub
A user's time-bounded access grant derived from a Plan.
Price and plan terms are frozen at checkout (price + plan_snapshot).
"""

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from learnhub.core.enums import Currency, PlanKind, SubscriptionStatus
from learnhub.db.base import Base, TimestampMixin
from learnhub.db.models.mixins import UUIDMixin, enum_column
from learnhub.db.models.utils import ensure_utc, utc_now


class Subscription(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_user_id_course_id", "user_id", "course_id"),
        Index("ix_subscriptions_status_end_date", "status", "end_date"),
        Index("ix_subscriptions_plan_id", "plan_id"),
        # One open grant per (user, course); period plans have no course_id
        Index(
            "uq_subscriptions_open_course",
            "user_id",
            "course_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'active')"),
            sqlite_where=text("status IN ('pending', 'active')"),
        ),
        CheckConstraint("end_date >= start_date", name="ck_subscriptions_window"),
    )

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_email: Mapped[str] = mapped_column(String(320), nullable=False)

    plan_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False
    )
    # Denormalized for fast filtering
    plan_kind: Mapped[PlanKind] = mapped_column(enum_column(PlanKind), nullable=False)
    course_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    plan_snapshot: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    status: Mapped[SubscriptionStatus] = mapped_column(
        enum_column(SubscriptionStatus), nullable=False, default=SubscriptionStatus.PENDING
    )

    # Frozen pricing (minor units)
    list_price: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[Currency] = mapped_column(enum_column(Currency, length=3), nullable=False)

    is_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    auto_renewal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Progress
    completed_lessons: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_lessons: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    progress_percent: Mapped[float] = mapped_column(nullable=False, default=0.0)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Cancellation
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    expiry_notification_sent: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    rating: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @property
    def is_current(self) -> bool:
        """Active and inside its validity window right now."""
        now = utc_now()
        return (
            self.status == SubscriptionStatus.ACTIVE
            and ensure_utc(self.start_date) <= now < ensure_utc(self.end_date)
        )

    @property
    def days_remaining(self) -> int:
        if self.status != SubscriptionStatus.ACTIVE:
            return 0
        remaining = ensure_utc(self.end_date) - utc_now()
        return max(0, remaining.days + (1 if remaining.seconds else 0))

    def grants_course(self, course_id: str) -> bool:
        """Access check against the terms frozen at checkout."""
        if not self.is_current:
            return False
        if self.plan_kind == PlanKind.COURSE:
            return self.course_id == course_id
        excluded = self.plan_snapshot.get("excluded_course_ids") or []
        if course_id in excluded:
            return False
        return bool(self.plan_snapshot.get("includes_all_courses") or excluded)
