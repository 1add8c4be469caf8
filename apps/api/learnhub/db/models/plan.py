# apps/api/learnhub/db/models/plan.py
"""
SQLAlchemy Plan Model - LearnHub
Purchasable offers: a single course for a fixed window, or a time period
covering the whole catalogue (optionally minus excluded courses).
Counters are only ever changed through atomic UPDATEs (see services/statistics.py).
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    and_,
    or_,
)
from sqlalchemy.orm import Mapped, mapped_column

from learnhub.core.enums import Currency, PlanKind
from learnhub.db.base import Base, TimestampMixin
from learnhub.db.models.mixins import SlugMixin, UUIDMixin, enum_column
from learnhub.db.models.utils import apply_discount, ensure_utc, utc_now


class Plan(Base, UUIDMixin, TimestampMixin, SlugMixin):
    """
    Subscription Plan Entity
    - kind=course: bound to one course_id (one active plan per course)
    - kind=period: includes_all_courses and/or an exclusion list
    - price is in minor units; discount is applied at checkout and frozen
      on the subscription
    """
    __tablename__ = "plans"
    __table_args__ = (
        Index("ix_plans_kind_is_active", "kind", "is_active"),
        Index("ix_plans_course_id", "course_id"),
        Index("ix_plans_sort_order", "sort_order"),
    )

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    kind: Mapped[PlanKind] = mapped_column(enum_column(PlanKind), nullable=False)

    # Pricing (minor units)
    price: Mapped[int] = mapped_column(Integer, nullable=False, comment="Price in minor units")
    currency: Mapped[Currency] = mapped_column(
        enum_column(Currency, length=3), nullable=False, default=Currency.UAH
    )
    discount_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration_months: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Scope
    course_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, comment="Bound course (kind=course only)"
    )
    includes_all_courses: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    excluded_course_ids: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    features: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Availability
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    available_from: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    available_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    max_subscriptions: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="0 = unlimited"
    )

    # Counters (Statistics Aggregator only)
    current_subscriptions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    purchases_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_revenue: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_refunded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rating_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rating_sum: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Presentation
    is_popular: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        return (
            f"<Plan(slug={self.slug}, kind={self.kind}, price={self.price} {self.currency}, "
            f"active={self.is_active})>"
        )

    @property
    def discounted_price(self) -> int:
        return apply_discount(self.price, self.discount_percent or 0)

    @property
    def discount_amount(self) -> int:
        return self.price - self.discounted_price

    @property
    def average_rating(self) -> float:
        if not self.rating_count:
            return 0.0
        return round(self.rating_sum / self.rating_count, 2)

    def is_available_now(self, now: Optional[datetime] = None) -> bool:
        """Derived at read time; never persisted."""
        now = ensure_utc(now) or utc_now()
        available_from = ensure_utc(self.available_from)
        available_until = ensure_utc(self.available_until)

        if not (self.is_active and self.is_available):
            return False
        if available_from is not None and now < available_from:
            return False
        if available_until is not None and now > available_until:
            return False
        return self.max_subscriptions == 0 or self.current_subscriptions < self.max_subscriptions

    @classmethod
    def available_clause(cls, now: datetime):
        """SQL rendering of is_available_now() for list filters."""
        return and_(
            cls.is_active.is_(True),
            cls.is_available.is_(True),
            or_(cls.available_from.is_(None), cls.available_from <= now),
            or_(cls.available_until.is_(None), cls.available_until >= now),
            or_(cls.max_subscriptions == 0, cls.current_subscriptions < cls.max_subscriptions),
        )

    def includes_course(self, course_id: str) -> bool:
        if self.kind == PlanKind.COURSE:
            return self.course_id == course_id
        if course_id in (self.excluded_course_ids or []):
            return False
        return bool(self.includes_all_courses or self.excluded_course_ids)
