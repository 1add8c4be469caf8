# apps/api/learnhub/db/models/payment.py
"""
SQLAlchemy Payment Model - LearnHub
One attempt to collect money for a Subscription through the acquiring gateway.
After creation the row is mutated only through status-guarded UPDATEs
(see services/transitions.py).
"""

import math
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from learnhub.core.enums import Currency, PaymentStatus
from learnhub.db.base import Base, TimestampMixin
from learnhub.db.models.mixins import UUIDMixin, enum_column
from learnhub.db.models.utils import ensure_utc, utc_now


class Payment(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "payments"
    __table_args__ = (
        Index("ix_payments_invoice_id", "invoice_id", unique=True),
        Index("ix_payments_subscription_id", "subscription_id"),
        Index("ix_payments_user_id", "user_id"),
        Index("ix_payments_status", "status"),
        CheckConstraint("final_amount = amount - discount_amount", name="ck_payments_final_amount"),
        CheckConstraint("final_amount >= 0", name="ck_payments_final_amount_non_negative"),
        CheckConstraint("refunded_amount <= final_amount", name="ck_payments_refund_bound"),
    )

    subscription_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("subscriptions.id", ondelete="RESTRICT"), nullable=False
    )
    plan_id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Amounts (minor units)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    final_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[Currency] = mapped_column(enum_column(Currency, length=3), nullable=False)

    status: Mapped[PaymentStatus] = mapped_column(
        enum_column(PaymentStatus), nullable=False, default=PaymentStatus.CREATED
    )
    attempt_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Gateway data
    invoice_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, comment="RRN")
    approval_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    payment_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_link_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Refunds
    refunded_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Payment(id={self.id}, invoice={self.invoice_id}, status={self.status}, "
            f"final_amount={self.final_amount} {self.currency})>"
        )

    @property
    def refundable_amount(self) -> int:
        return max(0, self.final_amount - (self.refunded_amount or 0))

    @property
    def link_expires_in_minutes(self) -> int:
        """Minutes until the payment link stops working (0 once expired)."""
        expires_at = ensure_utc(self.payment_link_expires_at)
        if expires_at is None:
            return 0
        seconds = (expires_at - utc_now()).total_seconds()
        return max(0, math.ceil(seconds / 60))

    @property
    def is_link_expired(self) -> bool:
        return self.link_expires_in_minutes == 0
