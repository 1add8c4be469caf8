# apps/api/learnhub/db/models/audit.py
"""
AuditLog model for LearnHub
Append-only trail of billing-relevant actions: payment transitions, refunds,
subscription cancellations, statistics recomputes, admin operations.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from learnhub.db.base import Base
from learnhub.db.models.mixins import UUIDMixin


class AuditLog(Base, UUIDMixin):
    """
    Audit Log Entry
    - Immutable record of user/system actions
    - `entity` + `entity_id` point at the plan/subscription/payment involved
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_user_id_action", "user_id", "action"),
        Index("ix_audit_entity", "entity", "entity_id"),
    )

    event_id: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        unique=True,
        comment="Producer-side id (deduplicates task retries)"
    )

    # Who performed the action (null = system/gateway)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    action: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        index=True,
        comment="Action identifier (e.g. 'payment_succeeded', 'subscription_cancelled')"
    )
    entity: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    event_metadata: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        default=dict,
        comment="Structured context (amounts, statuses, reasons)"
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
        comment="When the action occurred (UTC)"
    )

    def __repr__(self) -> str:
        fields = [f"id={self.id}", f"action={self.action!r}"]
        if self.entity_id:
            fields.append(f"{self.entity}={self.entity_id}")
        return f"<AuditLog({' '.join(fields)})>"
