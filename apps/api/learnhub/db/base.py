# apps/api/learnhub/db/base.py
"""
SQLAlchemy declarative base and common mixins for LearnHub.
All models should inherit from Base (and optionally TimestampMixin).

This file defines:
- Abstract Base class (never mapped to a table)
- TimestampMixin for automatic created_at / updated_at
- No automatic table name generation (explicit __tablename__ is safer)
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """
    Abstract base class for all SQLAlchemy models in LearnHub.

    - __abstract__ = True → prevents Base from being mapped as a table
    - No automatic table name generation (define __tablename__ explicitly in models)
    """

    __abstract__ = True

    def __repr__(self) -> str:
        """Safe, readable representation (avoids loading large relationships)."""
        fields = ", ".join(
            f"{k}={v!r}"
            for k, v in self.__dict__.items()
            if not k.startswith("_") and v is not None
        )
        return f"{self.__class__.__name__}({fields})"

    def __str__(self) -> str:
        return self.__repr__()


# ────────────────────────────────────────────────
# Timestamp Mixin (recommended for most models)
# ────────────────────────────────────────────────
class TimestampMixin:
    """
    Mixin that adds automatic created_at / updated_at timestamps.

    Usage:
        class Plan(Base, TimestampMixin):
            ...
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        comment="When the record was created (UTC)"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
        index=True,
        comment="When the record was last updated (UTC)"
    )
