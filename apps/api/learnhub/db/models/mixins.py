# apps/api/learnhub/db/models/mixins.py
"""
Reusable SQLAlchemy mixins for LearnHub models.
- UUID primary key
- Slug field (URL-friendly identifier)
- Enum column helper storing enum values (not names)

Usage example:
    class Plan(Base, UUIDMixin, TimestampMixin, SlugMixin):
        ...
"""

from __future__ import annotations

from enum import Enum
from typing import Type
from uuid import UUID, uuid4

from sqlalchemy import Enum as SQLEnum
from sqlalchemy import String, Uuid
from sqlalchemy.orm import Mapped, mapped_column


class UUIDMixin:
    """
    Mixin that uses UUIDv4 as primary key instead of autoincrement int.
    Generated client-side so ids are known before flush.
    """
    id: Mapped[UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid4,
        comment="Unique identifier (UUIDv4)"
    )


class SlugMixin:
    """
    Mixin for URL-friendly slug field with uniqueness constraint.
    Use generate_unique_slug() from utils.py to create safe slugs.
    """
    slug: Mapped[str] = mapped_column(
        String(120),
        unique=True,
        nullable=False,
        index=True,
        comment="URL-friendly identifier (auto-generated from name if empty)"
    )


def enum_column(enum_cls: Type[Enum], length: int = 20) -> SQLEnum:
    """
    Portable enum type: VARCHAR + CHECK, persisting `.value` so rows read
    back as enum members on both PostgreSQL and SQLite.
    """
    return SQLEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
