# apps/api/learnhub/db/models/utils.py
"""
Utility functions and helpers for SQLAlchemy models in LearnHub.
Contains slug generation, uniqueness checks, UTC time helpers and money math.
"""

import re
import secrets
import unicodedata
from datetime import datetime, timezone
from typing import Optional, Type

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession


# ────────────────────────────────────────────────
# Time helpers
# ────────────────────────────────────────────────
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes (SQLite drops tzinfo on read).
    Aware values are converted to UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ────────────────────────────────────────────────
# Money helpers (integer minor units)
# ────────────────────────────────────────────────
def apply_discount(price: int, discount_percent: int) -> int:
    """
    Discounted price in minor units, rounded half-up.

    Example:
        apply_discount(1000, 10) → 900
        apply_discount(999, 33) → 669
    """
    if discount_percent <= 0:
        return price
    return (price * (100 - discount_percent) + 50) // 100


# ────────────────────────────────────────────────
# Slugs
# ────────────────────────────────────────────────
def generate_slug(
    text: str,
    max_length: int = 100,
    prefix: Optional[str] = None,
    separator: str = "-"
) -> str:
    """
    Generate URL-safe slug from text (e.g. plan name → slug).

    Example:
        generate_slug("Premium 6 Months!") → "premium-6-months"
    """
    if not text:
        return ""

    # Normalize unicode → ASCII, remove accents
    text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    text = re.sub(r"[^a-z0-9]+", separator, text.lower())
    text = text.strip(separator)[:max_length]

    if prefix:
        text = f"{prefix}{text}"

    return text


async def is_slug_unique(
    slug: str,
    model_class: Type,
    db: AsyncSession,
    exclude_id=None,
) -> bool:
    """
    Check if a slug is unique in the given model table.
    Optionally exclude a record ID (for updates).
    """
    stmt = select(model_class.id).where(model_class.slug == slug)
    if exclude_id is not None:
        stmt = stmt.where(model_class.id != exclude_id)

    result = await db.execute(stmt)
    return result.first() is None


async def generate_unique_slug(
    text: str,
    model_class: Type,
    db: AsyncSession,
    exclude_id=None,
    max_length: int = 100,
    max_attempts: int = 10,
    suffix_length: int = 6,
) -> str:
    """
    Generate a unique slug based on text.
    Appends short random hex suffix if collision occurs.

    Raises:
        ValueError if no unique slug found after max_attempts
    """
    base_slug = generate_slug(text, max_length=max_length) or "plan"

    if await is_slug_unique(base_slug, model_class, db, exclude_id):
        return base_slug

    candidate = base_slug
    for _ in range(max_attempts):
        suffix = secrets.token_hex(suffix_length)[:suffix_length]
        candidate = f"{base_slug}-{suffix}"[:max_length + suffix_length + 1]
        if await is_slug_unique(candidate, model_class, db, exclude_id):
            return candidate

    raise ValueError(
        f"Could not generate unique slug for '{text}' after {max_attempts} attempts. "
        f"Last tried: {candidate}"
    )
