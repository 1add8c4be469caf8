# apps/api/learnhub/db/models/__init__.py
"""
Central aggregator / namespace for all SQLAlchemy models in LearnHub.

Recommended usage:
    from learnhub.db.models import Plan, Subscription, Payment, AuditLog

Import order inside this file is important (dependency order):
1. Base (always first)
2. Plan (no dependencies)
3. Subscription (→ Plan), Payment (→ Subscription, Plan)
4. Audit / history models (last)
"""

from learnhub.db.base import Base

from .plan import Plan
from .subscription import Subscription
from .payment import Payment
from .audit import AuditLog

__all__ = [
    "Base",
    "Plan",
    "Subscription",
    "Payment",
    "AuditLog",
]
