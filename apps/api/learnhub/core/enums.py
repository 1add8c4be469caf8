"""
Shared enums for LearnHub
Closed string enums for every status and category stored in the database.
"""

from enum import Enum


class PlanKind(str, Enum):
    """What a plan grants access to"""
    COURSE = "course"
    PERIOD = "period"


class Currency(str, Enum):
    UAH = "UAH"
    USD = "USD"
    EUR = "EUR"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states"""
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Payment lifecycle states"""
    CREATED = "created"
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class GatewayStatus(str, Enum):
    """Invoice statuses reported by the acquiring gateway"""
    CREATED = "created"
    PROCESSING = "processing"
    HOLD = "hold"
    SUCCESS = "success"
    FAILURE = "failure"
    REVERSED = "reversed"
    EXPIRED = "expired"


class NotificationKind(str, Enum):
    """Outbound email notifications"""
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REFUNDED = "payment_refunded"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    SUBSCRIPTION_EXPIRING = "subscription_expiring"
