# apps/api/learnhub/services/transitions.py
"""
Explicit state machines for Payment and Subscription.

Each table maps a *target* status to the set of statuses it may be entered
from. Every transition is applied with a single compare-and-set UPDATE
(`... WHERE id = :id AND status IN (:sources)`), so duplicate or
out-of-order deliveries update zero rows instead of overwriting state.
"""

import logging
from typing import Any, Dict, FrozenSet, Mapping, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from learnhub.core.enums import GatewayStatus, PaymentStatus, SubscriptionStatus
from learnhub.db.models import Payment, Subscription

logger = logging.getLogger(__name__)

PAYMENT_TRANSITIONS: Mapping[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.CREATED: frozenset(),
    PaymentStatus.PENDING: frozenset({PaymentStatus.CREATED}),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.CREATED, PaymentStatus.PENDING}),
    PaymentStatus.SUCCESS: frozenset(
        {PaymentStatus.CREATED, PaymentStatus.PENDING, PaymentStatus.PROCESSING}
    ),
    PaymentStatus.FAILED: frozenset(
        {PaymentStatus.CREATED, PaymentStatus.PENDING, PaymentStatus.PROCESSING}
    ),
    PaymentStatus.CANCELLED: frozenset(
        {PaymentStatus.CREATED, PaymentStatus.PENDING, PaymentStatus.PROCESSING}
    ),
    PaymentStatus.REFUNDED: frozenset({PaymentStatus.SUCCESS}),
}

SUBSCRIPTION_TRANSITIONS: Mapping[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.PENDING: frozenset(),
    SubscriptionStatus.ACTIVE: frozenset({SubscriptionStatus.PENDING}),
    SubscriptionStatus.EXPIRED: frozenset({SubscriptionStatus.ACTIVE}),
    SubscriptionStatus.CANCELLED: frozenset(
        {SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE}
    ),
}

# Gateway status → internal target. `created`/`expired` carry no transition.
GATEWAY_STATUS_MAP: Mapping[GatewayStatus, Optional[PaymentStatus]] = {
    GatewayStatus.CREATED: None,
    GatewayStatus.PROCESSING: PaymentStatus.PROCESSING,
    GatewayStatus.HOLD: PaymentStatus.PROCESSING,
    GatewayStatus.SUCCESS: PaymentStatus.SUCCESS,
    GatewayStatus.FAILURE: PaymentStatus.FAILED,
    GatewayStatus.REVERSED: PaymentStatus.REFUNDED,
    GatewayStatus.EXPIRED: PaymentStatus.CANCELLED,
}

TERMINAL_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REFUNDED}
)


def can_transition_payment(current: PaymentStatus, target: PaymentStatus) -> bool:
    return current in PAYMENT_TRANSITIONS[target]


def can_transition_subscription(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return current in SUBSCRIPTION_TRANSITIONS[target]


async def transition_payment(
    db: AsyncSession,
    payment_id,
    target: PaymentStatus,
    values: Optional[Dict[str, Any]] = None,
    extra_conditions=(),
) -> bool:
    """
    Compare-and-set on Payment.status.
    Returns True when this call performed the transition.
    """
    sources = PAYMENT_TRANSITIONS[target]
    if not sources:
        return False

    stmt = (
        update(Payment)
        .where(Payment.id == payment_id, Payment.status.in_(sources), *extra_conditions)
        .values(status=target, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    applied = result.rowcount == 1

    logger.debug(
        f"Payment {payment_id} → {target.value}: {'applied' if applied else 'skipped'}"
    )
    return applied


async def transition_subscription(
    db: AsyncSession,
    subscription_id,
    target: SubscriptionStatus,
    values: Optional[Dict[str, Any]] = None,
    extra_conditions=(),
) -> bool:
    """
    Compare-and-set on Subscription.status.
    `extra_conditions` narrows the guard further (e.g. end_date < now for the sweep).
    """
    sources = SUBSCRIPTION_TRANSITIONS[target]
    if not sources:
        return False

    stmt = (
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.status.in_(sources),
            *extra_conditions,
        )
        .values(status=target, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    applied = result.rowcount == 1

    logger.debug(
        f"Subscription {subscription_id} → {target.value}: {'applied' if applied else 'skipped'}"
    )
    return applied
