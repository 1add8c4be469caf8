# apps/api/learnhub/tasks/subscriptions.py
"""
Periodic subscription jobs: the expiration sweep and expiry reminders.
Both are safe to run concurrently with each other and with themselves;
every row change is a guarded UPDATE.
"""

import logging
from typing import Dict

from celery import shared_task

from learnhub.db.session import async_session_factory
from learnhub.monitoring.metrics import subscriptions_swept_total
from learnhub.services.events import Outbox, get_dispatcher
from learnhub.services.subscriptions import SubscriptionService
from learnhub.tasks.celery_app import run_async

logger = logging.getLogger(__name__)


async def sweep_expired_subscriptions(session_factory=async_session_factory) -> Dict[str, int]:
    dispatcher = get_dispatcher()
    async with session_factory() as db:
        counts = await SubscriptionService(db).expire_due(on_commit=dispatcher.dispatch)

    for status in ("expired", "cancelled"):
        if counts[status]:
            subscriptions_swept_total.labels(status=status).inc(counts[status])
    return counts


async def queue_expiry_reminders(session_factory=async_session_factory) -> int:
    outbox = Outbox()
    async with session_factory() as db:
        sent = await SubscriptionService(db, outbox).notify_expiring()

    get_dispatcher().dispatch(outbox)
    return sent


@shared_task(
    name="learnhub.tasks.subscriptions.expire_subscriptions",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    retry_backoff=True,
    acks_late=True,
)
def expire_subscriptions(self):
    """Move elapsed active subscriptions to expired (or cancelled when scheduled)."""
    try:
        return run_async(sweep_expired_subscriptions)
    except Exception as exc:
        logger.exception("Expiration sweep failed")
        raise self.retry(exc=exc)


@shared_task(
    name="learnhub.tasks.subscriptions.send_expiry_reminders",
    bind=True,
    max_retries=3,
    default_retry_delay=300,
    retry_backoff=True,
    acks_late=True,
)
def send_expiry_reminders(self):
    try:
        return run_async(queue_expiry_reminders)
    except Exception as exc:
        logger.exception("Expiry reminder job failed")
        raise self.retry(exc=exc)
