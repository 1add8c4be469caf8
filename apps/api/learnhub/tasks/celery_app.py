# apps/api/learnhub/tasks/celery_app.py
"""
Celery application for LearnHub background work.
Worker:  celery -A learnhub.tasks.celery_app worker -l info
Beat:    celery -A learnhub.tasks.celery_app beat -l info
"""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from celery import Celery
from celery.schedules import crontab

from learnhub.core.config import settings
from learnhub.db.session import engine

logger = logging.getLogger(__name__)

T = TypeVar("T")

celery_app = Celery(
    "learnhub",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "learnhub.services.logging",
        "learnhub.tasks.notifications",
        "learnhub.tasks.subscriptions",
        "learnhub.tasks.statistics",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_always_eager=settings.ENVIRONMENT == "test",
)

# ────────────────────────────────────────────────
# Periodic jobs
# ────────────────────────────────────────────────
celery_app.conf.beat_schedule = {
    "expire-subscriptions": {
        "task": "learnhub.tasks.subscriptions.expire_subscriptions",
        "schedule": float(settings.EXPIRATION_SWEEP_INTERVAL_SECONDS),
    },
    "send-expiry-reminders": {
        "task": "learnhub.tasks.subscriptions.send_expiry_reminders",
        "schedule": crontab(hour=9, minute=0),
    },
    "recompute-plan-statistics": {
        "task": "learnhub.tasks.statistics.recompute_statistics",
        "schedule": crontab(hour=3, minute=30),
    },
}


def run_async(job: Callable[[], Awaitable[T]]) -> T:
    """
    Run an async job inside a sync Celery task.
    Each task gets a fresh event loop, so pooled connections from the previous
    loop are disposed once the job finishes.
    """
    async def _runner() -> T:
        try:
            return await job()
        finally:
            await engine.dispose()

    return asyncio.run(_runner())
