# apps/api/learnhub/tasks/statistics.py
"""
Nightly rebuild of per-plan counters from subscriptions and payments.
Corrects any drift left by non-fatal counter update failures.
"""

import logging
from typing import Any, Dict, Optional
from uuid import UUID

from celery import shared_task

from learnhub.core.exceptions import NotFoundError
from learnhub.db.session import async_session_factory
from learnhub.services.statistics import StatisticsService
from learnhub.tasks.celery_app import run_async

logger = logging.getLogger(__name__)


@shared_task(
    name="learnhub.tasks.statistics.recompute_statistics",
    bind=True,
    max_retries=2,
    default_retry_delay=600,
    acks_late=True,
)
def recompute_statistics(self, plan_id: Optional[str] = None) -> Dict[str, Any]:
    async def _process() -> Dict[str, Any]:
        async with async_session_factory() as db:
            service = StatisticsService(db)
            if plan_id:
                counters = await service.recompute_plan(UUID(plan_id))
                return {"plans": 1, "recomputed": 1, "failed": [], "counters": counters}
            return await service.recompute_all()

    try:
        return run_async(_process)
    except NotFoundError:
        logger.warning(f"Statistics recompute skipped: plan {plan_id} no longer exists")
        return {"plans": 0, "recomputed": 0, "failed": [plan_id]}
    except Exception as exc:
        logger.exception(f"Statistics recompute failed (plan={plan_id or 'all'})")
        raise self.retry(exc=exc)
