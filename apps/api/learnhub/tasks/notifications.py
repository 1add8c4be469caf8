# apps/api/learnhub/tasks/notifications.py
"""
Celery task delivering billing notifications through SendGrid.
Fire-and-forget from the caller's point of view; retried here on failure.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from celery import shared_task

from learnhub.services.email import send_notification

logger = logging.getLogger(__name__)


@shared_task(
    name="learnhub.tasks.notifications.send_notification",
    bind=True,
    max_retries=5,
    default_retry_delay=60,
    retry_backoff=True,
    retry_jitter=True,
    acks_late=True,
)
def send_notification_task(
    self,
    kind: str,
    recipient: str,
    template_data: Optional[Dict[str, Any]] = None,
):
    try:
        return asyncio.run(send_notification(kind, recipient, template_data))
    except Exception as exc:
        logger.exception(f"Notification '{kind}' to {recipient} failed (attempt {self.request.retries + 1})")
        raise self.retry(exc=exc)
