"""
Audit Logging Service - LearnHub
Immutable, retryable audit trail for billing-relevant actions:
payment transitions, refunds, cancellations, plan changes, admin operations.
"""

import json
import logging
import uuid
from typing import Any, Dict, Optional

from celery import shared_task
from fastapi import Request
from sqlalchemy import select

from learnhub.db.models.audit import AuditLog
from learnhub.db.models.utils import utc_now
from learnhub.db.session import async_session_factory
from learnhub.tasks.celery_app import run_async

logger = logging.getLogger(__name__)


async def write_audit_entry(
    action: str,
    user_id: Optional[str] = None,
    entity: Optional[str] = None,
    entity_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    event_id: Optional[str] = None,
    session_factory=async_session_factory,
) -> bool:
    """
    Insert one AuditLog row. Returns False when `event_id` was already
    written (task redelivery).
    """
    event_id = event_id or str(uuid.uuid4())

    async with session_factory() as db:
        exists = await db.scalar(select(AuditLog.id).where(AuditLog.event_id == event_id))
        if exists is not None:
            return False

        db.add(
            AuditLog(
                event_id=event_id,
                user_id=user_id,
                action=action,
                entity=entity,
                entity_id=entity_id,
                event_metadata=metadata or {},
                created_at=utc_now(),
            )
        )
        await db.commit()

    logger.info(
        f"AUDIT [{event_id}]: {action}",
        extra={
            "user_id": user_id,
            "entity": entity,
            "entity_id": entity_id,
            "metadata": json.dumps(metadata or {}, default=str),
        },
    )
    return True


@shared_task(
    name="learnhub.tasks.logging.audit_log",
    bind=True,
    max_retries=5,
    default_retry_delay=30,       # seconds
    retry_backoff=True,
    retry_jitter=True,
    acks_late=True,
)
def audit_log_task(
    self,
    action: str,                        # required - first
    user_id: Optional[str] = None,
    entity: Optional[str] = None,
    entity_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    event_id: Optional[str] = None,     # deduplicates retries
):
    """
    Celery task: create immutable audit log entry.
    Retries on DB failure, ensures delivery.
    """
    try:
        run_async(
            lambda: write_audit_entry(
                action=action,
                user_id=user_id,
                entity=entity,
                entity_id=entity_id,
                metadata=metadata,
                event_id=event_id,
            )
        )
    except Exception as exc:
        logger.exception(f"Audit log failed for action '{action}' (event_id={event_id})")
        raise self.retry(exc=exc)


# ────────────────────────────────────────────────
# Public sync wrapper (queues Celery task)
# ────────────────────────────────────────────────
def audit_log(
    action: str,
    user_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
    entity: Optional[str] = None,
    entity_id: Optional[str] = None,
):
    """
    Convenience sync caller for routes and middleware: adds request context
    (IP, user-agent, request id) to the metadata and queues the task.
    Never raises.
    """
    metadata = dict(metadata or {})
    if request is not None:
        metadata.setdefault("ip", request.client.host if request.client else None)
        metadata.setdefault("user_agent", request.headers.get("user-agent"))
        metadata.setdefault("request_id", getattr(request.state, "request_id", None))

    try:
        audit_log_task.delay(
            action=action,
            user_id=user_id,
            entity=entity,
            entity_id=entity_id,
            metadata=metadata,
            event_id=str(uuid.uuid4()),
        )
    except Exception:
        logger.exception(f"Failed to queue audit entry '{action}'")
