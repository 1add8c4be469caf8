# apps/api/learnhub/services/events.py
"""
Outbound side effects of state transitions.

Services never send email or write audit rows inline: each transition appends
events to an outbox, and the caller hands the outbox to an EventDispatcher
after the transition is committed. Dispatch is fire-and-forget; a failure to
enqueue is logged and never reaches the transition.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import uuid4

import sentry_sdk

from learnhub.core.enums import NotificationKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationEvent:
    kind: NotificationKind
    recipient: str
    template_data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuditEvent:
    action: str
    user_id: Optional[str] = None
    entity: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid4()))


OutboundEvent = Union[NotificationEvent, AuditEvent]


class Outbox(list):
    """Ordered list of events produced by one unit of work."""

    def notify(self, kind: NotificationKind, recipient: Optional[str], **template_data: Any) -> None:
        if not recipient:
            logger.debug(f"Skipping {kind.value} notification: no recipient")
            return
        self.append(NotificationEvent(kind=kind, recipient=recipient, template_data=template_data))

    def audit(
        self,
        action: str,
        user_id: Optional[str] = None,
        entity: Optional[str] = None,
        entity_id: Any = None,
        **metadata: Any,
    ) -> None:
        self.append(
            AuditEvent(
                action=action,
                user_id=user_id,
                entity=entity,
                entity_id=str(entity_id) if entity_id is not None else None,
                metadata=metadata,
            )
        )

    def notifications(self) -> List[NotificationEvent]:
        return [e for e in self if isinstance(e, NotificationEvent)]

    def audits(self) -> List[AuditEvent]:
        return [e for e in self if isinstance(e, AuditEvent)]


class EventDispatcher:
    """Queues each event as a Celery task."""

    def dispatch(self, events: Iterable[OutboundEvent]) -> None:
        from learnhub.services.logging import audit_log_task
        from learnhub.tasks.notifications import send_notification_task

        for event in list(events):
            try:
                if isinstance(event, NotificationEvent):
                    send_notification_task.delay(
                        kind=event.kind.value,
                        recipient=event.recipient,
                        template_data=event.template_data,
                    )
                else:
                    audit_log_task.delay(
                        action=event.action,
                        user_id=event.user_id,
                        entity=event.entity,
                        entity_id=event.entity_id,
                        metadata=event.metadata,
                        event_id=event.event_id,
                    )
            except Exception as exc:
                logger.exception(f"Failed to queue outbound event {event!r}")
                sentry_sdk.capture_exception(exc)


_dispatcher = EventDispatcher()


def get_dispatcher() -> EventDispatcher:
    """FastAPI dependency (overridden in tests)."""
    return _dispatcher
