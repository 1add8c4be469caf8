# apps/api/tests/test_notifications.py
import json

import pytest
from sqlalchemy import func, select

from learnhub.core.config import settings
from learnhub.core.enums import NotificationKind
from learnhub.db.models.audit import AuditLog
from learnhub.services import email
from learnhub.services.events import AuditEvent, EventDispatcher, NotificationEvent, Outbox
from learnhub.services.logging import write_audit_entry


class FakeSendGridResponse:
    def __init__(self, status_code=202):
        self.status_code = status_code
        self.body = b""
        self.headers = {"X-Message-Id": "msg-1"}


@pytest.fixture
def sent(monkeypatch):
    messages = []

    def fake_send(message):
        messages.append(message.get())
        return FakeSendGridResponse()

    monkeypatch.setattr(email.sendgrid_client, "send", fake_send)
    return messages


async def test_plain_text_notification(sent):
    result = await email.send_notification(
        "payment_success", "student@example.com", {"amount": 900, "currency": "UAH", "plan_name": None}
    )

    assert result["status"] == "success"
    assert result["message_id"] == "msg-1"
    [message] = sent
    assert message["subject"] == email.SUBJECTS[NotificationKind.PAYMENT_SUCCESS]
    body = message["content"][0]["value"]
    assert "Amount: 900" in body
    assert "Plan name" not in body


async def test_template_notification(sent, monkeypatch):
    monkeypatch.setattr(settings, "SENDGRID_TEMPLATES_JSON", json.dumps({"subscription_expiring": "d-123"}))

    await email.send_notification("subscription_expiring", "student@example.com", {"days_remaining": 3})

    [message] = sent
    assert message["template_id"] == "d-123"
    data = message["personalizations"][0]["dynamic_template_data"]
    assert data["days_remaining"] == 3
    assert data["frontend_url"] == settings.frontend_base


async def test_sendgrid_rejection_raises(monkeypatch):
    monkeypatch.setattr(email.sendgrid_client, "send", lambda message: FakeSendGridResponse(status_code=400))

    with pytest.raises(ValueError):
        await email.send_notification("payment_failed", "student@example.com", {})


# ────────────────────────────────────────────────
# Audit trail
# ────────────────────────────────────────────────
async def test_audit_entry_is_written_once(session_factory):
    kwargs = dict(action="payment_refunded", user_id="admin-1", entity="payment", entity_id="p-1",
                  metadata={"amount": 300}, event_id="evt-1")

    assert await write_audit_entry(session_factory=session_factory, **kwargs) is True
    assert await write_audit_entry(session_factory=session_factory, **kwargs) is False

    async with session_factory() as db:
        count = await db.scalar(select(func.count(AuditLog.id)).where(AuditLog.event_id == "evt-1"))
    assert count == 1


# ────────────────────────────────────────────────
# Outbox / dispatcher
# ────────────────────────────────────────────────
def test_outbox_skips_notifications_without_recipient():
    outbox = Outbox()
    outbox.notify(NotificationKind.PAYMENT_FAILED, None, reason="declined")
    outbox.notify(NotificationKind.PAYMENT_FAILED, "student@example.com", reason="declined")
    outbox.audit("payment_failed", "user-1", "payment", 42, reason="declined")

    [notification] = outbox.notifications()
    [audit] = outbox.audits()
    assert notification.template_data == {"reason": "declined"}
    assert audit.entity_id == "42"
    assert audit.event_id


def test_dispatcher_queues_tasks_and_survives_broker_errors(monkeypatch):
    from learnhub.services import logging as audit_logging
    from learnhub.tasks import notifications

    queued = []

    def broken_delay(**kwargs):
        raise ConnectionError("broker down")

    monkeypatch.setattr(notifications.send_notification_task, "delay", broken_delay)
    monkeypatch.setattr(audit_logging.audit_log_task, "delay", lambda **kwargs: queued.append(kwargs))

    EventDispatcher().dispatch(
        [
            NotificationEvent(kind=NotificationKind.PAYMENT_SUCCESS, recipient="student@example.com"),
            AuditEvent(action="payment_succeeded", user_id="user-1", event_id="evt-9"),
        ]
    )

    assert [call["event_id"] for call in queued] == ["evt-9"]
