# apps/api/learnhub/services/email.py
"""
SendGrid Email Service - LearnHub
Billing notifications (payment success/failure/refund, subscription
cancelled/expired/expiring) through SendGrid dynamic templates, with a
plain-text fallback when no template id is configured for a kind.
Queued through Celery (tasks/notifications.py); never called inline from
a state transition.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Content, Email, Mail, Personalization, To

from learnhub.core.config import settings
from learnhub.core.enums import NotificationKind

logger = logging.getLogger(__name__)

sendgrid_client = SendGridAPIClient(settings.SENDGRID_API_KEY.get_secret_value())

SUBJECTS: Dict[NotificationKind, str] = {
    NotificationKind.PAYMENT_SUCCESS: "Payment received – your subscription is active",
    NotificationKind.PAYMENT_FAILED: "Payment failed – please try again",
    NotificationKind.PAYMENT_REFUNDED: "Your refund has been processed",
    NotificationKind.SUBSCRIPTION_CANCELLED: "Your subscription has been cancelled",
    NotificationKind.SUBSCRIPTION_EXPIRED: "Your subscription has ended",
    NotificationKind.SUBSCRIPTION_EXPIRING: "Your subscription ends soon",
}


async def send_email(
    to: str,
    subject: str,
    template_id: Optional[str] = None,
    dynamic_data: Optional[Dict[str, Any]] = None,
    plain_text: Optional[str] = None,
    from_email: str = settings.EMAIL_FROM,
) -> Dict[str, Any]:
    """
    Core async email sending function.
    Prioritizes: dynamic template → plain text fallback.
    """
    message = Mail(from_email=Email(from_email, settings.EMAIL_FROM_NAME), subject=subject)
    to_email = To(to)

    if template_id:
        personalization = Personalization()
        personalization.add_to(to_email)
        personalization.dynamic_template_data = dynamic_data or {}
        message.add_personalization(personalization)
        message.template_id = template_id
    else:
        message.to = [to_email]
        message.add_content(Content("text/plain", plain_text or subject))

    try:
        response = await asyncio.to_thread(sendgrid_client.send, message)

        status_code = response.status_code
        if status_code not in (200, 202):
            raise ValueError(f"SendGrid returned {status_code}: {response.body}")

        logger.info(f"Email sent to {to}: {subject} (status: {status_code})")
        return {
            "status": "success",
            "status_code": status_code,
            "message_id": response.headers.get("X-Message-Id"),
        }

    except Exception:
        logger.exception(f"Failed to send email to {to}: {subject}")
        raise


def render_plain_text(kind: NotificationKind, data: Dict[str, Any]) -> str:
    lines = [SUBJECTS[kind], ""]
    for key, value in sorted(data.items()):
        if value is not None:
            lines.append(f"{key.replace('_', ' ').capitalize()}: {value}")
    lines.extend(["", f"{settings.frontend_base}/account/subscriptions"])
    return "\n".join(lines)


async def send_notification(kind: str, recipient: str, template_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Notification collaborator: one email per lifecycle event."""
    kind = NotificationKind(kind)
    data = dict(template_data or {})
    data.setdefault("frontend_url", settings.frontend_base)

    return await send_email(
        to=recipient,
        subject=SUBJECTS[kind],
        template_id=settings.SENDGRID_TEMPLATES.get(kind.value),
        dynamic_data=data,
        plain_text=render_plain_text(kind, data),
    )
