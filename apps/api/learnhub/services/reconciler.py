# apps/api/learnhub/services/reconciler.py
"""
Webhook Reconciler - LearnHub
Applies gateway status reports (webhooks or polled statuses) to local
Payment / Subscription state exactly once per meaningful transition.

Deliveries are at-least-once and may arrive out of order. The only
idempotency mechanism is the compare-and-set in services/transitions.py:
a report whose target is not reachable from the payment's current status
updates zero rows and is acknowledged as a duplicate.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from learnhub.core.enums import GatewayStatus, NotificationKind, PaymentStatus
from learnhub.db.models import Payment, Subscription
from learnhub.db.models.utils import ensure_utc, utc_now
from learnhub.integrations.monobank import MonobankClient, canonical_payload
from learnhub.monitoring.metrics import payment_transitions_total
from learnhub.services.events import Outbox
from learnhub.services.payments import PaymentService
from learnhub.services.transitions import GATEWAY_STATUS_MAP, transition_payment

logger = logging.getLogger(__name__)


@dataclass
class GatewayReport:
    """One status report about an invoice, normalised from the gateway payload."""
    invoice_id: str
    status: GatewayStatus
    amount: Optional[int] = None
    approval_code: Optional[str] = None
    rrn: Optional[str] = None
    failure_reason: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "GatewayReport":
        return cls(
            invoice_id=str(payload["invoiceId"]),
            status=GatewayStatus(payload["status"]),
            amount=payload.get("finalAmount", payload.get("amount")),
            approval_code=payload.get("approvalCode"),
            rrn=payload.get("rrn"),
            failure_reason=payload.get("failureReason"),
        )


@dataclass
class ReconciliationResult:
    """
    outcome:
      applied | duplicate | ignored | unknown_invoice | invalid_signature | malformed
    """
    outcome: str
    payment_id: Optional[UUID] = None
    target: Optional[PaymentStatus] = None
    events: Outbox = field(default_factory=Outbox)

    @property
    def applied(self) -> bool:
        return self.outcome == "applied"


class WebhookReconciler:
    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[MonobankClient] = None,
        outbox: Optional[Outbox] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.outbox = outbox if outbox is not None else Outbox()
        self.payments = PaymentService(db, gateway, self.outbox)
        self.subscriptions = self.payments.subscriptions
        self.plan_stats = self.payments.plan_stats

    def _result(self, outcome: str, **kwargs) -> ReconciliationResult:
        return ReconciliationResult(outcome=outcome, events=self.outbox, **kwargs)

    # ────────────────────────────────────────────────
    # Inbound webhook
    # ────────────────────────────────────────────────
    def verify(self, raw_body: bytes, payload: Dict[str, Any], header_signature: Optional[str]) -> bool:
        """
        X-Sign header → HMAC over the raw body.
        Signature in the body → HMAC over the canonical JSON without `signature`.
        """
        if self.gateway is None:
            return False
        if header_signature:
            return self.gateway.verify_signature(raw_body, header_signature)
        return self.gateway.verify_signature(canonical_payload(payload), payload.get("signature"))

    async def handle_webhook(
        self,
        raw_body: bytes,
        header_signature: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReconciliationResult:
        try:
            payload = json.loads(raw_body or b"{}")
            if not isinstance(payload, dict):
                raise ValueError("payload is not an object")
        except ValueError:
            logger.warning("Webhook body is not valid JSON – dropped")
            return self._result("malformed")

        if not self.verify(raw_body, payload, header_signature):
            logger.warning(
                "Webhook signature verification failed – no state change",
                extra={"invoice_id": payload.get("invoiceId")},
            )
            return self._result("invalid_signature")

        try:
            report = GatewayReport.from_payload(payload)
        except (KeyError, ValueError):
            logger.warning(f"Webhook with missing or unknown status dropped: {payload.get('status')!r}")
            return self._result("malformed")

        return await self.apply(report, now=now, source="webhook")

    # ────────────────────────────────────────────────
    # Core reconciliation
    # ────────────────────────────────────────────────
    async def apply(
        self,
        report: GatewayReport,
        now: Optional[datetime] = None,
        source: str = "webhook",
    ) -> ReconciliationResult:
        now = ensure_utc(now) or utc_now()

        payment = await self.payments.get_by_invoice(report.invoice_id)
        if payment is None:
            logger.warning(f"Status report for unknown invoice {report.invoice_id} – dropped")
            return self._result("unknown_invoice")

        payment_id = payment.id
        current = payment.status
        target = GATEWAY_STATUS_MAP[report.status]
        if target is None:
            logger.debug(f"Invoice {report.invoice_id} reported '{report.status.value}' – nothing to apply")
            return self._result("ignored", payment_id=payment_id)

        if report.amount is not None and report.amount != payment.final_amount:
            logger.warning(
                f"Amount mismatch for invoice {report.invoice_id}: "
                f"reported {report.amount}, expected {payment.final_amount}"
            )

        if target == PaymentStatus.SUCCESS:
            applied = await self._apply_success(payment, report, now)
        elif target == PaymentStatus.FAILED:
            applied = await self._apply_failure(payment, report)
        elif target == PaymentStatus.REFUNDED:
            applied = await self._apply_reversal(payment, now, source)
        else:
            values: Dict[str, Any] = {}
            if target == PaymentStatus.CANCELLED:
                values["failure_reason"] = report.failure_reason or "invoice expired"
            applied = await transition_payment(self.db, payment.id, target, values)

        # zero rows matched: nothing was written, instances stay loaded
        if not applied:
            logger.info(
                f"Invoice {report.invoice_id}: '{report.status.value}' not applicable "
                f"from '{current.value}' – duplicate or out of order"
            )
            return self._result("duplicate", payment_id=payment_id, target=target)

        await self.db.commit()
        if target != PaymentStatus.REFUNDED:
            payment_transitions_total.labels(target=target.value, source=source).inc()

        logger.info(
            f"Invoice {report.invoice_id}: payment {payment_id} → {target.value} ({source})",
            extra={"payment_id": str(payment_id), "gateway_status": report.status.value},
        )
        return self._result("applied", payment_id=payment_id, target=target)

    async def _apply_success(self, payment: Payment, report: GatewayReport, now: datetime) -> bool:
        applied = await transition_payment(
            self.db,
            payment.id,
            PaymentStatus.SUCCESS,
            {
                "paid_at": now,
                "transaction_id": report.rrn,
                "approval_code": report.approval_code,
                "failure_reason": None,
            },
        )
        if not applied:
            return False

        activated = await self.subscriptions.activate(payment.subscription_id, report.rrn, now)
        if not activated:
            logger.warning(
                f"Payment {payment.id} succeeded but subscription {payment.subscription_id} "
                f"was no longer pending"
            )
        await self.plan_stats.record_purchase(payment.plan_id, payment.final_amount, activated=activated)

        subscription = await self.db.get(Subscription, payment.subscription_id, populate_existing=True)
        self.outbox.notify(
            NotificationKind.PAYMENT_SUCCESS,
            subscription.user_email if subscription else None,
            amount=payment.final_amount,
            currency=payment.currency.value,
            plan_name=(subscription.plan_snapshot or {}).get("name") if subscription else None,
            end_date=ensure_utc(subscription.end_date).isoformat() if subscription else None,
        )
        self.outbox.audit(
            "payment_succeeded",
            payment.user_id,
            "payment",
            payment.id,
            invoice_id=payment.invoice_id,
            amount=payment.final_amount,
            subscription_activated=activated,
        )
        return True

    async def _apply_failure(self, payment: Payment, report: GatewayReport) -> bool:
        reason = report.failure_reason or "payment failed"
        applied = await transition_payment(
            self.db, payment.id, PaymentStatus.FAILED, {"failure_reason": reason}
        )
        if not applied:
            return False

        # Subscription stays pending so the user can retry
        subscription = await self.db.get(Subscription, payment.subscription_id)
        self.outbox.notify(
            NotificationKind.PAYMENT_FAILED,
            subscription.user_email if subscription else None,
            amount=payment.final_amount,
            currency=payment.currency.value,
            reason=reason,
        )
        self.outbox.audit(
            "payment_failed", payment.user_id, "payment", payment.id, reason=reason
        )
        return True

    async def _apply_reversal(self, payment: Payment, now: datetime, source: str) -> bool:
        """Refund pushed by the gateway: book the remainder and revoke access."""
        if payment.status != PaymentStatus.SUCCESS:
            return False
        return await self.payments.book_refund(
            payment,
            payment.refundable_amount,
            reason="reversed by gateway",
            now=now,
            source=source,
        )
