# apps/api/learnhub/services/payments.py
"""
Payment Orchestrator - LearnHub
Creates payment attempts for pending subscriptions, obtains a payable link
from the acquiring gateway, runs refunds and invoice cancellations.

Retry safety: the `created` row is committed before the gateway is called.
If the gateway fails, the row stays `created` without an invoice and the
next create_payment() call reuses it, so no duplicate invoices are made.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from learnhub.core.config import settings
from learnhub.core.enums import NotificationKind, PaymentStatus, SubscriptionStatus
from learnhub.core.exceptions import BadRequestError, ConflictError, GatewayError, NotFoundError
from learnhub.db.models import Payment, Subscription
from learnhub.db.models.utils import ensure_utc, utc_now
from learnhub.integrations.monobank import MonobankClient
from learnhub.monitoring.metrics import gateway_errors_total, payment_transitions_total
from learnhub.services.events import Outbox
from learnhub.services.statistics import COLLECTED_STATUSES, StatisticsService
from learnhub.services.subscriptions import SubscriptionService
from learnhub.services.transitions import PAYMENT_TRANSITIONS, transition_payment

logger = logging.getLogger(__name__)


class PaymentService:
    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[MonobankClient] = None,
        outbox: Optional[Outbox] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.outbox = outbox if outbox is not None else Outbox()
        self.plan_stats = StatisticsService(db)
        self.subscriptions = SubscriptionService(db, self.outbox)

    def _require_gateway(self) -> MonobankClient:
        if self.gateway is None:
            raise GatewayError("Payment gateway is not configured")
        return self.gateway

    # ────────────────────────────────────────────────
    # Reads
    # ────────────────────────────────────────────────
    async def get(self, payment_id: UUID) -> Payment:
        payment = await self.db.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            raise NotFoundError("Payment not found")
        return payment

    async def get_by_invoice(self, invoice_id: str) -> Optional[Payment]:
        return await self.db.scalar(
            select(Payment)
            .where(Payment.invoice_id == invoice_id)
            .execution_options(populate_existing=True)
        )

    async def list_for_subscription(self, subscription_id: UUID) -> List[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.subscription_id == subscription_id)
            .order_by(Payment.attempt_number.asc())
            .execution_options(populate_existing=True)
        )
        return list((await self.db.scalars(stmt)).all())

    async def list_for_user(self, user_id: str, page: int = 1, limit: int = 20) -> Tuple[List[Payment], int]:
        total = await self.db.scalar(select(func.count(Payment.id)).where(Payment.user_id == user_id))
        stmt = (
            select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc())
            .offset((max(page, 1) - 1) * limit)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list((await self.db.scalars(stmt)).all()), int(total or 0)

    # ────────────────────────────────────────────────
    # Create
    # ────────────────────────────────────────────────
    async def create_payment(
        self,
        subscription_id: UUID,
        redirect_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Payment:
        now = ensure_utc(now) or utc_now()
        gateway = self._require_gateway()

        subscription = await self.db.get(Subscription, subscription_id, populate_existing=True)
        if subscription is None:
            raise NotFoundError("Subscription not found")

        already_paid = await self.db.scalar(
            select(Payment.id)
            .where(Payment.subscription_id == subscription.id, Payment.status == PaymentStatus.SUCCESS)
            .limit(1)
        )
        if already_paid is not None or subscription.is_paid:
            raise ConflictError("Subscription is already paid")
        if subscription.status != SubscriptionStatus.PENDING:
            raise BadRequestError(f"Subscription is {subscription.status.value}, not awaiting payment")
        if subscription.price <= 0:
            raise BadRequestError("Subscription has nothing to pay")

        # Reuse an attempt whose invoice was never created
        payment = await self.db.scalar(
            select(Payment)
            .where(
                Payment.subscription_id == subscription.id,
                Payment.status == PaymentStatus.CREATED,
                Payment.invoice_id.is_(None),
            )
            .order_by(Payment.attempt_number.desc())
            .limit(1)
        )
        if payment is None:
            prior = await self.db.scalar(
                select(func.count(Payment.id)).where(Payment.subscription_id == subscription.id)
            )
            plan_name = subscription.plan_snapshot.get("name", "subscription")
            payment = Payment(
                subscription_id=subscription.id,
                plan_id=subscription.plan_id,
                user_id=subscription.user_id,
                amount=subscription.list_price,
                discount_amount=subscription.list_price - subscription.price,
                final_amount=subscription.price,
                currency=subscription.currency,
                status=PaymentStatus.CREATED,
                attempt_number=int(prior or 0) + 1,
                description=f"LearnHub: {plan_name}",
            )
            self.db.add(payment)
            await self.db.commit()
            await self.db.refresh(payment)

        ttl = timedelta(minutes=settings.PAYMENT_LINK_TTL_MINUTES)
        try:
            invoice = await gateway.create_invoice(
                amount=payment.final_amount,
                currency=payment.currency,
                description=payment.description,
                redirect_url=redirect_url or f"{settings.frontend_base}/payment/success?payment_id={payment.id}",
                reference=str(payment.id),
                validity_seconds=int(ttl.total_seconds()),
            )
        except GatewayError as e:
            gateway_errors_total.labels(operation="create_invoice").inc()
            await self.db.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == PaymentStatus.CREATED)
                .values(failure_reason=e.detail)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            logger.warning(f"Invoice creation failed for payment {payment.id}: {e.detail}")
            raise

        applied = await transition_payment(
            self.db,
            payment.id,
            PaymentStatus.PENDING,
            {
                "invoice_id": invoice.invoice_id,
                "payment_url": invoice.payment_url,
                "payment_link_expires_at": now + ttl,
                "failure_reason": None,
            },
        )
        await self.db.commit()

        if applied:
            payment_transitions_total.labels(target=PaymentStatus.PENDING.value, source="api").inc()
        else:
            logger.warning(f"Payment {payment.id} left 'created' before its invoice was stored")

        payment = await self.get(payment.id)
        logger.info(
            f"Payment {payment.id} attempt #{payment.attempt_number} → invoice {payment.invoice_id}",
            extra={"subscription_id": str(subscription.id), "amount": payment.final_amount},
        )
        self.outbox.audit(
            "payment_created",
            payment.user_id,
            "payment",
            payment.id,
            invoice_id=payment.invoice_id,
            amount=payment.final_amount,
            attempt=payment.attempt_number,
        )
        return payment

    # ────────────────────────────────────────────────
    # Refunds
    # ────────────────────────────────────────────────
    async def book_refund(
        self,
        payment: Payment,
        amount: int,
        reason: Optional[str],
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
        source: str = "api",
    ) -> bool:
        """
        Local refund bookkeeping, shared by admin refunds and gateway reversals.
        Guarded on the previously seen refunded_amount; caller commits.
        """
        now = ensure_utc(now) or utc_now()
        full = payment.refunded_amount + amount >= payment.final_amount
        values: Dict[str, Any] = {
            "refunded_amount": Payment.refunded_amount + amount,
            "refund_reason": reason,
            "refunded_at": now,
        }
        guard = (Payment.refunded_amount == payment.refunded_amount,)

        if full:
            applied = await transition_payment(
                self.db, payment.id, PaymentStatus.REFUNDED, values, extra_conditions=guard
            )
        else:
            result = await self.db.execute(
                update(Payment)
                .where(Payment.id == payment.id, Payment.status == PaymentStatus.SUCCESS, *guard)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            applied = result.rowcount == 1

        if not applied:
            return False

        await self.plan_stats.record_refund(payment.plan_id, amount)
        if full:
            await self.subscriptions.deactivate_for_refund(payment.subscription_id, now)
            payment_transitions_total.labels(target=PaymentStatus.REFUNDED.value, source=source).inc()

        subscription = await self.db.get(Subscription, payment.subscription_id)
        self.outbox.notify(
            NotificationKind.PAYMENT_REFUNDED,
            subscription.user_email if subscription else None,
            amount=amount,
            currency=payment.currency.value,
            full_refund=full,
            reason=reason,
        )
        self.outbox.audit(
            "payment_refunded",
            actor_id,
            "payment",
            payment.id,
            amount=amount,
            full=full,
            source=source,
            reason=reason,
        )
        logger.info(f"Payment {payment.id} refunded {amount} ({'full' if full else 'partial'}, {source})")
        return True

    async def refund(
        self,
        payment_id: UUID,
        amount: Optional[int] = None,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Payment:
        payment = await self.get(payment_id)

        if payment.status != PaymentStatus.SUCCESS:
            raise BadRequestError(f"Only successful payments can be refunded (status: {payment.status.value})")

        refundable = payment.refundable_amount
        amount = refundable if amount is None else amount
        if amount <= 0:
            raise BadRequestError("Refund amount must be positive")
        if amount > refundable:
            raise BadRequestError(f"Refund amount exceeds the refundable remainder ({refundable})")
        if not payment.invoice_id:
            raise BadRequestError("Payment has no gateway invoice")

        gateway = self._require_gateway()
        try:
            result = await gateway.refund(payment.invoice_id, amount, comment=reason)
        except GatewayError:
            gateway_errors_total.labels(operation="refund").inc()
            raise
        if not result.ok:
            gateway_errors_total.labels(operation="refund").inc()
            raise GatewayError("Payment gateway declined the refund")

        if not await self.book_refund(payment, amount, reason, actor_id=actor_id):
            await self.db.rollback()
            raise ConflictError("Payment changed while the refund was processed")

        await self.db.commit()
        return await self.get(payment_id)

    # ────────────────────────────────────────────────
    # Cancel / sync
    # ────────────────────────────────────────────────
    async def cancel_payment(self, payment_id: UUID, actor_id: Optional[str] = None) -> Payment:
        """Invalidate an unpaid invoice and mark the attempt cancelled."""
        payment = await self.get(payment_id)
        if payment.status not in PAYMENT_TRANSITIONS[PaymentStatus.CANCELLED]:
            raise BadRequestError(f"Payment is {payment.status.value} and cannot be cancelled")

        if payment.invoice_id:
            try:
                await self._require_gateway().cancel_invoice(payment.invoice_id)
            except GatewayError:
                gateway_errors_total.labels(operation="cancel_invoice").inc()
                raise

        applied = await transition_payment(
            self.db,
            payment.id,
            PaymentStatus.CANCELLED,
            {"failure_reason": "cancelled by user"},
        )
        if not applied:
            await self.db.rollback()
            raise ConflictError("Payment changed while it was being cancelled")

        await self.db.commit()
        payment_transitions_total.labels(target=PaymentStatus.CANCELLED.value, source="api").inc()
        self.outbox.audit("payment_cancelled", actor_id, "payment", payment.id)
        return await self.get(payment_id)

    async def sync_status(self, payment_id: UUID):
        """Poll the gateway and reconcile exactly like a webhook delivery."""
        from learnhub.services.reconciler import GatewayReport, WebhookReconciler

        payment = await self.get(payment_id)
        if not payment.invoice_id:
            raise BadRequestError("Payment has no gateway invoice yet")

        try:
            status = await self._require_gateway().get_invoice_status(payment.invoice_id)
        except GatewayError:
            gateway_errors_total.labels(operation="invoice_status").inc()
            raise

        reconciler = WebhookReconciler(self.db, self.gateway, self.outbox)
        return await reconciler.apply(
            GatewayReport(
                invoice_id=payment.invoice_id,
                status=status.status,
                amount=status.amount,
                approval_code=status.approval_code,
                rrn=status.rrn,
                failure_reason=status.failure_reason,
            ),
            source="poll",
        )

    # ────────────────────────────────────────────────
    # Reporting
    # ────────────────────────────────────────────────
    async def statistics(self) -> Dict[str, Any]:
        by_status_rows = (
            await self.db.execute(select(Payment.status, func.count(Payment.id)).group_by(Payment.status))
        ).all()
        by_status = {status.value: 0 for status in PaymentStatus}
        for status, count in by_status_rows:
            by_status[PaymentStatus(status).value] = int(count)

        currency_rows = (
            await self.db.execute(
                select(
                    Payment.currency,
                    func.count(Payment.id),
                    func.coalesce(func.sum(Payment.final_amount), 0),
                    func.coalesce(func.sum(Payment.refunded_amount), 0),
                )
                .where(Payment.status.in_(COLLECTED_STATUSES))
                .group_by(Payment.currency)
            )
        ).all()

        by_currency: Dict[str, Dict[str, int]] = {}
        collected_count = collected = refunded = 0
        for currency, count, amount, refunded_amount in currency_rows:
            by_currency[currency.value if hasattr(currency, "value") else str(currency)] = {
                "count": int(count),
                "amount": int(amount),
                "refunded": int(refunded_amount),
                "net": int(amount) - int(refunded_amount),
            }
            collected_count += int(count)
            collected += int(amount)
            refunded += int(refunded_amount)

        return {
            "total_payments": sum(by_status.values()),
            "by_status": by_status,
            "successful_payments": collected_count,
            "total_amount": collected,
            "total_refunded": refunded,
            "net_revenue": collected - refunded,
            "average_payment": round(collected / collected_count, 2) if collected_count else 0.0,
            "by_currency": by_currency,
        }
