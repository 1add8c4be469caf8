# apps/api/learnhub/routers/webhook.py
"""
Monobank Webhook Router - LearnHub
Inbound invoice status callbacks from the acquiring gateway.

Deliveries are at-least-once and unordered; idempotency is the reconciler's
status-guarded update, not a cache of seen events. The endpoint always
acknowledges with 200 so the gateway does not retry rejected or forged
payloads; notifications and audit entries are queued after the response.
"""

import logging
import time

import sentry_sdk
from fastapi import APIRouter, BackgroundTasks, Request
from fastapi.responses import JSONResponse

from learnhub.core.deps import DBSession, Dispatcher, Gateway
from learnhub.middleware.rate_limit import WEBHOOK_LIMIT, limiter
from learnhub.monitoring.metrics import webhook_events_total
from learnhub.services.reconciler import WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

SLOW_WEBHOOK_SECONDS = 3.0


@router.post("/monobank", response_class=JSONResponse)
@limiter.limit(WEBHOOK_LIMIT)
async def monobank_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: DBSession,
    gateway: Gateway,
    dispatcher: Dispatcher,
):
    """
    Monobank invoice webhook.
    Signature: `X-Sign` header over the raw body, or `signature` inside the body.
    """
    start_time = time.time()
    request_id = getattr(request.state, "request_id", None)

    payload_bytes = await request.body()
    sig_header = request.headers.get("X-Sign")

    reconciler = WebhookReconciler(db, gateway)
    try:
        result = await reconciler.handle_webhook(payload_bytes, header_signature=sig_header)
        outcome = result.outcome
    except Exception as exc:
        # Acknowledge anyway; POST /payments/{id}/sync recovers the state
        await db.rollback()
        outcome = "error"
        logger.exception(f"[{request_id}] Webhook processing failed")
        sentry_sdk.capture_exception(exc)
    else:
        if result.events:
            background_tasks.add_task(dispatcher.dispatch, list(result.events))

    webhook_events_total.labels(outcome=outcome).inc()
    sentry_sdk.set_tag("webhook_outcome", outcome)

    duration = time.time() - start_time
    if duration > SLOW_WEBHOOK_SECONDS:
        sentry_sdk.capture_message(
            f"[{request_id}] Slow webhook processing: {duration:.2f}s ({outcome})",
            level="warning",
        )

    return JSONResponse(content={"status": "received"})
