"""
LearnHub Billing API - FastAPI Application Entry Point
Plans, subscriptions, Monobank payments and webhook reconciliation.

INTEGRATION NOTES:
- Auth is NOT global: use the CurrentUser / CurrentAdminUser dependencies
- Middleware order: CORS → Security Headers → Metrics/Logging → Rate Limiting
- Schema is owned by migrations; startup only verifies the connection
- Background work runs in Celery (learnhub.tasks.celery_app)
"""

import logging
import time
import uuid

import sentry_sdk
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from learnhub.core.config import settings
from learnhub.core.exceptions import ServiceError
from learnhub.core.redis import check_redis_health
from learnhub.db.session import async_session_factory, lifespan
from learnhub.middleware.rate_limit import (
    RateLimitMiddleware,
    limiter,
    rate_limit_exceeded_handler,
)
from learnhub.middleware.security import SecurityHeadersMiddleware
from learnhub.monitoring.metrics import http_request_duration_seconds, http_requests_total, registry
from learnhub.routers import admin, payments, plans, subscriptions, webhook

# ────────────────────────────────────────────────
# Structured Logging Setup
# ────────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger(__name__)

# ────────────────────────────────────────────────
# Sentry (only when a DSN is configured)
# ────────────────────────────────────────────────
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=1.0 if not settings.is_production else 0.2,
        environment=settings.ENVIRONMENT,
        release=f"learnhub-api@{settings.APP_VERSION}",
        attach_stacktrace=True,
        send_default_pii=False,
    )

# ────────────────────────────────────────────────
# FastAPI Application
# ────────────────────────────────────────────────
app = FastAPI(
    title="LearnHub Billing API",
    description="Plans, subscriptions and Monobank payments for the LearnHub platform",
    version=settings.APP_VERSION,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url=None,
    lifespan=lifespan,
    debug=settings.is_dev,
    openapi_tags=[
        {"name": "Plans", "description": "Purchasable plan catalogue"},
        {"name": "Subscriptions", "description": "Checkout, access grants, cancellation"},
        {"name": "Payments", "description": "Payment attempts and gateway links"},
        {"name": "Webhooks", "description": "Monobank invoice callbacks"},
        {"name": "Admin", "description": "Refunds, statistics, maintenance (protected)"},
        {"name": "Health", "description": "Health & readiness checks"},
    ],
)

# ────────────────────────────────────────────────
# Global Middleware Stack (order matters!)
# ────────────────────────────────────────────────
# 1. CORS (must be first)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin) for origin in settings.CORS_ORIGINS],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 2. Security Headers (CSP, HSTS, etc.)
app.add_middleware(SecurityHeadersMiddleware)


# 3. Request Logging + Prometheus Metrics
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    method = request.method
    start_time = time.time()

    # Correlation ID for tracing
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
    finally:
        # Route template keeps label cardinality bounded
        route = request.scope.get("route")
        path = getattr(route, "path", None) or "unmatched"
        duration = time.time() - start_time
        http_requests_total.labels(method=method, path=path, status=str(status_code)).inc()
        http_request_duration_seconds.labels(method=method, path=path).observe(duration)

    response.headers["X-Request-ID"] = request_id
    return response


# 4. Rate Limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_middleware(RateLimitMiddleware)

# ────────────────────────────────────────────────
# Routers
# ────────────────────────────────────────────────
app.include_router(plans.router)
app.include_router(subscriptions.router)
app.include_router(payments.router)
app.include_router(webhook.router)
app.include_router(admin.router)


# ────────────────────────────────────────────────
# Prometheus Metrics Endpoint
# ────────────────────────────────────────────────
@app.get("/metrics", include_in_schema=False)
async def metrics():
    return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)


# ────────────────────────────────────────────────
# Exception Handlers
# ────────────────────────────────────────────────
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    """Domain errors → same {"detail": ...} shape as HTTPException."""
    if exc.status_code >= 500:
        logger.error(
            f"{exc.__class__.__name__}: {exc.detail}",
            extra={"request_id": getattr(request.state, "request_id", None), "path": request.url.path},
        )
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def custom_exception_handler(request: Request, exc: Exception):
    """
    Structured logging with request context, generic 500 for the caller.
    """
    request_id = getattr(request.state, "request_id", "unknown")
    user_id = getattr(request.state, "user_id", None)

    logger.exception(
        f"Unhandled exception: {exc}",
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method,
            "user_id": user_id,
            "status_code": 500,
            "environment": settings.ENVIRONMENT,
        },
    )
    sentry_sdk.capture_exception(exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error. Our team has been notified."},
    )


# ────────────────────────────────────────────────
# Health / Readiness / Liveness Endpoints
# ────────────────────────────────────────────────
@app.get("/health", tags=["Health"])
async def health_check():
    return {"status": "healthy", "version": settings.APP_VERSION}


@app.get("/ready", tags=["Health"])
async def readiness_check():
    """
    Readiness probe: DB ping + Redis ping (Celery broker).
    """
    try:
        async with async_session_factory() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Readiness check failed: database", exc_info=True)
        return JSONResponse(status_code=503, content={"status": "not ready", "error": str(e)})

    if not await check_redis_health():
        return JSONResponse(status_code=503, content={"status": "not ready", "error": "Redis unavailable"})

    return {"status": "ready"}


@app.get("/live", tags=["Health"])
async def liveness_check():
    return {"status": "alive"}
