# apps/api/learnhub/middleware/rate_limit.py
"""
Rate Limiting Middleware & Helpers – LearnHub
Global + per-route rate limiting using slowapi.
Storage comes from RATE_LIMIT_STORAGE_URI (Redis in production so limits
hold across workers).
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from learnhub.core.config import settings
from learnhub.services.logging import audit_log

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────
# Key functions
# ────────────────────────────────────────────────
def get_user_or_ip_key(request: Request) -> str:
    """
    Rate limit by authenticated user ID if present, otherwise by IP.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return f"ip:{get_remote_address(request)}"


# ────────────────────────────────────────────────
# Global Limiter Configuration
# ────────────────────────────────────────────────
limiter = Limiter(
    key_func=get_remote_address,                # default: per IP
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    default_limits=["100/minute"],              # global fallback
    enabled=settings.RATE_LIMIT_ENABLED,
    headers_enabled=False,
)

# Named limits used by routers
WEBHOOK_LIMIT = "100/minute"
PAYMENT_CREATE_LIMIT = "10/minute"


class RateLimitMiddleware(SlowAPIMiddleware):
    """Applies `default_limits` to every route not decorated with its own limit."""


# ────────────────────────────────────────────────
# Exception handler for rate limit exceeded
# ────────────────────────────────────────────────
def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(
        f"Rate limit exceeded on {request.url.path}",
        extra={"ip": get_remote_address(request), "limit": str(exc.detail)},
    )
    audit_log(
        action="rate_limit_exceeded",
        user_id=getattr(request.state, "user_id", None),
        metadata={"path": request.url.path, "limit": str(exc.detail)},
        request=request,
    )

    return JSONResponse(
        status_code=429,
        content={"detail": "Rate limit exceeded. Please try again later."},
        headers={"Retry-After": "60"},
    )
