"""
Domain exceptions for LearnHub services.
Services raise these; main.py maps them to JSON responses.
"""

from fastapi import status


class ServiceError(Exception):
    """Base class for expected, caller-facing failures."""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND


class BadRequestError(ServiceError):
    """Validation or business-rule failure (plan unavailable, refund too large, ...)."""
    status_code = status.HTTP_400_BAD_REQUEST


class ConflictError(ServiceError):
    """Duplicate plan binding, duplicate active subscription, already-paid subscription."""
    status_code = status.HTTP_409_CONFLICT


class GatewayError(ServiceError):
    """The payment gateway rejected the request or was unreachable."""
    status_code = status.HTTP_502_BAD_GATEWAY
