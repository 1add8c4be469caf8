# apps/api/learnhub/middleware/auth.py
"""
Authentication Dependencies - LearnHub
Access tokens are issued by the LearnHub auth service; this API only
validates them (JWT, HS256) and enforces roles.
"""

import logging
from typing import Annotated, Optional

import jwt
import sentry_sdk
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from learnhub.core.config import settings

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)  # Optional Bearer, fallback to cookies


class AuthUser(BaseModel):
    """Current authenticated user context"""
    id: str
    email: Optional[str] = None
    roles: list[str] = ["user"]

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


def decode_access_token(token: str) -> AuthUser:
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY.get_secret_value(),
            algorithms=[settings.JWT_ALGORITHM],
            options={"require": ["exp", "sub", "type"], "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid JWT: {e}")
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")

    if payload.get("type") != "access":
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Not an access token")

    return AuthUser(
        id=str(payload["sub"]),
        email=payload.get("email"),
        roles=payload.get("roles") or ["user"],
    )


async def get_current_user(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)] = None,
) -> AuthUser:
    """
    Dependency: Extracts and validates current user from JWT (cookie or Bearer).
    """
    token = request.cookies.get("access_token")
    if not token and credentials:
        token = credentials.credentials

    if not token:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Not authenticated")

    auth_user = decode_access_token(token)
    request.state.user_id = auth_user.id
    sentry_sdk.set_user({"id": auth_user.id, "email": auth_user.email})
    return auth_user


async def require_role(
    required_role: str,
    user: Annotated[AuthUser, Depends(get_current_user)]
) -> AuthUser:
    """
    RBAC dependency: enforce role (e.g. "admin")
    """
    if required_role not in user.roles:
        raise HTTPException(
            status.HTTP_403_FORBIDDEN,
            f"Insufficient permissions. Required role: {required_role}"
        )
    return user


async def require_admin(
    user: Annotated[AuthUser, Depends(get_current_user)]
) -> AuthUser:
    return await require_role("admin", user)
