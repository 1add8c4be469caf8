# apps/api/learnhub/core/deps.py
"""
Shared FastAPI dependency aliases.
Every collaborator a router needs is injected here so tests can swap it
through `app.dependency_overrides`.
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from learnhub.db.session import get_db
from learnhub.integrations.monobank import MonobankClient, get_gateway
from learnhub.middleware.auth import AuthUser, get_current_user, require_admin
from learnhub.services.events import EventDispatcher, get_dispatcher

DBSession = Annotated[AsyncSession, Depends(get_db)]
CurrentUser = Annotated[AuthUser, Depends(get_current_user)]
CurrentAdminUser = Annotated[AuthUser, Depends(require_admin)]
Gateway = Annotated[MonobankClient, Depends(get_gateway)]
Dispatcher = Annotated[EventDispatcher, Depends(get_dispatcher)]
