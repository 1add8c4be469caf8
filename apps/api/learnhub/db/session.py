# apps/api/learnhub/db/session.py
"""
Database session management for LearnHub.
Async SQLAlchemy engine, session factory, and FastAPI dependency.
Services commit explicitly at their transition points; the dependency rolls
back whatever is left uncommitted when a request fails.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from learnhub.core.config import settings
from learnhub.core.redis import close_redis_pool

logger = logging.getLogger(__name__)

# ────────────────────────────────────────────────
# Global Async Engine (singleton – created once)
# ────────────────────────────────────────────────
engine: AsyncEngine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.ENVIRONMENT == "development" and settings.LOG_LEVEL == "DEBUG",
    future=True,
    **settings.engine_options(),
)


# ────────────────────────────────────────────────
# Async Session Factory (per-request / per-task sessions)
# ────────────────────────────────────────────────
async_session_factory = async_sessionmaker(
    engine,
    expire_on_commit=False,       # Prevent expired objects after commit
    class_=AsyncSession,
)


# ────────────────────────────────────────────────
# FastAPI Dependency: per-request async session
# ────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: yields a new async session per request.
    Commits on success, rolls back on error, closes always.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ────────────────────────────────────────────────
# Startup: Test connection (called from lifespan)
# ────────────────────────────────────────────────
async def init_db():
    """
    Run on app startup – verifies the database connection.
    Schema is owned by migrations, never created here.
    """
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

        logger.info("Database connection verified successfully")

    except Exception as e:
        logger.critical("Database connection failed on startup", exc_info=True)
        raise RuntimeError("Database unavailable") from e


@asynccontextmanager
async def lifespan(app):
    """
    FastAPI lifespan handler – verify the database, then release DB and Redis pools.
    """
    await init_db()

    yield

    try:
        await engine.dispose()
        logger.info("Database engine disposed on shutdown")
    except Exception as dispose_exc:
        logger.warning("Error during DB shutdown", exc_info=dispose_exc)

    await close_redis_pool()
