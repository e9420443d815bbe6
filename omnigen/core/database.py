"""Async engine and sessions.

API requests get a session per request through ``get_db``. Background
unit tasks outlive their request and open their own sessions from
``async_session_factory``.
"""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from omnigen.core.config import settings


def _engine_options(url: str) -> dict[str, Any]:
    if url.startswith("sqlite"):
        # SQLite serializes writers; wait on a locked database instead of failing
        return {"connect_args": {"timeout": 30}}
    return {"pool_pre_ping": True, "pool_size": settings.database_pool_size}


def build_engine(url: str) -> AsyncEngine:
    return create_async_engine(
        url,
        echo=settings.environment == "development" and settings.log_level == "DEBUG",
        **_engine_options(url),
    )


engine = build_engine(settings.database_url)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session, committed when the endpoint returns."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def dispose_engine() -> None:
    await engine.dispose()
