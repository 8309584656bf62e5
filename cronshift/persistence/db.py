from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from cronshift.core.config import get_settings
from cronshift.core.errors import ConfigurationError


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def build_engine(database_url: str) -> AsyncEngine:
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # One-shot scripts need only a small pool against hosted Postgres.
    if not database_url.startswith("sqlite"):
        engine_kwargs["pool_size"] = 2
        engine_kwargs["max_overflow"] = 0
        engine_kwargs["pool_timeout"] = 30
    return create_async_engine(database_url, **engine_kwargs)


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        if not settings.database_url:
            raise ConfigurationError("DATABASE_URL is required")
        _engine = build_engine(settings.database_url)
    return _engine


def SessionLocal() -> AsyncSession:
    # Build the shared session factory on first use so imports never need a database.
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory()


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
