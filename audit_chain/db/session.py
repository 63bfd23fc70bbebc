"""
Process-wide async engine for the SQL audit store.

``init_db`` builds the engine once at startup, ``close_db`` disposes it at
shutdown, and stores obtain sessions through ``get_session_factory``.
"""

from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from audit_chain.core.config import Settings, get_settings

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(settings: Settings | None = None) -> None:
    """Create the engine and session factory from ``settings``.

    Falls back to the cached application settings. Pool sizing applies to
    server databases only; SQLite picks its own pool.
    """
    global _engine, _session_factory

    settings = settings or get_settings()
    engine_options: dict[str, Any] = {"pool_pre_ping": True, "echo": settings.debug}
    if make_url(settings.database_url).get_backend_name() != "sqlite":
        engine_options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
        )

    if _engine is not None:
        await _engine.dispose()
    _engine = create_async_engine(settings.database_url, **engine_options)
    _session_factory = async_sessionmaker(
        bind=_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def close_db() -> None:
    """Dispose of the engine; safe to call when it was never created."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory
