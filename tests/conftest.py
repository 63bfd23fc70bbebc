"""
Pytest fixtures for audit chain testing.
Provides isolated settings, audit logs, SQL sessions, and test clients.
"""

from collections.abc import AsyncGenerator, Iterator
from datetime import UTC, datetime
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from audit_chain.core.config import get_settings
from audit_chain.core.crypto.events import AuditEvent, EventFields, chain_event
from audit_chain.core.crypto.hash_chain import GENESIS_HASH
from audit_chain.db.models import Base
from audit_chain.main import create_application
from audit_chain.modules.audit.service import AuditChainService
from audit_chain.modules.audit.store import InMemoryAuditLog

TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:
    """Point every test at a private export directory and the memory backend."""
    monkeypatch.setenv("ENVIRONMENT", "development")
    monkeypatch.setenv("AUDIT_STORE_BACKEND", "memory")
    monkeypatch.setenv("EXPORT_DIR", str(tmp_path / "exports"))
    monkeypatch.setenv("AUDIT_JSONL_PATH", str(tmp_path / "data" / "audit.jsonl"))
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def make_fields():
    """Factory for deterministic event fields."""

    def _make(
        index: int = 1,
        *,
        action: str = "update_incident",
        tier: str = "green",
        case_id: str | None = "case-1",
        payload: object | None = None,
    ) -> EventFields:
        return EventFields(
            event_id=f"evt-{index}",
            actor_principal_id="actor-1",
            action=action,
            tier=tier,  # type: ignore[arg-type]
            case_id=case_id,
            created_at=datetime(2025, 1, 1, 0, 0, index % 60, tzinfo=UTC).isoformat(),
            payload={"x": index} if payload is None else payload,  # type: ignore[arg-type]
        )

    return _make


@pytest.fixture
def make_chain(make_fields):
    """Factory for a valid chain of ``count`` events."""

    def _make(count: int) -> list[AuditEvent]:
        events: list[AuditEvent] = []
        prev_hash = GENESIS_HASH
        for index in range(1, count + 1):
            audit_event = chain_event(make_fields(index), prev_hash)
            events.append(audit_event)
            prev_hash = audit_event.event_hash
        return events

    return _make


@pytest.fixture
def memory_log() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def audit_service(memory_log: InMemoryAuditLog) -> AuditChainService:
    return AuditChainService(memory_log, max_retries=3, verify_yield_every=2)


@pytest_asyncio.fixture
async def sql_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with the audit schema created."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(sql_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=sql_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
def app(audit_service: AuditChainService) -> FastAPI:
    application = create_application()
    application.state.audit_service = audit_service
    return application


@pytest_asyncio.fixture
async def test_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client bound to an in-memory audit chain."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
