"""Tests for the audit API endpoints."""

from __future__ import annotations

import hashlib

import pytest
from fastapi import FastAPI
from httpx import AsyncClient

from audit_chain.core.crypto.events import AuditEvent, EventFields
from audit_chain.core.crypto.hash_chain import GENESIS_HASH
from audit_chain.core.crypto.verification import verify_log_bytes
from audit_chain.modules.audit.service import AuditChainService
from audit_chain.modules.audit.store import InMemoryAuditLog

EVENTS_URL = "/api/v1/audit/events"
VERIFY_URL = "/api/v1/audit/verify/chain"
EXPORT_URL = "/api/v1/audit/export"


def _event_body(**overrides: object) -> dict[str, object]:
    body: dict[str, object] = {
        "actor_principal_id": "actor-1",
        "action": "create_incident",
        "tier": "amber",
        "case_id": "case-1",
        "payload": {"reason": "test", "count": 2},
    }
    body.update(overrides)
    return body


class _UnavailableLog(InMemoryAuditLog):
    async def append(self, event_fields: EventFields, expected_tail: str) -> AuditEvent:
        raise ConnectionError("database unreachable")

    async def tail_hash(self) -> str:
        raise ConnectionError("database unreachable")


class TestAppendEndpoint:
    @pytest.mark.asyncio
    async def test_append_returns_chain_position(self, test_client: AsyncClient) -> None:
        response = await test_client.post(EVENTS_URL, json=_event_body())
        assert response.status_code == 201
        data = response.json()
        assert data["prev_hash"] == GENESIS_HASH
        assert len(data["event_hash"]) == 64

        second = await test_client.post(EVENTS_URL, json=_event_body(case_id=None))
        assert second.json()["prev_hash"] == data["event_hash"]

    @pytest.mark.asyncio
    async def test_float_payload_rejected(
        self, test_client: AsyncClient, audit_service: AuditChainService
    ) -> None:
        response = await test_client.post(EVENTS_URL, json=_event_body(payload={"amount": 1.5}))
        assert response.status_code == 422
        assert "canonical" in response.json()["detail"]
        assert await audit_service.log.count() == 0

    @pytest.mark.asyncio
    async def test_unknown_tier_rejected(self, test_client: AsyncClient) -> None:
        response = await test_client.post(EVENTS_URL, json=_event_body(tier="blue"))
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_storage_failure_returns_503(
        self, test_client: AsyncClient, app: FastAPI
    ) -> None:
        app.state.audit_service = AuditChainService(_UnavailableLog(), max_retries=1)
        response = await test_client.post(EVENTS_URL, json=_event_body())
        assert response.status_code == 503
        assert response.json()["detail"] == "Audit event could not be recorded"


class TestVerifyEndpoint:
    @pytest.mark.asyncio
    async def test_empty_chain(self, test_client: AsyncClient) -> None:
        response = await test_client.get(VERIFY_URL)
        assert response.status_code == 200
        data = response.json()
        assert data["outcome"] == "empty"
        assert data["is_valid"] is False
        assert data["head_hash"] == GENESIS_HASH

    @pytest.mark.asyncio
    async def test_verified_chain_with_expected_head(self, test_client: AsyncClient) -> None:
        head = ""
        for index in range(3):
            response = await test_client.post(EVENTS_URL, json=_event_body(payload={"i": index}))
            head = response.json()["event_hash"]

        response = await test_client.get(VERIFY_URL, params={"expected_head_hash": head})
        data = response.json()
        assert data["outcome"] == "verified"
        assert data["is_valid"] is True
        assert data["verified_count"] == 3
        assert data["head_hash"] == head

        response = await test_client.get(VERIFY_URL, params={"expected_head_hash": "a" * 64})
        assert response.json()["failure_kind"] == "head_mismatch"

    @pytest.mark.asyncio
    async def test_invalid_expected_head(self, test_client: AsyncClient) -> None:
        response = await test_client.get(VERIFY_URL, params={"expected_head_hash": "xyz"})
        assert response.status_code == 422


class TestExportEndpoint:
    @pytest.mark.asyncio
    async def test_export_streams_verifiable_jsonl(self, test_client: AsyncClient) -> None:
        for index in range(2):
            await test_client.post(EVENTS_URL, json=_event_body(payload={"i": index}))

        response = await test_client.get(EXPORT_URL)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        body = response.content
        assert response.headers["x-audit-events-sha256"] == hashlib.sha256(body).hexdigest()
        assert response.headers["x-audit-event-count"] == "2"

        result = verify_log_bytes(body, response.headers["x-audit-head-hash"])
        assert result.is_valid
        assert result.verified_count == 2

    @pytest.mark.asyncio
    async def test_export_of_empty_chain(self, test_client: AsyncClient) -> None:
        response = await test_client.get(EXPORT_URL)
        assert response.status_code == 200
        assert response.content == b""
        assert response.headers["x-audit-head-hash"] == GENESIS_HASH


class TestHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, test_client: AsyncClient) -> None:
        response = await test_client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["checks"]["audit_log"] == "ok"

    @pytest.mark.asyncio
    async def test_degraded_when_log_unreachable(
        self, test_client: AsyncClient, app: FastAPI
    ) -> None:
        app.state.audit_service = AuditChainService(_UnavailableLog())
        response = await test_client.get("/health")
        assert response.json()["status"] == "degraded"
        assert response.json()["checks"]["audit_log"] == "unavailable"

    @pytest.mark.asyncio
    async def test_service_missing_returns_503(
        self, test_client: AsyncClient, app: FastAPI
    ) -> None:
        app.state.audit_service = None
        response = await test_client.get(VERIFY_URL)
        assert response.status_code == 503
