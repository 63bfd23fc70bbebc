"""Pydantic schemas for audit chain API requests and responses."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from audit_chain.core.crypto.events import AuditEvent, Tier
from audit_chain.core.crypto.verification import ChainVerificationResult


class AuditAppendRequest(BaseModel):
    """A privileged action to record."""

    actor_principal_id: str = Field(min_length=1, max_length=255)
    action: str = Field(min_length=1, max_length=100)
    tier: Tier
    case_id: str | None = Field(default=None, min_length=1, max_length=255)
    payload: dict[str, Any] = Field(default_factory=dict)


class AuditEventResponse(BaseModel):
    """The stored record's identity and chain position."""

    event_id: str
    created_at: str
    prev_hash: str
    event_hash: str

    @classmethod
    def from_event(cls, audit_event: AuditEvent) -> AuditEventResponse:
        return cls(
            event_id=audit_event.event_id,
            created_at=audit_event.created_at,
            prev_hash=audit_event.prev_hash,
            event_hash=audit_event.event_hash,
        )


class ChainVerificationResponse(BaseModel):
    """Result of verifying the stored audit chain."""

    outcome: str
    is_valid: bool
    head_hash: str
    verified_count: int
    failure_kind: str | None = None
    first_break_at: int | None = None
    event_id: str | None = None
    errors: list[str]

    @classmethod
    def from_result(cls, result: ChainVerificationResult) -> ChainVerificationResponse:
        return cls(
            outcome=result.outcome.value,
            is_valid=result.is_valid,
            head_hash=result.head_hash,
            verified_count=result.verified_count,
            failure_kind=result.failure_kind.value if result.failure_kind else None,
            first_break_at=result.first_break_at,
            event_id=result.event_id,
            errors=result.errors,
        )
