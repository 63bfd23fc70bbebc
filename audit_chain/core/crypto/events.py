"""
Audit event records for the tamper-evident compliance log.

An :class:`AuditEvent` is created exactly once, by :func:`chain_event`, from a
set of :class:`EventFields` and the current chain tail. Both types are frozen
dataclasses and their payloads are frozen value trees, so a record cannot be
mutated after it has been hashed.

The JSONL line format is the canonical encoding of the full record, hash
fields included::

    {"action":...,"actor_principal_id":...,"case_id":null,"created_at":...,
     "event_hash":...,"event_id":...,"payload":{...},"prev_hash":...,"tier":...}
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from audit_chain.core.crypto.canonicalization import (
    CanonicalObject,
    SerializationError,
    canonicalize,
    freeze_value,
)
from audit_chain.core.crypto.hash_chain import compute_event_hash


class Tier(str, Enum):
    """Sensitivity classification attached to every audit event."""

    GREEN = "green"
    AMBER = "amber"
    RED = "red"


def _require_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise SerializationError(f"{name} must be a non-empty string")
    return value


@dataclass(frozen=True, slots=True)
class EventFields:
    """The hashed portion of an audit event."""

    event_id: str
    actor_principal_id: str
    action: str
    tier: Tier
    case_id: str | None
    created_at: str
    payload: CanonicalObject

    def __post_init__(self) -> None:
        _require_text("event_id", self.event_id)
        _require_text("actor_principal_id", self.actor_principal_id)
        _require_text("action", self.action)
        _require_text("created_at", self.created_at)
        if self.case_id is not None:
            _require_text("case_id", self.case_id)
        try:
            tier = Tier(self.tier)
        except ValueError as exc:
            raise SerializationError(f"Invalid tier: {self.tier!r}") from exc
        payload = freeze_value(self.payload)
        if not isinstance(payload, CanonicalObject):
            raise SerializationError("payload must be a JSON object")
        object.__setattr__(self, "tier", tier)
        object.__setattr__(self, "payload", payload)

    @classmethod
    def new(
        cls,
        *,
        actor_principal_id: str,
        action: str,
        tier: Tier | str,
        payload: Any,
        case_id: str | None = None,
        created_at: datetime | None = None,
    ) -> EventFields:
        """Build fields for a new event with a fresh id and UTC timestamp."""
        timestamp = created_at or datetime.now(UTC)
        return cls(
            event_id=str(uuid4()),
            actor_principal_id=actor_principal_id,
            action=action,
            tier=tier,  # type: ignore[arg-type]
            case_id=case_id,
            created_at=timestamp.isoformat(),
            payload=payload,
        )

    def to_value(self) -> CanonicalObject:
        """Return the value tree that is canonicalized and hashed."""
        return CanonicalObject(
            [
                ("event_id", self.event_id),
                ("actor_principal_id", self.actor_principal_id),
                ("action", self.action),
                ("tier", self.tier.value),
                ("case_id", self.case_id),
                ("created_at", self.created_at),
                ("payload", self.payload),
            ]
        )


@dataclass(frozen=True, slots=True)
class AuditEvent(EventFields):
    """A hash-linked, append-only audit record."""

    prev_hash: str
    event_hash: str

    @property
    def event_fields(self) -> EventFields:
        return EventFields(
            event_id=self.event_id,
            actor_principal_id=self.actor_principal_id,
            action=self.action,
            tier=self.tier,
            case_id=self.case_id,
            created_at=self.created_at,
            payload=self.payload,
        )

    def to_record(self) -> CanonicalObject:
        """Return the full record, hash fields included."""
        return CanonicalObject(
            [
                *self.to_value().items(),
                ("prev_hash", self.prev_hash),
                ("event_hash", self.event_hash),
            ]
        )

    def to_jsonl_line(self) -> bytes:
        """Encode the record as one newline-terminated log line."""
        return canonicalize(self.to_record()) + b"\n"

    @classmethod
    def from_record(cls, record: Any) -> AuditEvent:
        """Build an event from a decoded log record.

        Raises
        ------
        SerializationError
            If fields are missing, unexpected, or of the wrong type.
        """
        frozen = freeze_value(record)
        if not isinstance(frozen, CanonicalObject):
            raise SerializationError("Audit record must be a JSON object")
        expected = {f.name for f in fields(cls)}
        missing = expected - set(frozen)
        if missing:
            raise SerializationError(f"Audit record missing fields: {sorted(missing)}")
        unexpected = set(frozen) - expected
        if unexpected:
            raise SerializationError(f"Audit record has unexpected fields: {sorted(unexpected)}")
        for name in ("prev_hash", "event_hash", "tier"):
            if not isinstance(frozen[name], str):
                raise SerializationError(f"{name} must be a string")
        case_id = frozen["case_id"]
        if case_id is not None and not isinstance(case_id, str):
            raise SerializationError("case_id must be a string or null")
        return cls(**{name: frozen[name] for name in expected})


def chain_event(event_fields: EventFields, prev_hash: str) -> AuditEvent:
    """Link ``event_fields`` to ``prev_hash`` and compute its ``event_hash``.

    This is the pure half of an append; callers are responsible for making
    the tail read and the write atomic.
    """
    event_hash = compute_event_hash(event_fields.to_value(), prev_hash)
    return AuditEvent(
        event_id=event_fields.event_id,
        actor_principal_id=event_fields.actor_principal_id,
        action=event_fields.action,
        tier=event_fields.tier,
        case_id=event_fields.case_id,
        created_at=event_fields.created_at,
        payload=event_fields.payload,
        prev_hash=prev_hash,
        event_hash=event_hash,
    )
