"""Tests for immutable audit event records."""

from __future__ import annotations

import dataclasses
from datetime import UTC, datetime

import pytest

from audit_chain.core.crypto.canonicalization import (
    CanonicalObject,
    SerializationError,
    parse_canonical_json,
)
from audit_chain.core.crypto.events import AuditEvent, EventFields, Tier, chain_event
from audit_chain.core.crypto.hash_chain import GENESIS_HASH


class TestEventFields:
    def test_tier_coerced(self, make_fields) -> None:
        assert make_fields(tier="red").tier is Tier.RED

    def test_invalid_tier_is_serialization_error(self, make_fields) -> None:
        with pytest.raises(SerializationError, match="tier"):
            make_fields(tier="purple")

    @pytest.mark.parametrize("payload", [[1, 2], "text", 3, None])
    def test_payload_must_be_object(self, payload: object) -> None:
        with pytest.raises(SerializationError, match="payload"):
            EventFields(
                event_id="evt-1",
                actor_principal_id="actor-1",
                action="create_incident",
                tier=Tier.GREEN,
                case_id=None,
                created_at="2025-01-01T00:00:00+00:00",
                payload=payload,  # type: ignore[arg-type]
            )

    def test_float_payload_rejected(self, make_fields) -> None:
        with pytest.raises(SerializationError):
            make_fields(payload={"amount": 1.5})

    def test_empty_actor_rejected(self) -> None:
        with pytest.raises(SerializationError, match="actor_principal_id"):
            EventFields.new(actor_principal_id="", action="x", tier="green", payload={})

    def test_frozen(self, make_fields) -> None:
        fields = make_fields()
        with pytest.raises(dataclasses.FrozenInstanceError):
            fields.action = "other"  # type: ignore[misc]
        assert isinstance(fields.payload, CanonicalObject)

    def test_new_generates_id_and_timestamp(self) -> None:
        fields = EventFields.new(
            actor_principal_id="actor-1",
            action="create_incident",
            tier="amber",
            payload={"k": "v"},
        )
        assert len(fields.event_id) == 36
        assert datetime.fromisoformat(fields.created_at).tzinfo is not None
        assert fields.case_id is None

    def test_new_keeps_explicit_timestamp_verbatim(self) -> None:
        when = datetime(2025, 6, 1, 12, 30, tzinfo=UTC)
        fields = EventFields.new(
            actor_principal_id="actor-1",
            action="x",
            tier=Tier.GREEN,
            payload={},
            created_at=when,
        )
        assert fields.created_at == "2025-06-01T12:30:00+00:00"

    def test_to_value_includes_null_case_id(self, make_fields) -> None:
        value = make_fields(case_id=None).to_value()
        assert "case_id" in value
        assert value["case_id"] is None
        assert "prev_hash" not in value


class TestAuditEvent:
    def test_chain_event_links(self, make_fields) -> None:
        first = chain_event(make_fields(1), GENESIS_HASH)
        second = chain_event(make_fields(2), first.event_hash)
        assert second.prev_hash == first.event_hash
        assert second.event_fields == make_fields(2)

    def test_jsonl_line_round_trip(self, make_fields) -> None:
        audit_event = chain_event(make_fields(1), GENESIS_HASH)
        line = audit_event.to_jsonl_line()
        assert line.endswith(b"\n")
        assert line.count(b"\n") == 1
        assert AuditEvent.from_record(parse_canonical_json(line)) == audit_event

    def test_from_record_rejects_missing_fields(self, make_fields) -> None:
        record = dict(chain_event(make_fields(1), GENESIS_HASH).to_record())
        del record["event_hash"]
        with pytest.raises(SerializationError, match="missing"):
            AuditEvent.from_record(record)

    def test_from_record_rejects_non_object(self) -> None:
        with pytest.raises(SerializationError):
            AuditEvent.from_record([1, 2])

    def test_from_record_rejects_bad_case_id(self, make_fields) -> None:
        record = dict(chain_event(make_fields(1), GENESIS_HASH).to_record())
        record["case_id"] = 7
        with pytest.raises(SerializationError, match="case_id"):
            AuditEvent.from_record(record)
