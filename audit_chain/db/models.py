"""
SQLAlchemy ORM models for the audit chain.

``audit_events`` is append-only. The ORM rejects updates and deletes of
audit rows, and the Alembic migration installs database triggers that do the
same for any other client.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    String,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, ORMExecuteState, Session, mapped_column

from audit_chain.core.crypto.canonicalization import freeze_value, thaw_value
from audit_chain.core.crypto.events import AuditEvent
from audit_chain.core.crypto.hash_chain import HASH_ALGORITHM_SHA256, HASH_CANONICALIZATION


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSON().with_variant(JSONB(), "postgresql"),
    }


class AppendOnlyViolation(RuntimeError):
    """Raised when code attempts to update or delete an audit record."""


class AuditEventRecord(Base):
    """
    One hash-linked audit record.

    ``chain_sequence`` orders the single global chain. ``prev_hash`` is
    unique, so two writers that read the same tail cannot both commit.
    ``created_at`` is stored verbatim as text because it is part of the
    hashed fields.
    """

    __tablename__ = "audit_events"

    chain_sequence: Mapped[int] = mapped_column(
        BigInteger,
        primary_key=True,
        autoincrement=False,
        comment="Zero-based position in the global chain",
    )
    event_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    actor_principal_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    tier: Mapped[str] = mapped_column(String(16), nullable=False)
    case_id: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Timestamp string exactly as hashed",
    )
    payload: Mapped[dict[str, Any]] = mapped_column(nullable=False)
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    event_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    hash_algorithm: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=HASH_ALGORITHM_SHA256,
    )
    hash_canonicalization: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default=HASH_CANONICALIZATION,
    )
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_audit_events_case_id", "case_id"),
        CheckConstraint("tier IN ('green', 'amber', 'red')", name="ck_audit_events_tier"),
        Index("ix_audit_events_actor", "actor_principal_id"),
    )

    @classmethod
    def from_event(cls, audit_event: AuditEvent, chain_sequence: int) -> "AuditEventRecord":
        return cls(
            chain_sequence=chain_sequence,
            event_id=audit_event.event_id,
            actor_principal_id=audit_event.actor_principal_id,
            action=audit_event.action,
            tier=audit_event.tier.value,
            case_id=audit_event.case_id,
            created_at=audit_event.created_at,
            payload=thaw_value(audit_event.payload),
            prev_hash=audit_event.prev_hash,
            event_hash=audit_event.event_hash,
            hash_algorithm=HASH_ALGORITHM_SHA256,
            hash_canonicalization=HASH_CANONICALIZATION,
        )

    def to_record(self) -> dict[str, Any]:
        """Hashed fields as stored, without validating them."""
        return {
            "event_id": self.event_id,
            "actor_principal_id": self.actor_principal_id,
            "action": self.action,
            "tier": self.tier,
            "case_id": self.case_id,
            "created_at": self.created_at,
            "payload": self.payload,
            "prev_hash": self.prev_hash,
            "event_hash": self.event_hash,
        }

    def to_event(self) -> AuditEvent:
        return AuditEvent(
            event_id=self.event_id,
            actor_principal_id=self.actor_principal_id,
            action=self.action,
            tier=self.tier,  # type: ignore[arg-type]
            case_id=self.case_id,
            created_at=self.created_at,
            payload=freeze_value(self.payload),  # type: ignore[arg-type]
            prev_hash=self.prev_hash,
            event_hash=self.event_hash,
        )


@event.listens_for(AuditEventRecord, "before_update")
def _reject_audit_update(_mapper: Any, _connection: Any, target: AuditEventRecord) -> None:
    raise AppendOnlyViolation(f"audit_events is append-only (update of {target.event_id})")


@event.listens_for(AuditEventRecord, "before_delete")
def _reject_audit_delete(_mapper: Any, _connection: Any, target: AuditEventRecord) -> None:
    raise AppendOnlyViolation(f"audit_events is append-only (delete of {target.event_id})")


@event.listens_for(Session, "do_orm_execute")
def _reject_bulk_audit_mutation(orm_execute_state: ORMExecuteState) -> None:
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    table = getattr(orm_execute_state.statement, "table", None)
    if (mapper is not None and mapper.class_ is AuditEventRecord) or (
        getattr(table, "name", None) == AuditEventRecord.__tablename__
    ):
        raise AppendOnlyViolation("audit_events is append-only (bulk statement rejected)")
