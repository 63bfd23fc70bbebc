"""
Producer-facing audit chain API.

``append_event()`` is the single entry point for recording privileged
actions. It reads the current tail, links the new record to it, and asks
the store to compare-and-append. A lost race (:class:`StaleTailConflict`)
is retried with a freshly read tail; any other storage failure, or running
out of attempts, raises :class:`AuditWriteFailed`. Callers must treat that
as fatal for the action being audited: an unaudited privileged action is
not allowed to proceed.
"""

from __future__ import annotations

from typing import Any

from audit_chain.core.config import Settings, get_settings
from audit_chain.core.crypto.events import AuditEvent, EventFields, Tier
from audit_chain.core.crypto.verification import DEFAULT_YIELD_EVERY, ChainVerificationResult
from audit_chain.core.logging import get_logger
from audit_chain.modules.audit.store import (
    AuditLog,
    InMemoryAuditLog,
    JsonlAuditLog,
    SqlAuditLog,
    StaleTailConflict,
)

logger = get_logger(__name__)


class AuditWriteFailed(RuntimeError):
    """The audit record could not be persisted; the audited action must fail."""


class AuditChainService:
    """Append to and verify the global audit chain held by an :class:`AuditLog`."""

    def __init__(
        self,
        log: AuditLog,
        *,
        max_retries: int = 5,
        verify_yield_every: int = DEFAULT_YIELD_EVERY,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._log = log
        self._max_retries = max_retries
        self._verify_yield_every = verify_yield_every

    @property
    def log(self) -> AuditLog:
        return self._log

    async def append_event(
        self,
        *,
        actor_principal_id: str,
        action: str,
        tier: Tier | str,
        payload: Any,
        case_id: str | None = None,
    ) -> AuditEvent:
        """
        Record one audit event at the tail of the chain.

        Parameters
        ----------
        actor_principal_id:
            Principal that performed the action.
        action:
            Short verb describing the action, e.g. ``"create_incident"``.
        tier:
            Sensitivity tier (``green``, ``amber`` or ``red``).
        payload:
            JSON-object-like context; must be canonically serializable.
        case_id:
            Optional case the action belongs to.

        Raises
        ------
        SerializationError
            If the fields or payload cannot be canonically encoded. Nothing
            is written.
        AuditWriteFailed
            If the record could not be persisted.
        """
        event_fields = EventFields.new(
            actor_principal_id=actor_principal_id,
            action=action,
            tier=tier,
            payload=payload,
            case_id=case_id,
        )

        for attempt in range(1, self._max_retries + 1):
            try:
                tail = await self._log.tail_hash()
                audit_event = await self._log.append(event_fields, tail)
            except StaleTailConflict as exc:
                logger.info(
                    "audit_append_conflict",
                    event_id=event_fields.event_id,
                    attempt=attempt,
                    expected_tail=exc.expected_tail,
                )
                continue
            except Exception as exc:
                logger.warning(
                    "audit_event_write_failed",
                    event_id=event_fields.event_id,
                    action=action,
                    exc_info=True,
                )
                raise AuditWriteFailed(f"Audit write failed for {event_fields.event_id}") from exc

            logger.info(
                "audit_event_appended",
                event_id=audit_event.event_id,
                action=audit_event.action,
                tier=audit_event.tier.value,
                case_id=audit_event.case_id,
                event_hash=audit_event.event_hash,
            )
            return audit_event

        logger.warning(
            "audit_event_write_failed",
            event_id=event_fields.event_id,
            action=action,
            reason="tail contention",
            attempts=self._max_retries,
        )
        raise AuditWriteFailed(
            f"Audit write failed for {event_fields.event_id}: "
            f"tail still contended after {self._max_retries} attempts"
        )

    async def verify(self, expected_head_hash: str | None = None) -> ChainVerificationResult:
        """Verify the whole stored chain, optionally against a known head hash."""
        result = await self._log.verify(
            expected_head_hash, yield_every=self._verify_yield_every
        )
        if result.is_failed:
            logger.warning(
                "audit_chain_broken",
                failure_kind=result.failure_kind.value if result.failure_kind else None,
                first_break_at=result.first_break_at,
                event_id=result.event_id,
            )
        else:
            logger.info(
                "audit_chain_verified",
                outcome=result.outcome.value,
                verified_count=result.verified_count,
                head_hash=result.head_hash,
            )
        return result


async def build_audit_log(settings: Settings | None = None) -> AuditLog:
    """Create the audit log selected by ``audit_store_backend``."""
    settings = settings or get_settings()
    if settings.audit_store_backend == "jsonl":
        return JsonlAuditLog(settings.audit_jsonl_path)
    if settings.audit_store_backend == "sql":
        from audit_chain.db.session import get_session_factory, init_db

        await init_db(settings)
        return SqlAuditLog(get_session_factory())
    return InMemoryAuditLog()
