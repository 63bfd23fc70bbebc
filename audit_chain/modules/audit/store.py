"""
Append-only audit log stores.

The chain is one global, strictly ordered sequence. Each store owns it and
exposes a single mutating operation, :meth:`AuditLog.append`, which
compare-and-sets the tail: the record is written only if the caller's
``expected_tail`` is still the current tail hash. A stale tail raises
:class:`StaleTailConflict` and leaves the chain untouched.
"""

from __future__ import annotations

import asyncio
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path

from sqlalchemy import desc, func, select, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from audit_chain.core.crypto.canonicalization import parse_canonical_json
from audit_chain.core.crypto.events import AuditEvent, EventFields, chain_event
from audit_chain.core.crypto.hash_chain import GENESIS_HASH
from audit_chain.core.crypto.verification import (
    DEFAULT_YIELD_EVERY,
    ChainVerificationResult,
    verify_hash_chain_async,
    verify_log_file,
    verify_log_lines,
)
from audit_chain.core.logging import get_logger
from audit_chain.db.models import AuditEventRecord

logger = get_logger(__name__)

# pg_advisory_xact_lock key shared by every writer of the global chain.
AUDIT_CHAIN_LOCK_KEY = 0x61756469


class StaleTailConflict(RuntimeError):
    """The caller's assumed tail is no longer the chain tail. Retryable."""

    def __init__(self, expected_tail: str, actual_tail: str | None = None) -> None:
        detail = f"expected tail {expected_tail}"
        if actual_tail is not None:
            detail += f", actual tail {actual_tail}"
        super().__init__(f"Stale audit chain tail ({detail})")
        self.expected_tail = expected_tail
        self.actual_tail = actual_tail


class AuditLog(ABC):
    """Owned, append-only audit chain."""

    @abstractmethod
    async def tail_hash(self) -> str:
        """Return the current head hash, or the genesis hash when empty."""

    @abstractmethod
    async def append(self, event_fields: EventFields, expected_tail: str) -> AuditEvent:
        """Atomically link ``event_fields`` to ``expected_tail`` and persist it."""

    @abstractmethod
    def iter_events(self) -> AsyncIterator[AuditEvent]:
        """Yield every record in chain order."""

    @abstractmethod
    async def count(self) -> int:
        """Return the number of records in the chain."""

    async def verify(
        self,
        expected_head_hash: str | None = None,
        *,
        yield_every: int = DEFAULT_YIELD_EVERY,
    ) -> ChainVerificationResult:
        """Walk the stored chain in order and verify every link."""
        return await verify_hash_chain_async(
            self.iter_events(), expected_head_hash, yield_every=yield_every
        )

    async def close(self) -> None:
        return None


class InMemoryAuditLog(AuditLog):
    """Process-local chain guarded by a single-writer lock."""

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._lock = asyncio.Lock()

    async def tail_hash(self) -> str:
        return self._events[-1].event_hash if self._events else GENESIS_HASH

    async def append(self, event_fields: EventFields, expected_tail: str) -> AuditEvent:
        async with self._lock:
            actual = await self.tail_hash()
            if actual != expected_tail:
                raise StaleTailConflict(expected_tail, actual)
            audit_event = chain_event(event_fields, expected_tail)
            self._events.append(audit_event)
            return audit_event

    async def iter_events(self) -> AsyncIterator[AuditEvent]:
        # Snapshot: appends made while iterating are not observed.
        for audit_event in list(self._events):
            yield audit_event

    async def count(self) -> int:
        return len(self._events)


class JsonlAuditLog(AuditLog):
    """Chain persisted as an append-only JSONL file.

    Each append writes one complete line with a single ``write`` call and
    fsyncs before returning. The cached tail is re-read whenever the file
    size no longer matches what this process last wrote.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()
        self._tail = GENESIS_HASH
        self._count = 0
        self._size: int | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _current_size(self) -> int:
        try:
            return self._path.stat().st_size
        except FileNotFoundError:
            return 0

    def _rescan(self) -> None:
        tail = GENESIS_HASH
        count = 0
        size = self._current_size()
        if size:
            with open(self._path, "rb") as stream:
                for raw in stream:
                    if not raw.strip():
                        continue
                    record = parse_canonical_json(raw)
                    tail = AuditEvent.from_record(record).event_hash
                    count += 1
        self._tail, self._count, self._size = tail, count, size

    def _sync_tail(self) -> str:
        if self._size != self._current_size():
            self._rescan()
        return self._tail

    def _write_line(self, line: bytes) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self._path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o640)
        try:
            os.write(fd, line)
            os.fsync(fd)
        finally:
            os.close(fd)

    async def tail_hash(self) -> str:
        async with self._lock:
            return await asyncio.to_thread(self._sync_tail)

    async def append(self, event_fields: EventFields, expected_tail: str) -> AuditEvent:
        async with self._lock:
            actual = await asyncio.to_thread(self._sync_tail)
            if actual != expected_tail:
                raise StaleTailConflict(expected_tail, actual)
            audit_event = chain_event(event_fields, expected_tail)
            line = audit_event.to_jsonl_line()
            await asyncio.to_thread(self._write_line, line)
            self._tail = audit_event.event_hash
            self._count += 1
            self._size = (self._size or 0) + len(line)
            return audit_event

    async def iter_events(self) -> AsyncIterator[AuditEvent]:
        if not self._path.exists():
            return
        # Read only the bytes present when iteration started.
        limit = self._current_size()
        with open(self._path, "rb") as stream:
            consumed = 0
            for raw in stream:
                consumed += len(raw)
                if consumed > limit:
                    break
                if raw.strip():
                    yield AuditEvent.from_record(parse_canonical_json(raw))

    async def count(self) -> int:
        async with self._lock:
            await asyncio.to_thread(self._sync_tail)
            return self._count

    async def verify(
        self,
        expected_head_hash: str | None = None,
        *,
        yield_every: int = DEFAULT_YIELD_EVERY,
    ) -> ChainVerificationResult:
        """Verify the raw file, so undecodable lines are reported with their line number."""
        if not self._path.exists():
            return verify_log_lines([], expected_head_hash)
        return await asyncio.to_thread(verify_log_file, self._path, expected_head_hash)


class SqlAuditLog(AuditLog):
    """Chain stored in the ``audit_events`` table.

    On PostgreSQL a transaction-scoped advisory lock serializes writers.
    Independently of the lock, the unique ``prev_hash`` and primary-key
    ``chain_sequence`` columns make a forked insert fail, which is reported
    as :class:`StaleTailConflict`.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    async def _read_tail(session: AsyncSession) -> tuple[str, int]:
        result = await session.execute(
            select(AuditEventRecord.event_hash, AuditEventRecord.chain_sequence)
            .order_by(desc(AuditEventRecord.chain_sequence))
            .limit(1)
        )
        row = result.first()
        if row is None:
            return GENESIS_HASH, -1
        return str(row[0]), int(row[1])

    async def tail_hash(self) -> str:
        async with self._session_factory() as session:
            tail, _ = await self._read_tail(session)
            return tail

    async def append(self, event_fields: EventFields, expected_tail: str) -> AuditEvent:
        async with self._session_factory() as session:
            async with session.begin():
                connection = await session.connection()
                if connection.dialect.name == "postgresql":
                    await session.execute(
                        text("SELECT pg_advisory_xact_lock(:key)"),
                        {"key": AUDIT_CHAIN_LOCK_KEY},
                    )
                actual, last_sequence = await self._read_tail(session)
                if actual != expected_tail:
                    raise StaleTailConflict(expected_tail, actual)

                audit_event = chain_event(event_fields, expected_tail)
                session.add(AuditEventRecord.from_event(audit_event, last_sequence + 1))
                try:
                    await session.flush()
                except IntegrityError as exc:
                    logger.info(
                        "audit_append_integrity_conflict",
                        event_id=audit_event.event_id,
                        prev_hash=expected_tail,
                    )
                    raise StaleTailConflict(expected_tail) from exc
            return audit_event

    async def iter_events(self) -> AsyncIterator[AuditEvent]:
        async with self._session_factory() as session:
            result = await session.stream_scalars(
                select(AuditEventRecord)
                .order_by(AuditEventRecord.chain_sequence)
                .execution_options(yield_per=500)
            )
            async for record in result:
                yield record.to_event()

    async def verify(
        self,
        expected_head_hash: str | None = None,
        *,
        yield_every: int = DEFAULT_YIELD_EVERY,
    ) -> ChainVerificationResult:
        """Verify stored rows as raw records, so a corrupted row is reported at its position."""
        async with self._session_factory() as session:
            result = await session.stream_scalars(
                select(AuditEventRecord)
                .order_by(AuditEventRecord.chain_sequence)
                .execution_options(yield_per=500)
            )
            records = (record.to_record() async for record in result)
            return await verify_hash_chain_async(
                records, expected_head_hash, yield_every=yield_every
            )

    async def count(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(select(func.count()).select_from(AuditEventRecord))
            return int(result.scalar() or 0)
