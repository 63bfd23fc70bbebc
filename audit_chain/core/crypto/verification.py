"""
Audit chain and event verification utilities.

Verification is a single left-to-right pass that stops at the first
divergence. Each step depends on every prior step, which is what makes
deletion, reordering, truncation and mutation detectable. These are pure
functions over records; they never write and may be aborted at any step.
"""

from __future__ import annotations

import asyncio
import io
import threading
from collections.abc import AsyncIterable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, BinaryIO

from audit_chain.core.crypto.canonicalization import (
    CanonicalValue,
    SerializationError,
    parse_canonical_json,
)
from audit_chain.core.crypto.events import AuditEvent
from audit_chain.core.crypto.hash_chain import GENESIS_HASH, compute_event_hash

DEFAULT_YIELD_EVERY = 1000


class ChainOutcome(str, Enum):
    """Overall verdict of a chain verification."""

    VERIFIED = "verified"
    EMPTY = "empty"
    FAILED = "failed"


class ChainFailureKind(str, Enum):
    """Why a chain failed verification."""

    CHAIN_BROKEN = "chain_broken"
    HASH_MISMATCH = "hash_mismatch"
    HEAD_MISMATCH = "head_mismatch"
    MALFORMED_RECORD = "malformed_record"


class VerificationCancelled(Exception):
    """Raised when a verification is aborted before it completes."""

    def __init__(self, position: int) -> None:
        super().__init__(f"Verification cancelled at position {position}")
        self.position = position


@dataclass
class ChainVerificationResult:
    """Result of verifying a hash chain.

    Attributes
    ----------
    outcome:
        ``verified``, ``empty`` (no records; callers decide policy) or
        ``failed``.
    head_hash:
        Hash of the last verified record, or the genesis hash when none
        were verified.
    verified_count:
        Number of records successfully verified.
    failure_kind:
        Kind of the first divergence, or ``None``.
    first_break_at:
        Zero-based record position where the chain first broke, or ``None``.
    event_id:
        ``event_id`` of the offending record when it could be read.
    line_number:
        One-based line of the offending record when verifying a log file.
    errors:
        Human-readable descriptions of integrity violations.
    """

    outcome: ChainOutcome = ChainOutcome.EMPTY
    head_hash: str = GENESIS_HASH
    verified_count: int = 0
    failure_kind: ChainFailureKind | None = None
    first_break_at: int | None = None
    event_id: str | None = None
    line_number: int | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.outcome is ChainOutcome.VERIFIED

    @property
    def is_empty(self) -> bool:
        return self.outcome is ChainOutcome.EMPTY

    @property
    def is_failed(self) -> bool:
        return self.outcome is ChainOutcome.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "head_hash": self.head_hash,
            "verified_count": self.verified_count,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "first_break_at": self.first_break_at,
            "event_id": self.event_id,
            "line_number": self.line_number,
            "errors": list(self.errors),
        }


def _extract_event_data(event: AuditEvent) -> Mapping[str, Any]:
    """Return the hashable value tree of an event (hash fields stripped)."""
    return event.to_value()


def verify_event(event: AuditEvent, prev_hash: str | None) -> bool:
    """Verify a single event's hash against its claimed predecessor.

    Parameters
    ----------
    event:
        The record to check.
    prev_hash:
        The hash of the previous event, or ``None`` for the genesis event.

    Returns
    -------
    bool
        ``True`` if the event links to ``prev_hash`` and its stored
        ``event_hash`` matches the recomputed hash.
    """
    effective_prev = prev_hash if prev_hash is not None else GENESIS_HASH
    if event.prev_hash != effective_prev:
        return False
    return compute_event_hash(_extract_event_data(event), effective_prev) == event.event_hash


class ChainWalker:
    """Incremental state for one verification pass.

    Feed records in order with :meth:`feed`; it returns ``False`` once the
    chain has failed and no further records should be read. Call
    :meth:`finish` to apply the head check and obtain the result.
    """

    def __init__(self, expected_head_hash: str | None = None) -> None:
        self._expected_head_hash = expected_head_hash
        self._expected_prev = GENESIS_HASH
        self._position = 0
        self.result = ChainVerificationResult()

    @property
    def position(self) -> int:
        return self._position

    def _fail(
        self,
        kind: ChainFailureKind,
        message: str,
        *,
        event_id: str | None = None,
        line_number: int | None = None,
    ) -> bool:
        result = self.result
        result.outcome = ChainOutcome.FAILED
        result.failure_kind = kind
        result.first_break_at = self._position
        result.event_id = event_id
        result.line_number = line_number
        result.errors.append(message)
        return False

    def _where(self, line_number: int | None) -> str:
        if line_number is not None:
            return f"Event at index {self._position} (line {line_number})"
        return f"Event at index {self._position}"

    def feed(
        self, event: AuditEvent | Mapping[str, Any], *, line_number: int | None = None
    ) -> bool:
        if self.result.is_failed:
            return False
        if not isinstance(event, AuditEvent):
            try:
                event = AuditEvent.from_record(event)
            except SerializationError as exc:
                event_id = event.get("event_id") if isinstance(event, Mapping) else None
                return self.fail_malformed(
                    exc,
                    line_number=line_number,
                    event_id=event_id if isinstance(event_id, str) else None,
                )

        if event.prev_hash != self._expected_prev:
            return self._fail(
                ChainFailureKind.CHAIN_BROKEN,
                f"{self._where(line_number)}: prev_hash mismatch "
                f"(stored={event.prev_hash!r}, expected={self._expected_prev!r})",
                event_id=event.event_id,
                line_number=line_number,
            )

        recomputed = compute_event_hash(_extract_event_data(event), self._expected_prev)
        if recomputed != event.event_hash:
            return self._fail(
                ChainFailureKind.HASH_MISMATCH,
                f"{self._where(line_number)}: hash mismatch "
                f"(stored={event.event_hash!r}, recomputed={recomputed!r})",
                event_id=event.event_id,
                line_number=line_number,
            )

        self._expected_prev = recomputed
        self._position += 1
        self.result.verified_count = self._position
        self.result.head_hash = recomputed
        return True

    def fail_malformed(
        self,
        error: Exception,
        *,
        line_number: int | None = None,
        event_id: str | None = None,
    ) -> bool:
        return self._fail(
            ChainFailureKind.MALFORMED_RECORD,
            f"{self._where(line_number)}: malformed record ({error})",
            event_id=event_id,
            line_number=line_number,
        )

    def finish(self) -> ChainVerificationResult:
        result = self.result
        if result.is_failed:
            return result
        expected = self._expected_head_hash
        if expected is not None and expected != self._expected_prev:
            result.outcome = ChainOutcome.FAILED
            result.failure_kind = ChainFailureKind.HEAD_MISMATCH
            result.errors.append(
                f"Head hash mismatch: expected {expected!r}, got {self._expected_prev!r}"
            )
            return result
        result.outcome = ChainOutcome.VERIFIED if self._position else ChainOutcome.EMPTY
        return result


def verify_hash_chain(
    events: Iterable[AuditEvent | Mapping[str, Any]],
    expected_head_hash: str | None = None,
    *,
    cancel_event: threading.Event | None = None,
) -> ChainVerificationResult:
    """Verify the integrity of an ordered sequence of chained audit events.

    Parameters
    ----------
    events:
        Records in chain order, as :class:`AuditEvent` instances or decoded
        record mappings.
    expected_head_hash:
        When given, the final computed head must equal this value.
    cancel_event:
        Checked before every step; when set, :class:`VerificationCancelled`
        is raised.

    Returns
    -------
    ChainVerificationResult
        Detailed verification outcome.
    """
    walker = ChainWalker(expected_head_hash)
    for event in events:
        if cancel_event is not None and cancel_event.is_set():
            raise VerificationCancelled(walker.position)
        if not walker.feed(event):
            break
    return walker.finish()


async def verify_hash_chain_async(
    events: AsyncIterable[AuditEvent | Mapping[str, Any]]
    | Iterable[AuditEvent | Mapping[str, Any]],
    expected_head_hash: str | None = None,
    *,
    yield_every: int = DEFAULT_YIELD_EVERY,
) -> ChainVerificationResult:
    """Async variant of :func:`verify_hash_chain`.

    Yields to the event loop every ``yield_every`` records so that task
    cancellation and ``asyncio.timeout`` can abort long verifications.
    """
    walker = ChainWalker(expected_head_hash)
    if isinstance(events, AsyncIterable):
        async for event in events:
            if not walker.feed(event):
                break
            if walker.position % yield_every == 0:
                await asyncio.sleep(0)
    else:
        for event in events:
            if not walker.feed(event):
                break
            if walker.position % yield_every == 0:
                await asyncio.sleep(0)
    return walker.finish()


class MalformedLogLine(SerializationError):
    """A JSONL log line that is not a canonical JSON value."""

    def __init__(self, line_number: int, error: SerializationError) -> None:
        super().__init__(f"line {line_number}: {error}")
        self.line_number = line_number
        self.error = error


def iter_log_records(lines: Iterable[bytes | str]) -> Iterator[tuple[int, CanonicalValue]]:
    """Parse JSONL lines lazily, yielding ``(line_number, record)`` pairs.

    Line numbers are one-based and count blank lines, which are skipped.

    Raises
    ------
    MalformedLogLine
        On the first line that cannot be decoded.
    """
    for line_number, raw in enumerate(lines, start=1):
        if not raw.strip():
            continue
        try:
            record = parse_canonical_json(raw)
        except SerializationError as exc:
            raise MalformedLogLine(line_number, exc) from exc
        yield line_number, record


def verify_log_lines(
    lines: Iterable[bytes | str],
    expected_head_hash: str | None = None,
    *,
    cancel_event: threading.Event | None = None,
) -> ChainVerificationResult:
    """Verify a JSONL event log given as an iterable of lines.

    Blank lines are skipped. Lines are parsed one at a time, so memory use
    does not grow with the size of the log.
    """
    walker = ChainWalker(expected_head_hash)
    records = iter_log_records(lines)
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise VerificationCancelled(walker.position)
        try:
            line_number, record = next(records)
        except StopIteration:
            break
        except MalformedLogLine as exc:
            walker.fail_malformed(exc.error, line_number=exc.line_number)
            break
        if not walker.feed(record, line_number=line_number):  # type: ignore[arg-type]
            break
    return walker.finish()


def verify_log_stream(
    stream: BinaryIO,
    expected_head_hash: str | None = None,
    *,
    cancel_event: threading.Event | None = None,
) -> ChainVerificationResult:
    """Verify a JSONL event log read from a binary stream."""
    return verify_log_lines(stream, expected_head_hash, cancel_event=cancel_event)


def verify_log_bytes(
    data: bytes,
    expected_head_hash: str | None = None,
    *,
    cancel_event: threading.Event | None = None,
) -> ChainVerificationResult:
    """Verify a JSONL event log held in memory."""
    return verify_log_stream(io.BytesIO(data), expected_head_hash, cancel_event=cancel_event)


def verify_log_file(
    path: str | Path,
    expected_head_hash: str | None = None,
    *,
    cancel_event: threading.Event | None = None,
) -> ChainVerificationResult:
    """Verify a JSONL event log file without loading it into memory."""
    with open(path, "rb") as stream:
        return verify_log_stream(stream, expected_head_hash, cancel_event=cancel_event)
