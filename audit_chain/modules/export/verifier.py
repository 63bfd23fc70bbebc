"""
Export bundle verification.

A bundle is accepted only if every check passes:

- the SHA-256 of the raw audit log equals ``manifest.audit_events_sha256``;
- the audit log is a valid hash chain whose head equals
  ``manifest.audit_head_hash``;
- every document listed in the manifest exists inside the bundle and hashes
  to its recorded ``sha256``;
- when the bundle ships a ``checksums.txt``, every listed file matches.

All checks run even after one fails, so a rejected bundle reports every
problem found. Verification never writes to the bundle.
"""

from __future__ import annotations

import hashlib
import io
import posixpath
import threading
import zipfile
import zlib
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import IO, Any, BinaryIO

from audit_chain.core.crypto.verification import (
    ChainFailureKind,
    ChainOutcome,
    ChainVerificationResult,
    verify_log_lines,
)
from audit_chain.core.logging import get_logger
from audit_chain.modules.export.checksums import ChecksumListingMalformed, parse_checksums
from audit_chain.modules.export.schemas import (
    AUDIT_LOG_FILENAME,
    CHECKSUMS_FILENAME,
    MANIFEST_FILENAME,
    ExportManifest,
    ManifestMalformed,
    load_manifest,
)

logger = get_logger(__name__)

_CHUNK_SIZE = 64 * 1024

# Raised while reading a damaged file, e.g. a zip entry failing its CRC check.
_READ_ERRORS = (zipfile.BadZipFile, zlib.error, OSError)

DocumentProvider = Callable[[str], "BinaryIO | bytes | None"]


class MismatchKind(str, Enum):
    """Why a bundle was rejected."""

    AUDIT_LOG_MISSING = "audit_log_missing"
    AUDIT_LOG_CHECKSUM_MISMATCH = "audit_log_checksum_mismatch"
    CHAIN_BROKEN = "chain_broken"
    HASH_MISMATCH = "hash_mismatch"
    HEAD_MISMATCH = "head_mismatch"
    MALFORMED_RECORD = "malformed_record"
    CHECKSUM_MISMATCH = "checksum_mismatch"
    DOCUMENT_MISSING = "document_missing"
    UNSAFE_PATH = "unsafe_path"
    CHECKSUM_LISTING_MISMATCH = "checksum_listing_mismatch"


_CHAIN_MISMATCH_KINDS = {
    ChainFailureKind.CHAIN_BROKEN: MismatchKind.CHAIN_BROKEN,
    ChainFailureKind.HASH_MISMATCH: MismatchKind.HASH_MISMATCH,
    ChainFailureKind.HEAD_MISMATCH: MismatchKind.HEAD_MISMATCH,
    ChainFailureKind.MALFORMED_RECORD: MismatchKind.MALFORMED_RECORD,
}


class UnsafeBundlePath(ValueError):
    """A path inside a manifest or listing points outside the bundle."""


@dataclass(frozen=True)
class BundleMismatch:
    kind: MismatchKind
    detail: str
    path: str | None = None
    slot_name: str | None = None
    position: int | None = None
    line_number: int | None = None
    event_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "detail": self.detail,
            "path": self.path,
            "slot_name": self.slot_name,
            "position": self.position,
            "line_number": self.line_number,
            "event_id": self.event_id,
        }


@dataclass
class BundleVerificationReport:
    """Outcome of verifying one export bundle."""

    accepted: bool
    chain: ChainVerificationResult
    mismatches: list[BundleMismatch] = field(default_factory=list)
    manifest: ExportManifest | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "chain": self.chain.to_dict(),
            "mismatches": [mismatch.to_dict() for mismatch in self.mismatches],
        }

    def describe(self) -> list[str]:
        """Human-readable report lines."""
        lines = [
            f"audit chain: {self.chain.outcome.value} "
            f"({self.chain.verified_count} events, head {self.chain.head_hash})"
        ]
        for mismatch in self.mismatches:
            where = [
                f"{label} {value}"
                for label, value in (
                    ("position", mismatch.position),
                    ("line", mismatch.line_number),
                    ("slot", mismatch.slot_name),
                    ("file", mismatch.path),
                )
                if value is not None
            ]
            suffix = f" [{', '.join(where)}]" if where else ""
            lines.append(f"{mismatch.kind.value}: {mismatch.detail}{suffix}")
        lines.append("bundle ACCEPTED" if self.accepted else "bundle REJECTED")
        return lines


def safe_bundle_path(path: str) -> str:
    """
    Normalize a bundle-relative path.

    Raises
    ------
    UnsafeBundlePath
        If the path is absolute, uses a URL scheme or a drive letter, or
        climbs out of the bundle with ``..``.
    """
    candidate = path.replace("\\", "/")
    if not candidate or candidate.startswith("/") or "://" in candidate:
        raise UnsafeBundlePath(f"Path is not bundle-relative: {path!r}")
    if len(candidate) >= 2 and candidate[1] == ":":
        raise UnsafeBundlePath(f"Path is not bundle-relative: {path!r}")
    if ".." in PurePosixPath(candidate).parts:
        raise UnsafeBundlePath(f"Path escapes the bundle: {path!r}")
    normalized = posixpath.normpath(candidate)
    if normalized in (".", ""):
        raise UnsafeBundlePath(f"Path does not name a file: {path!r}")
    return normalized


def _as_stream(source: BinaryIO | bytes) -> IO[bytes]:
    return io.BytesIO(source) if isinstance(source, bytes) else source


def _sha256_stream(stream: IO[bytes]) -> str:
    digest = hashlib.sha256()
    for chunk in iter(lambda: stream.read(_CHUNK_SIZE), b""):
        digest.update(chunk)
    return digest.hexdigest()


def _verify_log(
    log: BinaryIO | bytes,
    expected_head_hash: str,
    cancel_event: threading.Event | None,
) -> tuple[ChainVerificationResult, str | None]:
    """Verify the chain and hash the raw bytes in the same streaming pass.

    The digest is ``None`` when the log could not be read to the end.
    """
    stream = _as_stream(log)
    digest = hashlib.sha256()
    read_error: Exception | None = None

    def hashed_lines() -> Iterator[bytes]:
        nonlocal read_error
        try:
            for line in stream:
                digest.update(line)
                yield line
        except _READ_ERRORS as exc:
            read_error = exc

    result = verify_log_lines(hashed_lines(), expected_head_hash, cancel_event=cancel_event)
    if read_error is None:
        # The walk stops at the first break; hash whatever it left unread.
        try:
            for chunk in iter(lambda: stream.read(_CHUNK_SIZE), b""):
                digest.update(chunk)
        except _READ_ERRORS as exc:
            read_error = exc

    if read_error is None:
        return result, digest.hexdigest()
    if not result.is_failed or result.failure_kind is ChainFailureKind.HEAD_MISMATCH:
        # The head check only failed because the unread tail never reached the walker.
        result.outcome = ChainOutcome.FAILED
        result.failure_kind = ChainFailureKind.MALFORMED_RECORD
        result.first_break_at = result.verified_count
        result.event_id = None
        result.line_number = None
        result.errors.append(
            f"Event at index {result.verified_count}: {AUDIT_LOG_FILENAME} "
            f"could not be read ({read_error})"
        )
    return result, None


def _chain_mismatches(result: ChainVerificationResult) -> list[BundleMismatch]:
    if not result.is_failed or result.failure_kind is None:
        return []
    return [
        BundleMismatch(
            kind=_CHAIN_MISMATCH_KINDS[result.failure_kind],
            detail=result.errors[-1] if result.errors else result.failure_kind.value,
            path=AUDIT_LOG_FILENAME,
            position=result.first_break_at,
            line_number=result.line_number,
            event_id=result.event_id,
        )
    ]


def _check_file(
    provider: DocumentProvider,
    path: str,
    expected_sha256: str,
    *,
    slot_name: str | None = None,
    checksum_kind: MismatchKind = MismatchKind.CHECKSUM_MISMATCH,
) -> BundleMismatch | None:
    try:
        relative = safe_bundle_path(path)
        source = provider(relative)
    except UnsafeBundlePath as exc:
        return BundleMismatch(MismatchKind.UNSAFE_PATH, str(exc), path=path, slot_name=slot_name)
    except _READ_ERRORS as exc:
        return BundleMismatch(
            checksum_kind,
            f"{path} could not be read: {exc}",
            path=path,
            slot_name=slot_name,
        )
    if source is None:
        return BundleMismatch(
            MismatchKind.DOCUMENT_MISSING,
            f"{path} is not present in the bundle",
            path=path,
            slot_name=slot_name,
        )
    stream = _as_stream(source)
    try:
        actual = _sha256_stream(stream)
    except _READ_ERRORS as exc:
        return BundleMismatch(
            checksum_kind,
            f"{path} could not be read: {exc}",
            path=path,
            slot_name=slot_name,
        )
    finally:
        stream.close()
    if actual != expected_sha256.lower():
        return BundleMismatch(
            checksum_kind,
            f"Checksum mismatch for {path}: expected {expected_sha256}, got {actual}",
            path=path,
            slot_name=slot_name,
        )
    return None


def verify_bundle(
    log: BinaryIO | bytes | None,
    manifest: ExportManifest,
    document_provider: DocumentProvider,
    *,
    expected_head_hash: str | None = None,
    cancel_event: threading.Event | None = None,
) -> BundleVerificationReport:
    """
    Verify an audit log and its documents against a manifest.

    Parameters
    ----------
    log:
        Raw ``audit.jsonl`` bytes or a binary stream over them; ``None`` when
        the bundle has no audit log.
    manifest:
        The parsed bundle manifest.
    document_provider:
        Called with each normalized bundle-relative path; returns the file's
        bytes or a binary stream, or ``None`` when the file does not exist.
        May raise :class:`UnsafeBundlePath`.
    expected_head_hash:
        Head hash the operator obtained out of band. When given, it must
        equal the manifest head (and therefore the verified chain head).
    cancel_event:
        Aborts chain verification with ``VerificationCancelled`` when set.
    """
    mismatches: list[BundleMismatch] = []

    if expected_head_hash is not None and expected_head_hash != manifest.audit_head_hash:
        mismatches.append(
            BundleMismatch(
                MismatchKind.HEAD_MISMATCH,
                f"Manifest head {manifest.audit_head_hash} does not match "
                f"expected head {expected_head_hash}",
                path=MANIFEST_FILENAME,
            )
        )

    if log is None:
        chain = verify_log_lines([], manifest.audit_head_hash)
        mismatches.append(
            BundleMismatch(
                MismatchKind.AUDIT_LOG_MISSING,
                f"{AUDIT_LOG_FILENAME} is not present in the bundle",
                path=AUDIT_LOG_FILENAME,
            )
        )
    else:
        chain, log_sha256 = _verify_log(log, manifest.audit_head_hash, cancel_event)
        if log_sha256 is None:
            mismatches.append(
                BundleMismatch(
                    MismatchKind.AUDIT_LOG_CHECKSUM_MISMATCH,
                    f"{AUDIT_LOG_FILENAME} could not be read to the end",
                    path=AUDIT_LOG_FILENAME,
                )
            )
        elif log_sha256 != manifest.audit_events_sha256:
            mismatches.append(
                BundleMismatch(
                    MismatchKind.AUDIT_LOG_CHECKSUM_MISMATCH,
                    f"{AUDIT_LOG_FILENAME} checksum mismatch: expected "
                    f"{manifest.audit_events_sha256}, got {log_sha256}",
                    path=AUDIT_LOG_FILENAME,
                )
            )
        mismatches.extend(_chain_mismatches(chain))

    for document in manifest.documents:
        mismatch = _check_file(
            document_provider,
            document.bundle_path,
            document.sha256,
            slot_name=document.slot_name,
        )
        if mismatch is not None:
            mismatches.append(mismatch)

    report = BundleVerificationReport(
        accepted=not mismatches,
        chain=chain,
        mismatches=mismatches,
        manifest=manifest,
    )
    if report.accepted:
        logger.info(
            "bundle_verified",
            case_id=manifest.case_id,
            event_count=chain.verified_count,
            head_hash=chain.head_hash,
            documents=len(manifest.documents),
        )
    else:
        logger.warning(
            "bundle_rejected",
            case_id=manifest.case_id,
            mismatches=[mismatch.kind.value for mismatch in mismatches],
        )
    return report


class DirectoryBundle:
    """Read access to an unpacked bundle directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._resolved_root = self.root.resolve()

    def open(self, path: str) -> BinaryIO | None:
        target = (self.root / safe_bundle_path(path)).resolve()
        if not target.is_relative_to(self._resolved_root):
            raise UnsafeBundlePath(f"Path resolves outside the bundle: {path!r}")
        if not target.is_file():
            return None
        return open(target, "rb")

    def close(self) -> None:
        return None


class ZipBundle:
    """Read access to a zipped bundle.

    Archives whose entries all live under a single top-level folder are
    read relative to that folder.
    """

    def __init__(self, path: str | Path) -> None:
        self._zip = zipfile.ZipFile(path)
        names = {info.filename for info in self._zip.infolist() if not info.is_dir()}
        self._names = names
        self._prefix = ""
        if MANIFEST_FILENAME not in names:
            nested = [name for name in names if name.endswith(f"/{MANIFEST_FILENAME}")]
            if len(nested) == 1 and nested[0].count("/") == 1:
                self._prefix = nested[0][: -len(MANIFEST_FILENAME)]

    def open(self, path: str) -> BinaryIO | None:
        name = self._prefix + safe_bundle_path(path)
        if name not in self._names:
            return None
        return self._zip.open(name)  # type: ignore[return-value]

    def close(self) -> None:
        self._zip.close()


@contextmanager
def open_bundle(path: str | Path) -> Iterator[DirectoryBundle | ZipBundle]:
    """Open a bundle directory or ``.zip`` archive for reading."""
    bundle_path = Path(path)
    if bundle_path.is_dir():
        bundle: DirectoryBundle | ZipBundle = DirectoryBundle(bundle_path)
    elif bundle_path.is_file() and zipfile.is_zipfile(bundle_path):
        try:
            bundle = ZipBundle(bundle_path)
        except zipfile.BadZipFile as exc:
            raise ManifestMalformed(f"{bundle_path} is not a readable zip archive: {exc}") from exc
    elif bundle_path.exists():
        raise ManifestMalformed(f"{bundle_path} is neither a directory nor a zip archive")
    else:
        raise FileNotFoundError(f"Bundle not found: {bundle_path}")
    try:
        yield bundle
    finally:
        bundle.close()


def _read_all(source: BinaryIO | None) -> bytes | None:
    if source is None:
        return None
    with source:
        return source.read()


def _check_listing(bundle: DirectoryBundle | ZipBundle) -> list[BundleMismatch]:
    try:
        data = _read_all(bundle.open(CHECKSUMS_FILENAME))
        if data is None:
            return []
        entries = parse_checksums(data)
    except (ChecksumListingMalformed, *_READ_ERRORS) as exc:
        return [
            BundleMismatch(
                MismatchKind.CHECKSUM_LISTING_MISMATCH,
                str(exc),
                path=CHECKSUMS_FILENAME,
            )
        ]
    mismatches = []
    for entry in entries:
        mismatch = _check_file(
            bundle.open,
            entry.path,
            entry.sha256,
            checksum_kind=MismatchKind.CHECKSUM_LISTING_MISMATCH,
        )
        if mismatch is not None:
            mismatches.append(mismatch)
    return mismatches


def verify_bundle_path(
    path: str | Path,
    expected_head_hash: str | None = None,
    *,
    cancel_event: threading.Event | None = None,
) -> BundleVerificationReport:
    """
    Verify a bundle directory or ``.zip`` archive.

    Raises
    ------
    FileNotFoundError
        If ``path`` does not exist.
    ManifestMalformed
        If the bundle has no readable, valid ``manifest.json``.
    """
    with open_bundle(path) as bundle:
        try:
            manifest_bytes = _read_all(bundle.open(MANIFEST_FILENAME))
        except _READ_ERRORS as exc:
            raise ManifestMalformed(f"{MANIFEST_FILENAME} could not be read: {exc}") from exc
        if manifest_bytes is None:
            raise ManifestMalformed(f"{MANIFEST_FILENAME} not found in {path}")
        manifest = load_manifest(manifest_bytes)

        log_stream = bundle.open(AUDIT_LOG_FILENAME)
        try:
            report = verify_bundle(
                log_stream,
                manifest,
                bundle.open,
                expected_head_hash=expected_head_hash,
                cancel_event=cancel_event,
            )
        finally:
            if log_stream is not None:
                log_stream.close()

        listing_mismatches = _check_listing(bundle)
        if listing_mismatches:
            report.mismatches.extend(listing_mismatches)
            report.accepted = False
            logger.warning(
                "bundle_checksum_listing_mismatch",
                case_id=manifest.case_id,
                paths=[mismatch.path for mismatch in listing_mismatches],
            )
        return report
