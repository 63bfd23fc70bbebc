"""
Export bundle writer.

A bundle directory contains::

    audit.jsonl             one canonical audit record per line, chain order
    documents/<document_id> evidence files
    manifest.json           ExportManifest
    checksums.txt           sha256sum-style listing of every other file

and is optionally packaged as a sibling ``.zip`` archive with the same
relative layout.
"""

from __future__ import annotations

import asyncio
import hashlib
import zipfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from audit_chain.core.config import get_settings
from audit_chain.core.crypto.hash_chain import GENESIS_HASH
from audit_chain.core.logging import get_logger
from audit_chain.modules.audit.store import AuditLog
from audit_chain.modules.export.checksums import ChecksumEntry, render_checksums
from audit_chain.modules.export.schemas import (
    AUDIT_LOG_FILENAME,
    CHECKSUMS_FILENAME,
    DOCUMENTS_DIR,
    MANIFEST_FILENAME,
    DocumentEntry,
    ExportManifest,
)
from audit_chain.modules.export.verifier import safe_bundle_path

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExportDocument:
    """An evidence document to include in a bundle."""

    slot_name: str
    document_id: str
    document_type: str
    title: str
    content: bytes


@dataclass(frozen=True)
class AuditLogDigest:
    head_hash: str
    sha256: str
    event_count: int


@dataclass(frozen=True)
class ExportResult:
    """Where a bundle was written and what binds it together."""

    bundle_dir: Path
    zip_path: Path | None
    manifest: ExportManifest
    manifest_sha256: str


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


async def write_audit_log(
    log: AuditLog, path: Path, *, batch_size: int = 500
) -> AuditLogDigest:
    """Stream every record of ``log`` to ``path`` as JSONL.

    File I/O runs in worker threads, ``batch_size`` lines per write.
    """
    digest = hashlib.sha256()
    head_hash = GENESIS_HASH
    count = 0
    batch: list[bytes] = []
    await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
    stream = await asyncio.to_thread(open, path, "wb")
    try:
        async for audit_event in log.iter_events():
            line = audit_event.to_jsonl_line()
            batch.append(line)
            digest.update(line)
            head_hash = audit_event.event_hash
            count += 1
            if len(batch) >= batch_size:
                await asyncio.to_thread(stream.write, b"".join(batch))
                batch.clear()
        if batch:
            await asyncio.to_thread(stream.write, b"".join(batch))
    finally:
        await asyncio.to_thread(stream.close)
    return AuditLogDigest(head_hash=head_hash, sha256=digest.hexdigest(), event_count=count)


def create_zip(source_dir: Path, zip_path: Path) -> None:
    """Package ``source_dir`` with entry names relative to it."""
    with zipfile.ZipFile(zip_path, "w", zipfile.ZIP_DEFLATED) as archive:
        for entry in sorted(source_dir.rglob("*")):
            name = entry.relative_to(source_dir).as_posix()
            if entry.is_dir():
                archive.writestr(name + "/", b"")
            else:
                archive.write(entry, name)


class BundleExporter:
    """Write export bundles for a case from an audit log and its documents."""

    def __init__(
        self,
        log: AuditLog,
        export_dir: Path | None = None,
        *,
        create_zip_archive: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._log = log
        self._export_dir = export_dir or settings.export_dir
        self._create_zip = (
            settings.export_create_zip if create_zip_archive is None else create_zip_archive
        )

    async def export(
        self,
        *,
        case_id: str,
        case_type: str,
        documents: Sequence[ExportDocument] = (),
        extra_files: Mapping[str, bytes] | None = None,
    ) -> ExportResult:
        """
        Write a bundle for ``case_id`` and return its location.

        ``extra_files`` are written at their bundle-relative paths and listed
        in ``checksums.txt`` but not in the manifest.
        """
        safe_bundle_path(case_id)
        exported_at = datetime.now(UTC)
        bundle_dir = self._export_dir / case_id / exported_at.strftime("%Y%m%dT%H%M%S%fZ")
        documents_dir = bundle_dir / DOCUMENTS_DIR
        documents_dir.mkdir(parents=True, exist_ok=False)

        audit_digest = await write_audit_log(self._log, bundle_dir / AUDIT_LOG_FILENAME)

        checksums = [ChecksumEntry(audit_digest.sha256, AUDIT_LOG_FILENAME)]
        entries: list[DocumentEntry] = []
        for document in sorted(documents, key=lambda doc: doc.slot_name):
            bundle_path = safe_bundle_path(f"{DOCUMENTS_DIR}/{document.document_id}")
            target = bundle_dir / bundle_path
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_bytes, document.content)
            sha256 = _sha256(document.content)
            entries.append(
                DocumentEntry(
                    slot_name=document.slot_name,
                    document_id=document.document_id,
                    document_type=document.document_type,
                    title=document.title,
                    sha256=sha256,
                    bundle_path=bundle_path,
                )
            )
            checksums.append(ChecksumEntry(sha256, bundle_path))

        for relative, content in (extra_files or {}).items():
            bundle_path = safe_bundle_path(relative)
            if bundle_path in (MANIFEST_FILENAME, AUDIT_LOG_FILENAME, CHECKSUMS_FILENAME):
                raise ValueError(f"{bundle_path} is reserved in export bundles")
            target = bundle_dir / bundle_path
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(target.write_bytes, content)
            checksums.append(ChecksumEntry(_sha256(content), bundle_path))

        manifest = ExportManifest(
            case_id=case_id,
            case_type=case_type,
            exported_at=exported_at.isoformat(),
            audit_head_hash=audit_digest.head_hash,
            audit_events_sha256=audit_digest.sha256,
            documents=tuple(entries),
        )
        manifest_bytes = manifest.to_json_bytes()
        (bundle_dir / MANIFEST_FILENAME).write_bytes(manifest_bytes)
        manifest_sha256 = _sha256(manifest_bytes)
        checksums.append(ChecksumEntry(manifest_sha256, MANIFEST_FILENAME))

        (bundle_dir / CHECKSUMS_FILENAME).write_bytes(render_checksums(checksums))

        zip_path: Path | None = None
        if self._create_zip:
            zip_path = bundle_dir.with_suffix(".zip")
            await asyncio.to_thread(create_zip, bundle_dir, zip_path)

        logger.info(
            "bundle_exported",
            case_id=case_id,
            bundle_dir=str(bundle_dir),
            event_count=audit_digest.event_count,
            head_hash=audit_digest.head_hash,
            documents=len(entries),
            manifest_sha256=manifest_sha256,
        )
        return ExportResult(
            bundle_dir=bundle_dir,
            zip_path=zip_path,
            manifest=manifest,
            manifest_sha256=manifest_sha256,
        )
