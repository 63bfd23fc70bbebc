"""Pydantic schemas for export bundle manifests."""

from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from audit_chain.core.crypto.canonicalization import (
    SerializationError,
    parse_canonical_json,
    thaw_value,
)

HexDigest = Annotated[str, Field(pattern=r"^[0-9a-f]{64}$")]

MANIFEST_FILENAME = "manifest.json"
AUDIT_LOG_FILENAME = "audit.jsonl"
CHECKSUMS_FILENAME = "checksums.txt"
DOCUMENTS_DIR = "documents"


class ManifestMalformed(ValueError):
    """The manifest is not valid JSON or does not describe a bundle."""


class DocumentEntry(BaseModel):
    """One evidence document shipped in an export bundle."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    slot_name: str
    document_id: str
    document_type: str
    title: str
    sha256: HexDigest
    bundle_path: str = Field(min_length=1)

    @field_validator("bundle_path")
    @classmethod
    def _normalize_separators(cls, value: str) -> str:
        return value.replace("\\", "/")


class ExportManifest(BaseModel):
    """Binds an audit log and a set of documents into one verifiable unit."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    case_id: str
    case_type: str
    exported_at: str
    audit_head_hash: HexDigest
    audit_events_sha256: HexDigest
    documents: tuple[DocumentEntry, ...] = ()

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json().encode("utf-8")


def load_manifest(data: bytes | str) -> ExportManifest:
    """
    Parse ``manifest.json`` bytes into an :class:`ExportManifest`.

    Duplicate keys, invalid UTF-8, missing fields and malformed digests
    are rejected. Unknown fields are ignored.

    Raises
    ------
    ManifestMalformed
        If the bytes do not describe a valid manifest.
    """
    try:
        value = thaw_value(parse_canonical_json(data))
    except SerializationError as exc:
        raise ManifestMalformed(f"Invalid manifest JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise ManifestMalformed("Manifest must be a JSON object")
    try:
        return ExportManifest.model_validate(value)
    except ValidationError as exc:
        raise ManifestMalformed(f"Invalid manifest: {exc}") from exc
