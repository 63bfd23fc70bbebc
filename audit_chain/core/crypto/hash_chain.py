"""
SHA-256 hash chaining for sequential audit event integrity.

Each event hash is computed as ``SHA256(prev_hash + canonical_json(event_data))``
where ``prev_hash`` contributes its 64 ASCII hex characters. Modifying,
removing or reordering any event therefore invalidates every later hash.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Mapping
from typing import Any

from audit_chain.core.crypto.canonicalization import (
    CANONICALIZATION_SORTED_JSON_V1,
    SHA256_ALGORITHM,
    canonicalize,
)

HASH_CANONICALIZATION = CANONICALIZATION_SORTED_JSON_V1
HASH_ALGORITHM_SHA256 = SHA256_ALGORITHM

# Chain-metadata fields; computed from the rest of the record, never hashed.
HASH_FIELDS: frozenset[str] = frozenset({"prev_hash", "event_hash"})

_HEX_DIGEST_RE = re.compile(r"[0-9a-f]{64}")


def is_hex_digest(value: object) -> bool:
    """Return ``True`` for a 64-character lowercase hex string."""
    return isinstance(value, str) and _HEX_DIGEST_RE.fullmatch(value) is not None


def canonical_json(data: Mapping[str, Any]) -> bytes:
    """Produce deterministic JSON bytes from a mapping of event fields.

    Parameters
    ----------
    data:
        The event fields to serialize. Must not contain hash fields.

    Returns
    -------
    bytes
        UTF-8 encoded canonical JSON.
    """
    leaked = HASH_FIELDS.intersection(data)
    if leaked:
        raise ValueError(f"Hash fields must not be hashed: {sorted(leaked)}")
    return canonicalize(data)


def compute_event_hash(event_data: Mapping[str, Any], prev_hash: str) -> str:
    """Compute the SHA-256 hash for an audit event in a chain.

    The hash covers the previous event's hash followed by the canonical
    encoding of the event's own (non-hash) fields.

    Parameters
    ----------
    event_data:
        Event fields to include in the hash.
    prev_hash:
        Hex-encoded SHA-256 hash of the previous event in the chain.
        Use :data:`GENESIS_HASH` for the first event.

    Returns
    -------
    str
        Hex-encoded SHA-256 digest.
    """
    if not is_hex_digest(prev_hash):
        raise ValueError(f"prev_hash must be 64 lowercase hex characters: {prev_hash!r}")
    hasher = hashlib.sha256()
    hasher.update(prev_hash.encode("ascii"))
    hasher.update(canonical_json(event_data))
    return hasher.hexdigest()


# Predecessor hash of the first event in a chain.
GENESIS_HASH: str = "0" * 64
