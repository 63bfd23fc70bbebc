"""
Cryptographic audit trail primitives.

Pure library modules for tamper-evident integrity:
- **canonicalization**: deterministic byte encoding of restricted value trees
- **hash_chain**: SHA-256 hash chaining for sequential event integrity
- **events**: immutable audit records and the pure append step
- **verification**: chain and event verification utilities
"""

from audit_chain.core.crypto.canonicalization import (
    CANONICALIZATION_SORTED_JSON_V1,
    SHA256_ALGORITHM,
    CanonicalObject,
    CanonicalValue,
    SerializationError,
    canonicalize,
    freeze_value,
    parse_canonical_json,
    sha256_hex,
    sha256_hex_canonical,
    thaw_value,
)
from audit_chain.core.crypto.events import AuditEvent, EventFields, Tier, chain_event
from audit_chain.core.crypto.hash_chain import (
    GENESIS_HASH,
    canonical_json,
    compute_event_hash,
    is_hex_digest,
)
from audit_chain.core.crypto.verification import (
    ChainFailureKind,
    ChainOutcome,
    ChainVerificationResult,
    ChainWalker,
    MalformedLogLine,
    VerificationCancelled,
    iter_log_records,
    verify_event,
    verify_hash_chain,
    verify_hash_chain_async,
    verify_log_bytes,
    verify_log_file,
    verify_log_lines,
    verify_log_stream,
)

__all__ = [
    "CANONICALIZATION_SORTED_JSON_V1",
    "SHA256_ALGORITHM",
    "CanonicalObject",
    "CanonicalValue",
    "SerializationError",
    "canonicalize",
    "freeze_value",
    "thaw_value",
    "parse_canonical_json",
    "sha256_hex",
    "sha256_hex_canonical",
    "GENESIS_HASH",
    "canonical_json",
    "compute_event_hash",
    "is_hex_digest",
    "AuditEvent",
    "EventFields",
    "Tier",
    "chain_event",
    "ChainFailureKind",
    "ChainOutcome",
    "ChainVerificationResult",
    "ChainWalker",
    "MalformedLogLine",
    "VerificationCancelled",
    "iter_log_records",
    "verify_event",
    "verify_hash_chain",
    "verify_hash_chain_async",
    "verify_log_bytes",
    "verify_log_file",
    "verify_log_lines",
    "verify_log_stream",
]
