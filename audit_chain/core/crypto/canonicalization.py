"""Canonical JSON encoding used as the exact input to audit hashing.

The value tree is restricted to ``null``, booleans, integers, strings, arrays
and objects with unique string keys. Trees are frozen on construction:
arrays become tuples and objects become :class:`CanonicalObject`, a read-only
mapping that keeps its keys in Unicode code-point order. Two independent
implementations given the same logical value must emit byte-identical output,
so floats are rejected outright.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Iterator, Mapping
from typing import Any, TypeAlias, Union

CANONICALIZATION_SORTED_JSON_V1 = "sorted-json-v1"
SHA256_ALGORITHM = "sha-256"

# Integers outside this range have no portable JSON representation.
INT_MIN = -(2**63)
INT_MAX = 2**64 - 1


class SerializationError(ValueError):
    """Raised when a value tree violates the canonicalization constraints."""


class CanonicalObject(Mapping[str, "CanonicalValue"]):
    """Immutable JSON object whose keys are unique and sorted by code point."""

    __slots__ = ("_items",)

    def __init__(self, pairs: Iterable[tuple[Any, Any]] = ()) -> None:
        items: dict[str, CanonicalValue] = {}
        for key, value in pairs:
            if not isinstance(key, str):
                raise SerializationError(
                    f"Object keys must be strings, got {type(key).__name__}"
                )
            key = _check_text(key)
            if key in items:
                raise SerializationError(f"Duplicate object key: {key!r}")
            items[key] = freeze_value(value)
        object.__setattr__(self, "_items", dict(sorted(items.items())))

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("CanonicalObject is immutable")

    def __getitem__(self, key: str) -> CanonicalValue:
        return self._items[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __hash__(self) -> int:
        return hash(tuple(self._items.items()))

    def __repr__(self) -> str:
        return f"CanonicalObject({self._items!r})"


CanonicalValue: TypeAlias = Union[
    None, bool, int, str, tuple["CanonicalValue", ...], CanonicalObject
]


def _check_text(value: str) -> str:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise SerializationError(f"String is not valid UTF-8: {value!r}") from exc
    # Normalise str subclasses (enums) to their plain string content.
    return str.__str__(value)


def freeze_value(value: Any) -> CanonicalValue:
    """Convert plain Python data into a frozen, validated value tree.

    Already-frozen trees are returned unchanged.

    Raises
    ------
    SerializationError
        If the tree contains floats, out-of-range integers, non-string keys,
        duplicate keys, undecodable strings, or unsupported types.
    """
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, str):
        return _check_text(value)
    if isinstance(value, int):
        if not INT_MIN <= value <= INT_MAX:
            raise SerializationError(f"Integer out of canonical range: {value}")
        return int(value)
    if isinstance(value, float):
        raise SerializationError(
            f"Non-integer number {value!r} has no canonical representation"
        )
    if isinstance(value, CanonicalObject):
        return value
    if isinstance(value, Mapping):
        return CanonicalObject(value.items())
    if isinstance(value, (list, tuple)):
        return tuple(freeze_value(item) for item in value)
    raise SerializationError(f"Unsupported value type: {type(value).__name__}")


def thaw_value(value: CanonicalValue) -> Any:
    """Convert a frozen tree back into mutable ``dict``/``list`` data."""
    if isinstance(value, CanonicalObject):
        return {key: thaw_value(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [thaw_value(item) for item in value]
    return value


def canonicalize(value: Any) -> bytes:
    """Return the canonical UTF-8 bytes of ``value``.

    Keys are sorted recursively, arrays keep their order, ``null`` is always
    emitted and no insignificant whitespace is produced. Non-ASCII text is
    written as raw UTF-8; control characters use JSON escapes.
    """
    frozen = freeze_value(value)
    return json.dumps(
        thaw_value(frozen),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def _reject_float(literal: str) -> Any:
    raise SerializationError(f"Non-integer number {literal} has no canonical representation")


def _reject_constant(name: str) -> Any:
    raise SerializationError(f"Non-finite number {name} is not allowed")


def parse_canonical_json(data: bytes | str) -> CanonicalValue:
    """Parse JSON text into a frozen value tree.

    Duplicate keys, fractional or exponent numbers and ``NaN``/``Infinity``
    are rejected, so ``canonicalize(parse_canonical_json(b)) == b`` holds for
    any canonical ``b``.
    """
    if isinstance(data, (bytes, bytearray, memoryview)):
        try:
            text = bytes(data).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SerializationError(f"Input is not valid UTF-8: {exc}") from exc
    else:
        text = data
    try:
        parsed = json.loads(
            text,
            object_pairs_hook=CanonicalObject,
            parse_float=_reject_float,
            parse_constant=_reject_constant,
        )
    except json.JSONDecodeError as exc:
        raise SerializationError(f"Invalid JSON: {exc.msg} at position {exc.pos}") from exc
    except RecursionError as exc:
        raise SerializationError("JSON nesting is too deep") from exc
    return freeze_value(parsed)


def sha256_hex(data: bytes) -> str:
    """Compute the lowercase hex SHA-256 digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def sha256_hex_canonical(value: Any) -> str:
    """Compute the SHA-256 hex digest over the canonical bytes of ``value``."""
    return sha256_hex(canonicalize(value))
