"""
``checksums.txt`` listings.

The format is the one written by ``sha256sum``: one ``<hex digest>  <path>``
line per file, sorted, paths relative to the bundle root. Parsing also
accepts a single separating space and the ``*`` binary-mode marker.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

_LINE_RE = re.compile(r"^(?P<sha256>[0-9a-fA-F]{64}) [ *]?(?P<path>.+)$")


class ChecksumListingMalformed(ValueError):
    """A ``checksums.txt`` line could not be parsed."""


@dataclass(frozen=True, slots=True)
class ChecksumEntry:
    sha256: str
    path: str

    def render(self) -> str:
        return f"{self.sha256}  {self.path}"


def render_checksums(entries: Iterable[ChecksumEntry]) -> bytes:
    lines = sorted(entry.render() for entry in entries)
    return "\n".join(lines).encode("utf-8")


def parse_checksums(data: bytes | str) -> list[ChecksumEntry]:
    """Parse a listing; blank lines are ignored, digests are lower-cased."""
    if isinstance(data, bytes):
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ChecksumListingMalformed("checksums.txt is not valid UTF-8") from exc
    else:
        text = data

    entries: list[ChecksumEntry] = []
    for line_number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        match = _LINE_RE.match(line.rstrip("\r"))
        if match is None:
            raise ChecksumListingMalformed(f"Malformed checksum line {line_number}: {line!r}")
        entries.append(ChecksumEntry(match["sha256"].lower(), match["path"]))
    return entries
