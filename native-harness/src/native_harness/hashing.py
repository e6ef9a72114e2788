"""Digest helpers.

Fingerprints, lock file checksums and push-if-changed all compare SHA-256
digests, so the encoding of structured inputs must be deterministic.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Iterable


def json_dumps_canonical(obj: Any) -> str:
    """Deterministic JSON encoding for hashing / stable digests."""

    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def stable_sha256(obj: Any) -> str:
    """Compute a stable SHA-256 digest for arbitrary JSON-serializable objects."""

    if isinstance(obj, (bytes, bytearray)):
        data = bytes(obj)
    else:
        data = json_dumps_canonical(obj).encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def stable_file_sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def tree_sha256(root: Path, *, suffixes: Iterable[str] | None = None) -> str:
    """Digest of every file under root (relative path + content).

    Missing roots hash to the digest of an empty listing.
    """

    wanted = {s.lower() for s in suffixes} if suffixes is not None else None
    entries: list[list[str]] = []
    if root.is_dir():
        for path in sorted(p for p in root.rglob("*") if p.is_file()):
            if wanted is not None and path.suffix.lower() not in wanted:
                continue
            entries.append([path.relative_to(root).as_posix(), stable_file_sha256(path)])
    elif root.is_file():
        entries.append([root.name, stable_file_sha256(root)])
    return stable_sha256(entries)
