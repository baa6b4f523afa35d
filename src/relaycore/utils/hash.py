"""Content hashing utilities for drift detection."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any, Iterable


def sha256_file(path: Path) -> str:
    """Compute SHA-256 hex digest of a file.

    Args:
        path: Path to the file to hash.

    Returns:
        Hex-encoded SHA-256 digest.
    """
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def _normalize_keys_only(obj: Any) -> Any:
    """Recursively normalize dict keys to stripped strings (type-faithful values)."""
    if isinstance(obj, dict):
        return {str(k).strip(): _normalize_keys_only(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_normalize_keys_only(item) for item in obj]
    return obj


def canonical_json(obj: Any) -> str:
    """Serialize *obj* deterministically: sorted keys, compact separators."""
    return json.dumps(
        _normalize_keys_only(obj), sort_keys=True, separators=(",", ":"), default=str
    )


def hash_row_set(entries: Iterable[Any]) -> str:
    """Order-independent hash of a collection of JSON-serializable entries.

    Each entry is canonicalized on its own, the canonical strings are sorted,
    and the sorted list is hashed.  Two collections holding the same entries
    in any order hash identically.
    """
    canonical = sorted(canonical_json(e) for e in entries)
    return sha256_bytes(("[" + ",".join(canonical) + "]").encode("utf-8"))


def compute_state_hashes(
    facts: Iterable[Any],
    matches: Iterable[Any],
    summaries: Iterable[Any],
    kpis: Iterable[Any],
) -> dict[str, str]:
    """Hash the four state collections exposed on ``/debug/state-hashes``.

    Returns:
        Dict with ``facts``, ``matches``, ``summaries`` and ``kpis`` digests.
    """
    return {
        "facts": hash_row_set(facts),
        "matches": hash_row_set(matches),
        "summaries": hash_row_set(summaries),
        "kpis": hash_row_set(kpis),
    }
