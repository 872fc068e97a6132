"""
Payload serialization and content hashing for configuration versions.

A version stores its payload as JSON text in the caller's key order, so diffs
can follow that order. The content hash is computed over the canonical form
(sorted keys, compact separators), so two payloads that differ only in key
order hash identically.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from typing import Any


def serialize_payload(payload: Any) -> str:
    """
    Serialize a configuration payload, preserving key order.

    Raises:
        TypeError: If payload is not a mapping, or holds values that are not
            JSON-compatible (including NaN and infinity).
    """
    if not isinstance(payload, Mapping):
        raise TypeError(
            f"Configuration payload must be a mapping, got {type(payload).__name__}"
        )
    try:
        return json.dumps(dict(payload), separators=(",", ":"), allow_nan=False)
    except ValueError as e:
        raise TypeError(f"Configuration payload is not JSON-compatible: {e}") from e


def canonical_json(payload: Mapping[str, Any]) -> str:
    """Canonical JSON text used for hashing."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), allow_nan=False)


def compute_hash(content: str | Mapping[str, Any]) -> str:
    """
    Compute the sha256 content hash.

    Args:
        content: Serialized payload text, or a payload mapping

    Returns:
        Hex-encoded sha256 of the canonical JSON form
    """
    if isinstance(content, str):
        content = json.loads(content)
    return hashlib.sha256(canonical_json(content).encode("utf-8")).hexdigest()


def load_payload(serialized: str) -> dict[str, Any]:
    """Deserialize stored payload text into a fresh dict."""
    return json.loads(serialized)
