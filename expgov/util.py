"""
Small shared helpers: identifiers, clocks, experiment-name checks.

This module intentionally avoids third-party dependencies.
"""

from __future__ import annotations

import os
import time
from datetime import datetime, timezone


_CROCKFORD32 = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def _encode_crockford_base32(value: int, length: int) -> str:
    chars: list[str] = []
    for _ in range(length):
        chars.append(_CROCKFORD32[value & 31])
        value >>= 5
    return "".join(reversed(chars))


def new_ulid(*, timestamp_ms: int | None = None) -> str:
    """
    Generate a ULID (26 chars, Crockford base32).

    Used for audit event ids, transition ids and record ids. ULIDs sort by
    creation time, which keeps JSONL audit files and backplane records in a
    readable order.
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)

    if not (0 <= timestamp_ms < (1 << 48)):
        raise ValueError("timestamp_ms out of range for ULID")

    randomness = int.from_bytes(os.urandom(10), "big")
    return _encode_crockford_base32((timestamp_ms << 80) | randomness, 26)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def require_name(experiment: str) -> str:
    """Reject empty or blank experiment names."""
    if not isinstance(experiment, str) or not experiment.strip():
        raise ValueError("Experiment name cannot be null or empty.")
    return experiment
