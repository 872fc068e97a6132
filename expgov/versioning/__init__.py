"""
Immutable, diffable configuration versions with forward-only rollback.
"""

from .content import compute_hash, serialize_payload
from .models import ChangeKind, ConfigurationChange, ConfigurationVersion, VersionDiff
from .diff import diff_payloads
from .manager import VersionLog, VersionManager

__all__ = [
    "ChangeKind",
    "ConfigurationChange",
    "ConfigurationVersion",
    "VersionDiff",
    "VersionLog",
    "VersionManager",
    "compute_hash",
    "diff_payloads",
    "serialize_payload",
]
