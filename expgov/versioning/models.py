"""Immutable configuration versions and the structural changes between them."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any

from ..lifecycle.states import LifecycleState
from .content import load_payload


class ChangeKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"


@dataclass(frozen=True)
class ConfigurationVersion:
    """
    Immutable snapshot of an experiment's configuration.

    `serialized_payload` is the JSON text as written by the caller; every
    read of `payload` decodes a fresh copy, so callers cannot alter history.
    """

    experiment_name: str
    version_number: int
    serialized_payload: str
    content_hash: str
    created_at: datetime
    created_by: str | None = None
    change_description: str | None = None
    lifecycle_state: LifecycleState | None = None
    is_rollback: bool = False
    rolled_back_from: int | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def payload(self) -> dict[str, Any]:
        return load_payload(self.serialized_payload)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        result: dict[str, Any] = {
            "experiment_name": self.experiment_name,
            "version_number": self.version_number,
            "payload": self.payload,
            "content_hash": self.content_hash,
            "created_at": self.created_at.isoformat(),
            "is_rollback": self.is_rollback,
        }
        if self.created_by is not None:
            result["created_by"] = self.created_by
        if self.change_description is not None:
            result["change_description"] = self.change_description
        if self.lifecycle_state is not None:
            result["lifecycle_state"] = self.lifecycle_state.value
        if self.rolled_back_from is not None:
            result["rolled_back_from"] = self.rolled_back_from
        if self.metadata:
            result["metadata"] = dict(self.metadata)
        return result


@dataclass(frozen=True)
class ConfigurationChange:
    path: str
    kind: ChangeKind
    old_value: Any = None
    new_value: Any = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"path": self.path, "kind": self.kind.value}
        if self.kind is not ChangeKind.ADDED:
            result["old_value"] = self.old_value
        if self.kind is not ChangeKind.REMOVED:
            result["new_value"] = self.new_value
        return result


@dataclass(frozen=True)
class VersionDiff:
    """Structural difference between two versions; computed on demand, never stored."""

    experiment_name: str
    from_version: int
    to_version: int
    changes: tuple[ConfigurationChange, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def __len__(self) -> int:
        return len(self.changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "experiment_name": self.experiment_name,
            "from_version": self.from_version,
            "to_version": self.to_version,
            "changes": [c.to_dict() for c in self.changes],
        }
