"""
Configuration version management.

Versions are immutable and numbered per experiment starting at 1. Numbers are
assigned while holding the experiment's lock in the VersionLog, so concurrent
writers always produce a gapless 1..N sequence. Rollback never rewinds: it
appends a new version whose payload copies an earlier one.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from ..audit_log import (
    EXPERIMENT_MODIFIED,
    AuditEvent,
    AuditPolicy,
    AuditSink,
    create_audit_event,
    deliver,
)
from ..errors import ConcurrencyConflict, ConfigurationError, VersionNotFound
from ..lifecycle.states import LifecycleState, parse_state
from ..persistence.backplane import GovernanceBackplane
from ..util import require_name, utcnow
from .content import compute_hash, serialize_payload
from .diff import diff_payloads
from .models import ConfigurationVersion, VersionDiff

logger = logging.getLogger(__name__)


class VersionLog:
    """Per-experiment ordered version lists, one lock per experiment."""

    def __init__(self) -> None:
        self._versions: dict[str, list[ConfigurationVersion]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, experiment: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(experiment)
            if lock is None:
                lock = self._locks[experiment] = threading.Lock()
            return lock

    @contextmanager
    def locked(self, experiment: str) -> Iterator[list[ConfigurationVersion]]:
        """Hold the experiment's lock; callers must not await inside the block."""
        with self._lock_for(experiment):
            yield self._versions.setdefault(experiment, [])

    def versions(self, experiment: str) -> tuple[ConfigurationVersion, ...]:
        with self.locked(experiment) as entries:
            return tuple(entries)

    def get(self, experiment: str, version_number: int) -> ConfigurationVersion | None:
        with self.locked(experiment) as entries:
            # Gapless numbering makes the list index the version number.
            if 1 <= version_number <= len(entries):
                return entries[version_number - 1]
            return None

    def latest(self, experiment: str) -> ConfigurationVersion | None:
        with self.locked(experiment) as entries:
            return entries[-1] if entries else None

    def replace(self, experiment: str, versions: Iterable[ConfigurationVersion]) -> None:
        with self.locked(experiment) as entries:
            entries[:] = sorted(versions, key=lambda v: v.version_number)


class VersionManager:
    def __init__(
        self,
        log: VersionLog | None = None,
        *,
        audit_sink: AuditSink | None = None,
        audit_policy: AuditPolicy = AuditPolicy.BEST_EFFORT,
        backplane: GovernanceBackplane | None = None,
    ):
        self.log = log if log is not None else VersionLog()
        self._audit_sink = audit_sink
        self._audit_policy = audit_policy
        self._backplane = backplane

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_version(self, experiment: str, version_number: int) -> ConfigurationVersion | None:
        return self.log.get(require_name(experiment), version_number)

    def get_latest_version(self, experiment: str) -> ConfigurationVersion | None:
        return self.log.latest(require_name(experiment))

    def get_all_versions(self, experiment: str) -> tuple[ConfigurationVersion, ...]:
        return self.log.versions(require_name(experiment))

    def get_diff(self, experiment: str, from_version: int, to_version: int) -> VersionDiff | None:
        """Structural diff between two versions, or None if either is missing."""
        old = self.get_version(experiment, from_version)
        new = self.get_version(experiment, to_version)
        if old is None or new is None:
            return None
        return VersionDiff(
            experiment_name=experiment,
            from_version=from_version,
            to_version=to_version,
            changes=diff_payloads(old.payload, new.payload),
        )

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create_version(
        self,
        experiment: str,
        payload: Mapping[str, Any],
        *,
        actor: str | None = None,
        description: str | None = None,
        lifecycle_state: LifecycleState | str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ConfigurationVersion:
        """
        Store a new configuration version.

        Raises:
            ValueError: Empty experiment name
            TypeError: Payload is not a JSON-compatible mapping
        """
        require_name(experiment)
        serialized = serialize_payload(payload)
        return await self._create(
            experiment,
            serialized,
            created_by=actor,
            change_description=description,
            lifecycle_state=parse_state(lifecycle_state) if lifecycle_state is not None else None,
            metadata=metadata or {},
        )

    async def rollback_to_version(
        self,
        experiment: str,
        target_version: int,
        *,
        actor: str | None = None,
        description: str | None = None,
    ) -> ConfigurationVersion:
        """
        Create a new version copying `target_version`.

        Raises:
            VersionNotFound: The target version does not exist
        """
        target = self.get_version(experiment, target_version)
        if target is None and self._backplane is not None:
            target = await self._backplane.get_configuration_version(experiment, target_version)
        if target is None:
            raise VersionNotFound(experiment, target_version)

        version = await self._create(
            experiment,
            target.serialized_payload,
            created_by=actor,
            change_description=description or f"Rolled back to version {target_version}",
            lifecycle_state=target.lifecycle_state,
            is_rollback=True,
            rolled_back_from=target_version,
        )
        logger.info(
            "Experiment '%s' rolled back to version %d as version %d",
            experiment,
            target_version,
            version.version_number,
        )
        return version

    async def refresh(self, experiment: str) -> tuple[ConfigurationVersion, ...]:
        """Replace the local versions with the backplane's copy."""
        if self._backplane is None:
            raise ConfigurationError("refresh requires a persistence backplane")
        versions = await self._backplane.get_all_configuration_versions(require_name(experiment))
        self.log.replace(experiment, versions)
        return self.log.versions(experiment)

    async def _create(self, experiment: str, serialized: str, **fields: Any) -> ConfigurationVersion:
        content_hash = compute_hash(serialized)
        if self._backplane is not None:
            version = await self._commit_with_backplane(
                self._backplane, experiment, serialized, content_hash, fields
            )
        else:
            with self.log.locked(experiment) as entries:
                version = self._build(experiment, len(entries) + 1, serialized, content_hash, fields)
                entries.append(version)

        logger.info(
            "Created version %d for experiment '%s' (hash=%s)",
            version.version_number,
            experiment,
            content_hash[:12],
        )
        await deliver(
            self._audit_sink,
            self._audit_event(version),
            policy=self._audit_policy,
            subject=version,
        )
        return version

    async def _commit_with_backplane(
        self,
        backplane: GovernanceBackplane,
        experiment: str,
        serialized: str,
        content_hash: str,
        fields: dict[str, Any],
    ) -> ConfigurationVersion:
        latest = await backplane.get_latest_configuration_version(experiment)
        persisted_number = latest.version_number if latest is not None else 0

        with self.log.locked(experiment) as entries:
            if len(entries) != persisted_number:
                raise ConcurrencyConflict(
                    experiment,
                    f"local latest version {len(entries)} differs from persisted version {persisted_number}",
                )
            version = self._build(experiment, persisted_number + 1, serialized, content_hash, fields)

        if not await backplane.append_configuration_version(version):
            raise ConcurrencyConflict(
                experiment,
                f"version {version.version_number} was taken by another writer",
            )
        with self.log.locked(experiment) as entries:
            entries.append(version)
        return version

    @staticmethod
    def _build(
        experiment: str,
        number: int,
        serialized: str,
        content_hash: str,
        fields: dict[str, Any],
    ) -> ConfigurationVersion:
        return ConfigurationVersion(
            experiment_name=experiment,
            version_number=number,
            serialized_payload=serialized,
            content_hash=content_hash,
            created_at=utcnow(),
            **fields,
        )

    def _audit_event(self, version: ConfigurationVersion) -> AuditEvent:
        details: dict[str, Any] = {
            "version_number": version.version_number,
            "content_hash": version.content_hash,
        }
        if version.change_description:
            details["change_description"] = version.change_description
        if version.is_rollback:
            details["is_rollback"] = True
            details["rolled_back_from"] = version.rolled_back_from
        return create_audit_event(
            EXPERIMENT_MODIFIED,
            version.experiment_name,
            actor=version.created_by,
            details=details,
            timestamp=version.created_at,
        )
