"""
In-memory reference backplane.

Keeps everything in dicts guarded by a single lock. Useful for tests and for
single-process embedding; it is the behavioral reference for real backends
(compare-and-set on the state token, sequential version numbers).
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import replace
from typing import TYPE_CHECKING

from ..util import new_ulid
from .backplane import (
    PersistedApprovalRecord,
    PersistedExperimentState,
    PersistedPolicyEvaluation,
    SaveResult,
)

if TYPE_CHECKING:
    from ..lifecycle.states import StateTransition
    from ..versioning.models import ConfigurationVersion

logger = logging.getLogger(__name__)


class InMemoryGovernanceBackplane:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: dict[str, PersistedExperimentState] = {}
        self._transitions: dict[str, list[StateTransition]] = defaultdict(list)
        self._approvals: dict[str, list[PersistedApprovalRecord]] = defaultdict(list)
        self._evaluations: dict[str, list[PersistedPolicyEvaluation]] = defaultdict(list)
        self._versions: dict[str, list[ConfigurationVersion]] = defaultdict(list)

    # -------------------------------------------------------------------------
    # Experiment state
    # -------------------------------------------------------------------------

    async def get_experiment_state(self, experiment_name: str) -> PersistedExperimentState | None:
        with self._lock:
            return self._states.get(experiment_name)

    async def save_experiment_state(
        self,
        state: PersistedExperimentState,
        expected_token: str | None,
    ) -> SaveResult:
        with self._lock:
            current = self._states.get(state.experiment_name)
            current_token = current.token if current is not None else None
            if current_token != expected_token:
                logger.debug(
                    "Token mismatch saving state for '%s'",
                    state.experiment_name,
                )
                return SaveResult.conflict()
            token = new_ulid()
            self._states[state.experiment_name] = replace(state, token=token)
            return SaveResult.saved(token)

    # -------------------------------------------------------------------------
    # Append-only records
    # -------------------------------------------------------------------------

    async def append_state_transition(self, experiment_name: str, transition: StateTransition) -> None:
        with self._lock:
            self._transitions[experiment_name].append(transition)

    async def get_state_transition_history(self, experiment_name: str) -> list[StateTransition]:
        with self._lock:
            return list(self._transitions.get(experiment_name, ()))

    async def append_approval_records(self, records: Sequence[PersistedApprovalRecord]) -> None:
        with self._lock:
            for record in records:
                self._approvals[record.experiment_name].append(record)

    async def get_approval_records(self, experiment_name: str) -> list[PersistedApprovalRecord]:
        with self._lock:
            return list(self._approvals.get(experiment_name, ()))

    async def append_policy_evaluations(self, records: Sequence[PersistedPolicyEvaluation]) -> None:
        with self._lock:
            for record in records:
                self._evaluations[record.experiment_name].append(record)

    async def get_policy_evaluations(self, experiment_name: str) -> list[PersistedPolicyEvaluation]:
        with self._lock:
            return list(self._evaluations.get(experiment_name, ()))

    # -------------------------------------------------------------------------
    # Configuration versions
    # -------------------------------------------------------------------------

    async def append_configuration_version(self, version: ConfigurationVersion) -> bool:
        with self._lock:
            versions = self._versions[version.experiment_name]
            expected = len(versions) + 1
            if version.version_number != expected:
                logger.debug(
                    "Rejected version %d for '%s' (expected %d)",
                    version.version_number,
                    version.experiment_name,
                    expected,
                )
                return False
            versions.append(version)
            return True

    async def get_configuration_version(
        self, experiment_name: str, version_number: int
    ) -> ConfigurationVersion | None:
        with self._lock:
            versions = self._versions.get(experiment_name, [])
            if 1 <= version_number <= len(versions):
                return versions[version_number - 1]
            return None

    async def get_latest_configuration_version(self, experiment_name: str) -> ConfigurationVersion | None:
        with self._lock:
            versions = self._versions.get(experiment_name)
            return versions[-1] if versions else None

    async def get_all_configuration_versions(self, experiment_name: str) -> list[ConfigurationVersion]:
        with self._lock:
            return list(self._versions.get(experiment_name, ()))
