"""
Persistence backplane contract.

A backplane is an injected, durable system of record shared by every
process that governs the same experiments. expgov does not own storage: it
only talks to this protocol. Cross-process races are settled by an opaque
concurrency token on the persisted experiment state; expgov never inspects
the token, it only hands back the one it read.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from ..util import new_ulid

if TYPE_CHECKING:
    from ..lifecycle.states import LifecycleState, StateTransition
    from ..versioning.models import ConfigurationVersion


@dataclass(frozen=True)
class PersistedExperimentState:
    experiment_name: str
    current_state: LifecycleState
    last_modified: datetime
    last_modified_by: str | None = None
    configuration_version: int | None = None
    token: str | None = None  # opaque; assigned by the backplane on save


@dataclass(frozen=True)
class SaveResult:
    success: bool
    new_token: str | None = None
    conflict_detected: bool = False

    @classmethod
    def saved(cls, token: str) -> SaveResult:
        return cls(success=True, new_token=token)

    @classmethod
    def conflict(cls) -> SaveResult:
        return cls(success=False, conflict_detected=True)


@dataclass(frozen=True)
class PersistedApprovalRecord:
    experiment_name: str
    gate_name: str
    from_state: LifecycleState
    to_state: LifecycleState
    is_approved: bool
    timestamp: datetime
    approver: str | None = None
    reason: str | None = None
    transition_id: str | None = None
    approval_id: str = field(default_factory=new_ulid)


@dataclass(frozen=True)
class PersistedPolicyEvaluation:
    experiment_name: str
    policy_name: str
    is_compliant: bool
    severity: str
    timestamp: datetime
    reason: str | None = None
    current_state: LifecycleState | None = None
    target_state: LifecycleState | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict, hash=False)
    evaluation_id: str = field(default_factory=new_ulid)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


@runtime_checkable
class GovernanceBackplane(Protocol):
    """Durable store for governance state, history and decisions."""

    async def get_experiment_state(self, experiment_name: str) -> PersistedExperimentState | None:
        ...

    async def save_experiment_state(
        self,
        state: PersistedExperimentState,
        expected_token: str | None,
    ) -> SaveResult:
        """
        Compare-and-set the experiment state.

        `expected_token` is the token read alongside the state, or None when
        the experiment was not persisted yet. A mismatch must return a
        conflict result rather than overwrite.
        """
        ...

    async def append_state_transition(self, experiment_name: str, transition: StateTransition) -> None:
        ...

    async def get_state_transition_history(self, experiment_name: str) -> list[StateTransition]:
        ...

    async def append_approval_records(self, records: Sequence[PersistedApprovalRecord]) -> None:
        """Store a whole evaluation's records atomically: all of them or none."""
        ...

    async def get_approval_records(self, experiment_name: str) -> list[PersistedApprovalRecord]:
        ...

    async def append_policy_evaluations(self, records: Sequence[PersistedPolicyEvaluation]) -> None:
        """Store a whole evaluation's records atomically: all of them or none."""
        ...

    async def get_policy_evaluations(self, experiment_name: str) -> list[PersistedPolicyEvaluation]:
        ...

    async def append_configuration_version(self, version: ConfigurationVersion) -> bool:
        """Append a version; return False if its number is not latest + 1."""
        ...

    async def get_configuration_version(
        self, experiment_name: str, version_number: int
    ) -> ConfigurationVersion | None:
        ...

    async def get_latest_configuration_version(self, experiment_name: str) -> ConfigurationVersion | None:
        ...

    async def get_all_configuration_versions(self, experiment_name: str) -> list[ConfigurationVersion]:
        ...
