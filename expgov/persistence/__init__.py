"""Persistence backplane contract and the in-memory reference implementation."""

from .backplane import (
    GovernanceBackplane,
    PersistedApprovalRecord,
    PersistedExperimentState,
    PersistedPolicyEvaluation,
    SaveResult,
)
from .memory import InMemoryGovernanceBackplane

__all__ = [
    "GovernanceBackplane",
    "InMemoryGovernanceBackplane",
    "PersistedApprovalRecord",
    "PersistedExperimentState",
    "PersistedPolicyEvaluation",
    "SaveResult",
]
