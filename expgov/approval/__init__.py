"""Approval gates and the manager that aggregates their verdicts."""

from .gates import (
    ACTOR_ROLE_KEY,
    ApprovalContext,
    ApprovalGate,
    ApprovalResult,
    AutomaticApprovalGate,
    CustomApprovalGate,
    ManualApprovalGate,
    ManualApprovalStore,
    ManualDecision,
    RoleBasedApprovalGate,
)
from .manager import ApprovalManager, GateRegistration

__all__ = [
    "ACTOR_ROLE_KEY",
    "ApprovalContext",
    "ApprovalGate",
    "ApprovalManager",
    "ApprovalResult",
    "AutomaticApprovalGate",
    "CustomApprovalGate",
    "GateRegistration",
    "ManualApprovalGate",
    "ManualApprovalStore",
    "ManualDecision",
    "RoleBasedApprovalGate",
]
