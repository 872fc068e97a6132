"""
Approval gates.

A gate is a named async predicate consulted before a lifecycle edge commits.
Gates never mutate lifecycle state; they only return a verdict. Four variants
ship here: automatic, manual (backed by a decision store), role based, and
custom (an external callable).
"""

from __future__ import annotations

import inspect
import threading
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Protocol, Union, runtime_checkable

from ..lifecycle.states import LifecycleState
from ..util import require_name, utcnow

ACTOR_ROLE_KEY = "actor_role"


@dataclass(frozen=True)
class ApprovalContext:
    experiment_name: str
    current_state: LifecycleState
    target_state: LifecycleState
    actor: str | None = None
    reason: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


@dataclass(frozen=True)
class ApprovalResult:
    """
    Verdict of one gate.

    A pending result is a non-approval that may turn into an approval later
    (for example once a manual decision is recorded).
    """

    is_approved: bool
    timestamp: datetime
    reason: str | None = None
    approver: str | None = None
    gate_name: str | None = None
    is_pending: bool = False
    metadata: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @classmethod
    def approved(
        cls,
        *,
        approver: str | None = None,
        reason: str | None = None,
        gate_name: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ApprovalResult:
        return cls(
            is_approved=True,
            timestamp=utcnow(),
            reason=reason,
            approver=approver,
            gate_name=gate_name,
            metadata=metadata or {},
        )

    @classmethod
    def rejected(
        cls,
        reason: str,
        *,
        approver: str | None = None,
        gate_name: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> ApprovalResult:
        return cls(
            is_approved=False,
            timestamp=utcnow(),
            reason=reason,
            approver=approver,
            gate_name=gate_name,
            metadata=metadata or {},
        )

    @classmethod
    def pending(cls, reason: str, *, gate_name: str | None = None) -> ApprovalResult:
        return cls(
            is_approved=False,
            timestamp=utcnow(),
            reason=reason,
            gate_name=gate_name,
            is_pending=True,
        )

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "gate_name": self.gate_name,
            "is_approved": self.is_approved,
            "is_pending": self.is_pending,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.reason is not None:
            result["reason"] = self.reason
        if self.approver is not None:
            result["approver"] = self.approver
        if self.metadata:
            result["metadata"] = dict(self.metadata)
        return result


@runtime_checkable
class ApprovalGate(Protocol):
    name: str

    async def evaluate(self, context: ApprovalContext) -> ApprovalResult:
        ...


# -----------------------------------------------------------------------------
# Built-in gates
# -----------------------------------------------------------------------------


class AutomaticApprovalGate:
    """Approves every request as the "system" approver."""

    def __init__(self, name: str = "automatic"):
        self.name = name

    async def evaluate(self, context: ApprovalContext) -> ApprovalResult:
        return ApprovalResult.approved(approver="system", reason="Automatic approval", gate_name=self.name)


@dataclass(frozen=True)
class ManualDecision:
    approved: bool
    approver: str
    timestamp: datetime
    reason: str | None = None


class ManualApprovalStore:
    """Decisions recorded by humans, keyed by (experiment, target state)."""

    def __init__(self) -> None:
        self._decisions: dict[tuple[str, LifecycleState], ManualDecision] = {}
        self._lock = threading.Lock()

    def record_approval(
        self,
        experiment: str,
        target: LifecycleState,
        *,
        approver: str,
        approved: bool = True,
        reason: str | None = None,
    ) -> ManualDecision:
        decision = ManualDecision(approved=approved, approver=approver, timestamp=utcnow(), reason=reason)
        with self._lock:
            self._decisions[(require_name(experiment), target)] = decision
        return decision

    def clear_approval(self, experiment: str, target: LifecycleState) -> bool:
        with self._lock:
            return self._decisions.pop((experiment, target), None) is not None

    def get_decision(self, experiment: str, target: LifecycleState) -> ManualDecision | None:
        with self._lock:
            return self._decisions.get((experiment, target))


class ManualApprovalGate:
    def __init__(self, store: ManualApprovalStore, name: str = "manual"):
        self.store = store
        self.name = name

    async def evaluate(self, context: ApprovalContext) -> ApprovalResult:
        decision = self.store.get_decision(context.experiment_name, context.target_state)
        if decision is None:
            return ApprovalResult.pending("Manual approval required", gate_name=self.name)
        if decision.approved:
            return ApprovalResult.approved(
                approver=decision.approver,
                reason=decision.reason or "Manually approved",
                gate_name=self.name,
            )
        return ApprovalResult.rejected(
            decision.reason or "Manually rejected",
            approver=decision.approver,
            gate_name=self.name,
        )


class RoleBasedApprovalGate:
    """Approves when metadata["actor_role"] is in the allow-list (case-insensitive)."""

    def __init__(self, roles: Iterable[str], name: str = "role_based"):
        allowed = frozenset(r.strip().casefold() for r in roles if r and r.strip())
        if not allowed:
            raise ValueError("RoleBasedApprovalGate requires at least one role")
        self.allowed_roles = allowed
        self.name = name

    async def evaluate(self, context: ApprovalContext) -> ApprovalResult:
        role = context.metadata.get(ACTOR_ROLE_KEY)
        if isinstance(role, str) and role.strip().casefold() in self.allowed_roles:
            return ApprovalResult.approved(
                approver=context.actor,
                reason=f"Role '{role}' is authorized",
                gate_name=self.name,
            )
        return ApprovalResult.rejected("Insufficient role privileges", gate_name=self.name)


GateDelegate = Callable[[ApprovalContext], Union[Awaitable[Any], Any]]


class CustomApprovalGate:
    """
    Delegates the verdict to an external callable.

    The delegate may be sync or async and may return an ApprovalResult or a
    bool. Anything else is a TypeError.
    """

    def __init__(self, name: str, delegate: GateDelegate):
        if not name or not name.strip():
            raise ValueError("Custom gate name cannot be empty")
        self.name = name
        self.delegate = delegate

    async def evaluate(self, context: ApprovalContext) -> ApprovalResult:
        outcome = self.delegate(context)
        if inspect.isawaitable(outcome):
            outcome = await outcome

        if isinstance(outcome, ApprovalResult):
            return outcome if outcome.gate_name else replace(outcome, gate_name=self.name)
        if isinstance(outcome, bool):
            if outcome:
                return ApprovalResult.approved(approver=context.actor, gate_name=self.name)
            return ApprovalResult.rejected(f"Rejected by {self.name}", gate_name=self.name)
        raise TypeError(
            f"Custom gate '{self.name}' returned {type(outcome).__name__}, expected ApprovalResult or bool"
        )
