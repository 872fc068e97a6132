"""
Governance service and builder.

GovernanceService runs the full control flow for a transition request:
legality check, policy evaluation, gate evaluation, and only then the commit.
GovernanceBuilder wires the four managers together from typed gate and
policy specs, the same specs the profile loader produces.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import time, timedelta
from typing import TYPE_CHECKING, Any, Union

from .approval.gates import (
    ApprovalContext,
    ApprovalGate,
    ApprovalResult,
    AutomaticApprovalGate,
    CustomApprovalGate,
    GateDelegate,
    ManualApprovalGate,
    ManualApprovalStore,
    RoleBasedApprovalGate,
)
from .approval.manager import ApprovalManager
from .audit_log import AuditPolicy, AuditSink
from .errors import ConfigurationError, InvalidTransition
from .lifecycle.manager import LifecycleManager
from .lifecycle.states import LifecycleState, StateTransition, parse_state
from .lifecycle.store import TransitionLog
from .persistence.backplane import GovernanceBackplane
from .policy.builtin import (
    ConflictPreventionPolicy,
    ErrorRatePolicy,
    TimeWindowPolicy,
    TrafficLimitPolicy,
)
from .policy.evaluator import PolicyEvaluator
from .policy.models import ExperimentPolicy, PolicyContext, PolicyEvaluationResult
from .util import require_name
from .versioning.manager import VersionLog, VersionManager
from .versioning.models import ConfigurationVersion

if TYPE_CHECKING:
    from .config import GovernanceProfile

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Gate and policy specs
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class AutomaticGateSpec:
    to_state: LifecycleState
    from_state: LifecycleState | None = None
    name: str = "automatic"


@dataclass(frozen=True)
class ManualGateSpec:
    to_state: LifecycleState
    from_state: LifecycleState | None = None
    name: str = "manual"
    store: ManualApprovalStore | None = None  # None: the builder's shared store


@dataclass(frozen=True)
class RoleBasedGateSpec:
    to_state: LifecycleState
    roles: tuple[str, ...]
    from_state: LifecycleState | None = None
    name: str = "role_based"


@dataclass(frozen=True)
class CustomGateSpec:
    """A gate backed by a callable, given directly or by registered delegate name."""

    to_state: LifecycleState
    name: str
    from_state: LifecycleState | None = None
    delegate: GateDelegate | None = field(default=None, compare=False)
    delegate_name: str | None = None


GateSpec = Union[AutomaticGateSpec, ManualGateSpec, RoleBasedGateSpec, CustomGateSpec]


@dataclass(frozen=True)
class TrafficLimitSpec:
    max_traffic_percentage: float
    min_stable_time: timedelta | None = None


@dataclass(frozen=True)
class ErrorRateSpec:
    max_error_rate: float


@dataclass(frozen=True)
class TimeWindowSpec:
    start: time
    end: time


@dataclass(frozen=True)
class ConflictPreventionSpec:
    conflicting_experiments: tuple[str, ...]


PolicySpec = Union[TrafficLimitSpec, ErrorRateSpec, TimeWindowSpec, ConflictPreventionSpec]


@dataclass(frozen=True)
class _GateInstance:
    from_state: LifecycleState | None
    to_state: LifecycleState
    gate: ApprovalGate


# -----------------------------------------------------------------------------
# Service
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class TransitionDecision:
    experiment_name: str
    from_state: LifecycleState
    to_state: LifecycleState
    committed: bool
    transition: StateTransition | None = None
    policy_results: tuple[PolicyEvaluationResult, ...] = ()
    approval_results: tuple[ApprovalResult, ...] = ()
    blocking_reasons: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "experiment_name": self.experiment_name,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "committed": self.committed,
            "transition": self.transition.to_dict() if self.transition else None,
            "policy_results": [r.to_dict() for r in self.policy_results],
            "approval_results": [r.to_dict() for r in self.approval_results],
            "blocking_reasons": list(self.blocking_reasons),
        }


@dataclass(frozen=True)
class GovernanceSnapshot:
    experiment_name: str
    state: LifecycleState
    allowed_transitions: frozenset[LifecycleState]
    latest_version: ConfigurationVersion | None = None


def blocking_reasons(
    policy_results: Iterable[PolicyEvaluationResult],
    approval_results: Iterable[ApprovalResult],
) -> list[str]:
    """Human-readable reasons a request cannot proceed (empty when it can)."""
    reasons = [
        f"Policy {r.policy_name}: {r.reason or 'non-compliant'}"
        for r in policy_results
        if r.is_blocking
    ]
    reasons.extend(
        f"Gate {r.gate_name}: {r.reason or 'not approved'}"
        for r in approval_results
        if not r.is_approved
    )
    return reasons


class GovernanceService:
    """Single entry point composing lifecycle, approvals, policies and versions."""

    def __init__(
        self,
        lifecycle: LifecycleManager,
        approvals: ApprovalManager,
        policies: PolicyEvaluator,
        versions: VersionManager,
        *,
        manual_store: ManualApprovalStore | None = None,
    ):
        self.lifecycle = lifecycle
        self.approvals = approvals
        self.policies = policies
        self.versions = versions
        self.manual_store = manual_store

    async def request_transition(
        self,
        experiment: str,
        target: LifecycleState | str,
        *,
        actor: str | None = None,
        reason: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        telemetry: Mapping[str, Any] | None = None,
    ) -> TransitionDecision:
        """
        Evaluate and, if allowed, commit a transition.

        Policies run first; gates run only when no Critical policy is
        violated. The commit passes the state the evaluation was made
        against, so a transition that raced in meanwhile surfaces as
        ConcurrencyConflict instead of committing on stale approvals.

        Raises:
            InvalidTransition: The edge is not in the transition table
            GateEvaluationError: A gate raised
            ConcurrencyConflict: The state changed during evaluation
        """
        require_name(experiment)
        target = parse_state(target)
        current = self.lifecycle.current_state(experiment)
        allowed = self.lifecycle.transition_table[current]
        if target not in allowed:
            raise InvalidTransition(experiment, current, target, allowed)

        metadata = dict(metadata or {})
        policy_results = await self.policies.evaluate_all(
            PolicyContext(
                experiment_name=experiment,
                current_state=current,
                target_state=target,
                telemetry=telemetry or {},
                metadata=metadata,
            )
        )

        approval_results: list[ApprovalResult] = []
        if not any(r.is_blocking for r in policy_results):
            approval_results = await self.approvals.evaluate(
                ApprovalContext(
                    experiment_name=experiment,
                    current_state=current,
                    target_state=target,
                    actor=actor,
                    reason=reason,
                    metadata=metadata,
                )
            )

        reasons = blocking_reasons(policy_results, approval_results)
        if reasons:
            logger.warning(
                "Transition %s -> %s for '%s' blocked: %s",
                current.value,
                target.value,
                experiment,
                "; ".join(reasons),
            )
            return TransitionDecision(
                experiment_name=experiment,
                from_state=current,
                to_state=target,
                committed=False,
                policy_results=tuple(policy_results),
                approval_results=tuple(approval_results),
                blocking_reasons=tuple(reasons),
            )

        transition = await self.lifecycle.transition(
            experiment,
            target,
            actor=actor,
            reason=reason,
            metadata=metadata,
            expected_state=current,
        )
        return TransitionDecision(
            experiment_name=experiment,
            from_state=current,
            to_state=target,
            committed=True,
            transition=transition,
            policy_results=tuple(policy_results),
            approval_results=tuple(approval_results),
        )

    def snapshot(self, experiment: str) -> GovernanceSnapshot:
        return GovernanceSnapshot(
            experiment_name=experiment,
            state=self.lifecycle.current_state(experiment),
            allowed_transitions=self.lifecycle.get_allowed_transitions(experiment),
            latest_version=self.versions.get_latest_version(experiment),
        )


# -----------------------------------------------------------------------------
# Builder
# -----------------------------------------------------------------------------


def _optional_state(value: LifecycleState | str | None) -> LifecycleState | None:
    return parse_state(value) if value is not None else None


class GovernanceBuilder:
    """
    Fluent assembly of a GovernanceService.

    Example:
        service = (
            GovernanceBuilder()
            .with_audit_sink(InMemoryAuditSink())
            .with_role_based_approval("approved", ["release-manager"], from_state="pending_approval")
            .with_error_rate_policy(0.05)
            .build()
        )
    """

    def __init__(self) -> None:
        self._audit_sink: AuditSink | None = None
        self._audit_policy = AuditPolicy.BEST_EFFORT
        self._backplane: GovernanceBackplane | None = None
        self._transitions: Mapping[LifecycleState, Any] | None = None
        self._gates: list[GateSpec | _GateInstance] = []
        self._policies: list[PolicySpec | ExperimentPolicy] = []
        self._delegates: dict[str, GateDelegate] = {}
        self.manual_store = ManualApprovalStore()

    # Infrastructure

    def with_audit_sink(self, sink: AuditSink) -> GovernanceBuilder:
        self._audit_sink = sink
        return self

    def with_audit_policy(self, policy: AuditPolicy | str) -> GovernanceBuilder:
        self._audit_policy = AuditPolicy(policy)
        return self

    def with_backplane(self, backplane: GovernanceBackplane) -> GovernanceBuilder:
        self._backplane = backplane
        return self

    def with_transitions(self, transitions: Mapping[LifecycleState, Any]) -> GovernanceBuilder:
        self._transitions = transitions
        return self

    # Gates

    def with_automatic_approval(
        self,
        to_state: LifecycleState | str,
        *,
        from_state: LifecycleState | str | None = None,
    ) -> GovernanceBuilder:
        self._gates.append(AutomaticGateSpec(to_state=parse_state(to_state), from_state=_optional_state(from_state)))
        return self

    def with_manual_approval(
        self,
        to_state: LifecycleState | str,
        *,
        from_state: LifecycleState | str | None = None,
        store: ManualApprovalStore | None = None,
    ) -> GovernanceBuilder:
        self._gates.append(
            ManualGateSpec(to_state=parse_state(to_state), from_state=_optional_state(from_state), store=store)
        )
        return self

    def with_role_based_approval(
        self,
        to_state: LifecycleState | str,
        roles: Iterable[str],
        *,
        from_state: LifecycleState | str | None = None,
    ) -> GovernanceBuilder:
        self._gates.append(
            RoleBasedGateSpec(
                to_state=parse_state(to_state),
                roles=tuple(roles),
                from_state=_optional_state(from_state),
            )
        )
        return self

    def with_custom_approval(
        self,
        to_state: LifecycleState | str,
        name: str,
        delegate: GateDelegate,
        *,
        from_state: LifecycleState | str | None = None,
    ) -> GovernanceBuilder:
        self._gates.append(
            CustomGateSpec(
                to_state=parse_state(to_state),
                name=name,
                from_state=_optional_state(from_state),
                delegate=delegate,
            )
        )
        return self

    def with_gate(
        self,
        from_state: LifecycleState | str | None,
        to_state: LifecycleState | str,
        gate: ApprovalGate,
    ) -> GovernanceBuilder:
        self._gates.append(_GateInstance(_optional_state(from_state), parse_state(to_state), gate))
        return self

    def with_delegate(self, name: str, delegate: GateDelegate) -> GovernanceBuilder:
        """Register a callable that custom gate specs can refer to by name."""
        self._delegates[name] = delegate
        return self

    # Policies

    def with_traffic_limit_policy(
        self,
        max_traffic_percentage: float,
        min_stable_time: timedelta | None = None,
    ) -> GovernanceBuilder:
        self._policies.append(TrafficLimitSpec(max_traffic_percentage, min_stable_time))
        return self

    def with_error_rate_policy(self, max_error_rate: float) -> GovernanceBuilder:
        self._policies.append(ErrorRateSpec(max_error_rate))
        return self

    def with_time_window_policy(self, start: time, end: time) -> GovernanceBuilder:
        self._policies.append(TimeWindowSpec(start, end))
        return self

    def with_conflict_prevention_policy(self, conflicting_experiments: Iterable[str]) -> GovernanceBuilder:
        self._policies.append(ConflictPreventionSpec(tuple(conflicting_experiments)))
        return self

    def with_policy(self, policy: ExperimentPolicy) -> GovernanceBuilder:
        self._policies.append(policy)
        return self

    # Profiles

    def apply_profile(
        self,
        profile: GovernanceProfile,
        *,
        delegates: Mapping[str, GateDelegate] | None = None,
    ) -> GovernanceBuilder:
        self._audit_policy = profile.audit_policy
        self._gates.extend(profile.gates)
        self._policies.extend(profile.policies)
        self._delegates.update(delegates or {})
        return self

    # Assembly

    def _make_gate(self, entry: GateSpec | _GateInstance) -> _GateInstance:
        if isinstance(entry, _GateInstance):
            return entry
        if isinstance(entry, AutomaticGateSpec):
            gate: ApprovalGate = AutomaticApprovalGate(entry.name)
        elif isinstance(entry, ManualGateSpec):
            gate = ManualApprovalGate(entry.store or self.manual_store, entry.name)
        elif isinstance(entry, RoleBasedGateSpec):
            gate = RoleBasedApprovalGate(entry.roles, entry.name)
        elif isinstance(entry, CustomGateSpec):
            delegate = entry.delegate
            if delegate is None and entry.delegate_name is not None:
                delegate = self._delegates.get(entry.delegate_name)
            if delegate is None:
                raise ConfigurationError(
                    f"No delegate registered for custom gate '{entry.name}'"
                    + (f" (delegate '{entry.delegate_name}')" if entry.delegate_name else "")
                )
            gate = CustomApprovalGate(entry.name, delegate)
        else:
            raise ConfigurationError(f"Unsupported gate spec: {type(entry).__name__}")
        return _GateInstance(entry.from_state, entry.to_state, gate)

    def _make_policy(self, entry: PolicySpec | ExperimentPolicy, lifecycle: LifecycleManager) -> ExperimentPolicy:
        if isinstance(entry, TrafficLimitSpec):
            return TrafficLimitPolicy(entry.max_traffic_percentage, entry.min_stable_time)
        if isinstance(entry, ErrorRateSpec):
            return ErrorRatePolicy(entry.max_error_rate)
        if isinstance(entry, TimeWindowSpec):
            return TimeWindowPolicy(entry.start, entry.end)
        if isinstance(entry, ConflictPreventionSpec):
            return ConflictPreventionPolicy(entry.conflicting_experiments, state_lookup=lifecycle.get_state)
        return entry

    def build(self) -> GovernanceService:
        """
        Assemble the service.

        Raises:
            ConfigurationError: A spec is invalid or a custom delegate is missing
        """
        try:
            lifecycle = LifecycleManager(
                TransitionLog(),
                transitions=self._transitions,
                audit_sink=self._audit_sink,
                audit_policy=self._audit_policy,
                backplane=self._backplane,
            )
            approvals = ApprovalManager(backplane=self._backplane)
            for entry in self._gates:
                made = self._make_gate(entry)
                approvals.register_gate(made.from_state, made.to_state, made.gate)

            policies = PolicyEvaluator(backplane=self._backplane)
            for spec in self._policies:
                policies.register_policy(self._make_policy(spec, lifecycle))
        except ConfigurationError:
            raise
        except (TypeError, ValueError) as e:
            raise ConfigurationError(str(e)) from e

        versions = VersionManager(
            VersionLog(),
            audit_sink=self._audit_sink,
            audit_policy=self._audit_policy,
            backplane=self._backplane,
        )
        return GovernanceService(lifecycle, approvals, policies, versions, manual_store=self.manual_store)
