"""
Policy types: severities, the evaluation context and results, and the
protocol every experiment policy implements.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from ..lifecycle.states import LifecycleState
from ..util import utcnow

# Telemetry keys read by the built-in policies
TRAFFIC_PERCENTAGE = "traffic_percentage"
ERROR_RATE = "error_rate"
RUNNING_DURATION = "running_duration"

# Metadata key for the conflict-prevention fallback
RUNNING_EXPERIMENTS = "running_experiments"


class Severity(str, Enum):
    """Blocking weight of a policy violation. Only CRITICAL blocks progress."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass(frozen=True)
class PolicyContext:
    experiment_name: str
    current_state: LifecycleState | None = None
    target_state: LifecycleState | None = None
    telemetry: Mapping[str, Any] = field(default_factory=dict, hash=False)
    metadata: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "telemetry", MappingProxyType(dict(self.telemetry)))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


@dataclass(frozen=True)
class PolicyEvaluationResult:
    is_compliant: bool
    policy_name: str
    severity: Severity
    timestamp: datetime
    reason: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @classmethod
    def compliant(cls, policy_name: str, reason: str | None = None, **metadata: Any) -> PolicyEvaluationResult:
        return cls(
            is_compliant=True,
            policy_name=policy_name,
            severity=Severity.INFO,
            timestamp=utcnow(),
            reason=reason,
            metadata=metadata,
        )

    @classmethod
    def violation(
        cls,
        policy_name: str,
        severity: Severity,
        reason: str,
        **metadata: Any,
    ) -> PolicyEvaluationResult:
        return cls(
            is_compliant=False,
            policy_name=policy_name,
            severity=severity,
            timestamp=utcnow(),
            reason=reason,
            metadata=metadata,
        )

    @property
    def is_blocking(self) -> bool:
        return not self.is_compliant and self.severity is Severity.CRITICAL

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "policy_name": self.policy_name,
            "is_compliant": self.is_compliant,
            "severity": self.severity.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.reason is not None:
            result["reason"] = self.reason
        if self.metadata:
            result["metadata"] = dict(self.metadata)
        return result


@runtime_checkable
class ExperimentPolicy(Protocol):
    name: str
    description: str

    async def evaluate(self, context: PolicyContext) -> PolicyEvaluationResult:
        ...
