"""
Exception taxonomy for the governance core.

Every error raised on purpose by expgov derives from GovernanceError, so
callers and the CLI can catch one base class. Each error carries the
structured fields a caller needs to react (the attempted edge, the missing
version number, the experiment that raced) in addition to a readable message.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .lifecycle.states import LifecycleState


class GovernanceError(Exception):
    """Base class for all governance failures."""


class InvalidTransition(GovernanceError):
    """Requested lifecycle edge is absent from the transition table."""

    def __init__(
        self,
        experiment: str,
        from_state: LifecycleState,
        to_state: LifecycleState,
        allowed: Iterable[LifecycleState],
    ):
        self.experiment = experiment
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = frozenset(allowed)
        allowed_text = ", ".join(sorted(s.value for s in self.allowed)) or "none"
        super().__init__(
            f"Invalid state transition for experiment '{experiment}': "
            f"{from_state.value} -> {to_state.value} (allowed: {allowed_text})"
        )


class VersionNotFound(GovernanceError):
    """Requested configuration version does not exist."""

    def __init__(self, experiment: str, version: int):
        self.experiment = experiment
        self.version = version
        super().__init__(f"Version {version} not found for experiment '{experiment}'")


class ConcurrencyConflict(GovernanceError):
    """A write raced against a newer state; the caller must re-read and retry."""

    def __init__(self, experiment: str, detail: str):
        self.experiment = experiment
        self.detail = detail
        super().__init__(
            f"Concurrency conflict for experiment '{experiment}': {detail}. "
            "Reload the current state and retry."
        )


class GateEvaluationError(GovernanceError):
    """An approval gate raised instead of returning a verdict."""

    def __init__(self, gate_name: str, experiment: str, cause: BaseException):
        self.gate_name = gate_name
        self.experiment = experiment
        super().__init__(
            f"Approval gate '{gate_name}' failed for experiment '{experiment}': "
            f"{type(cause).__name__}: {cause}"
        )


class PolicyEvaluationError(GovernanceError):
    """Raised by a policy to report that it could not reach a verdict.

    The evaluator captures it (like any other exception from a policy) as an
    Error-severity non-compliant result.
    """


class AuditRecordingError(GovernanceError):
    """The audit sink failed while AuditPolicy.REQUIRED was in force.

    The governance operation has already been committed; `subject` holds the
    committed StateTransition or ConfigurationVersion.
    """

    def __init__(self, experiment: str, subject: Any, cause: BaseException):
        self.experiment = experiment
        self.subject = subject
        super().__init__(
            f"Audit recording failed for experiment '{experiment}' "
            f"(operation already committed): {type(cause).__name__}: {cause}"
        )


class ConfigurationError(GovernanceError, ValueError):
    """Invalid governance profile or builder input."""
