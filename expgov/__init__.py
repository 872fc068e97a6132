"""
expgov - experiment governance core.

Tracks experiments through an auditable lifecycle, gates risky transitions
behind approval rules, evaluates severity-aware safety policies, and keeps an
immutable, diffable history of configuration versions with rollback.
"""

__version__ = "0.1.0"

from .audit_log import (
    AUDIT_EVENT_TYPES,
    AuditEvent,
    AuditPolicy,
    AuditSink,
    InMemoryAuditSink,
    JsonlAuditSink,
    LoggingAuditSink,
)
from .errors import (
    AuditRecordingError,
    ConcurrencyConflict,
    ConfigurationError,
    GateEvaluationError,
    GovernanceError,
    InvalidTransition,
    PolicyEvaluationError,
    VersionNotFound,
)
from .lifecycle import LifecycleManager, LifecycleState, StateTransition, TransitionLog
from .approval import (
    ApprovalContext,
    ApprovalManager,
    ApprovalResult,
    AutomaticApprovalGate,
    CustomApprovalGate,
    ManualApprovalGate,
    ManualApprovalStore,
    RoleBasedApprovalGate,
)
from .policy import (
    ConflictPreventionPolicy,
    ErrorRatePolicy,
    PolicyContext,
    PolicyEvaluationResult,
    PolicyEvaluator,
    Severity,
    TimeWindowPolicy,
    TrafficLimitPolicy,
)
from .versioning import ConfigurationVersion, VersionDiff, VersionLog, VersionManager
from .persistence import GovernanceBackplane, InMemoryGovernanceBackplane
from .governance import GovernanceBuilder, GovernanceService, TransitionDecision
from .config import GovernanceProfile, load_profile

__all__ = [
    "__version__",
    # Audit
    "AUDIT_EVENT_TYPES",
    "AuditEvent",
    "AuditPolicy",
    "AuditSink",
    "InMemoryAuditSink",
    "JsonlAuditSink",
    "LoggingAuditSink",
    # Errors
    "AuditRecordingError",
    "ConcurrencyConflict",
    "ConfigurationError",
    "GateEvaluationError",
    "GovernanceError",
    "InvalidTransition",
    "PolicyEvaluationError",
    "VersionNotFound",
    # Lifecycle
    "LifecycleManager",
    "LifecycleState",
    "StateTransition",
    "TransitionLog",
    # Approval
    "ApprovalContext",
    "ApprovalManager",
    "ApprovalResult",
    "AutomaticApprovalGate",
    "CustomApprovalGate",
    "ManualApprovalGate",
    "ManualApprovalStore",
    "RoleBasedApprovalGate",
    # Policy
    "ConflictPreventionPolicy",
    "ErrorRatePolicy",
    "PolicyContext",
    "PolicyEvaluationResult",
    "PolicyEvaluator",
    "Severity",
    "TimeWindowPolicy",
    "TrafficLimitPolicy",
    # Versioning
    "ConfigurationVersion",
    "VersionDiff",
    "VersionLog",
    "VersionManager",
    # Persistence
    "GovernanceBackplane",
    "InMemoryGovernanceBackplane",
    # Composition
    "GovernanceBuilder",
    "GovernanceProfile",
    "GovernanceService",
    "TransitionDecision",
    "load_profile",
]
