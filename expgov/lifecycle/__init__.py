"""
Experiment lifecycle: states, the transition table, history and commits.
"""

from .states import (
    INITIAL_STATE,
    TERMINAL_STATES,
    TRANSITIONS,
    LifecycleState,
    StateTransition,
    is_terminal,
    parse_state,
    validate_transition_table,
)
from .store import TransitionLog
from .manager import LifecycleManager, audit_event_type

__all__ = [
    "INITIAL_STATE",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "LifecycleManager",
    "LifecycleState",
    "StateTransition",
    "TransitionLog",
    "audit_event_type",
    "is_terminal",
    "parse_state",
    "validate_transition_table",
]
