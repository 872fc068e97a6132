"""
Lifecycle states and the static transition table.

The table is the single source of truth for legal edges. Current state is
never stored on its own: it is the to_state of the most recent transition, or
DRAFT when an experiment has no history.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Final

from ..util import new_ulid


class LifecycleState(str, Enum):
    DRAFT = "draft"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    RUNNING = "running"  # stable traffic allocation
    RAMPING = "ramping"  # traffic allocation increasing
    PAUSED = "paused"
    ROLLED_BACK = "rolled_back"
    ARCHIVED = "archived"  # terminal
    REJECTED = "rejected"


INITIAL_STATE: Final = LifecycleState.DRAFT
TERMINAL_STATES: Final[frozenset[LifecycleState]] = frozenset({LifecycleState.ARCHIVED})


def _edges(*states: LifecycleState) -> frozenset[LifecycleState]:
    return frozenset(states)


TRANSITIONS: Final[Mapping[LifecycleState, frozenset[LifecycleState]]] = MappingProxyType({
    LifecycleState.DRAFT: _edges(LifecycleState.PENDING_APPROVAL, LifecycleState.ARCHIVED),
    LifecycleState.PENDING_APPROVAL: _edges(
        LifecycleState.APPROVED,
        LifecycleState.REJECTED,
        LifecycleState.DRAFT,  # back to draft for revisions
    ),
    LifecycleState.APPROVED: _edges(
        LifecycleState.RUNNING,
        LifecycleState.RAMPING,
        LifecycleState.ARCHIVED,
    ),
    LifecycleState.RUNNING: _edges(
        LifecycleState.RAMPING,
        LifecycleState.PAUSED,
        LifecycleState.ROLLED_BACK,
        LifecycleState.ARCHIVED,
    ),
    LifecycleState.RAMPING: _edges(
        LifecycleState.RUNNING,
        LifecycleState.PAUSED,
        LifecycleState.ROLLED_BACK,
        LifecycleState.ARCHIVED,
    ),
    LifecycleState.PAUSED: _edges(
        LifecycleState.RUNNING,
        LifecycleState.RAMPING,
        LifecycleState.ROLLED_BACK,
        LifecycleState.ARCHIVED,
    ),
    LifecycleState.ROLLED_BACK: _edges(LifecycleState.DRAFT, LifecycleState.ARCHIVED),
    LifecycleState.REJECTED: _edges(LifecycleState.DRAFT, LifecycleState.ARCHIVED),
    LifecycleState.ARCHIVED: _edges(),
})


def validate_transition_table(
    table: Mapping[LifecycleState, frozenset[LifecycleState] | set[LifecycleState]],
) -> Mapping[LifecycleState, frozenset[LifecycleState]]:
    """
    Normalize a custom adjacency mapping.

    Every state gets an entry (missing ones have no outgoing edges) and
    terminal states must stay terminal.
    """
    normalized: dict[LifecycleState, frozenset[LifecycleState]] = {}
    for state in LifecycleState:
        targets = frozenset(LifecycleState(t) for t in table.get(state, ()))
        if state in TERMINAL_STATES and targets:
            raise ValueError(f"Terminal state {state.value} cannot have outgoing transitions")
        normalized[state] = targets
    return MappingProxyType(normalized)


def is_terminal(state: LifecycleState) -> bool:
    return state in TERMINAL_STATES


def _normalize_token(text: str) -> str:
    return text.strip().lower().replace("_", "").replace("-", "").replace(" ", "")


_BY_TOKEN: Final[dict[str, LifecycleState]] = {}
for _state in LifecycleState:
    _BY_TOKEN[_normalize_token(_state.value)] = _state
    _BY_TOKEN[_normalize_token(_state.name)] = _state


def parse_state(value: str | LifecycleState) -> LifecycleState:
    """
    Parse a state name case-insensitively.

    Accepts enum values ("pending_approval"), enum names ("PENDING_APPROVAL")
    and display names ("PendingApproval", "pending-approval").
    """
    if isinstance(value, LifecycleState):
        return value
    state = _BY_TOKEN.get(_normalize_token(str(value)))
    if state is None:
        raise ValueError(f"Unknown lifecycle state: {value!r}")
    return state


@dataclass(frozen=True)
class StateTransition:
    """
    Immutable record of one committed lifecycle edge.

    Appended only by the LifecycleManager; never mutated afterwards.
    """

    from_state: LifecycleState
    to_state: LifecycleState
    timestamp: datetime
    actor: str | None = None
    reason: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict, hash=False)
    transition_id: str = field(default_factory=new_ulid)

    def __post_init__(self) -> None:
        # Freeze caller-supplied metadata so history cannot be edited in place.
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        result: dict[str, Any] = {
            "transition_id": self.transition_id,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.actor is not None:
            result["actor"] = self.actor
        if self.reason is not None:
            result["reason"] = self.reason
        if self.metadata:
            result["metadata"] = dict(self.metadata)
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateTransition:
        return cls(
            from_state=LifecycleState(data["from_state"]),
            to_state=LifecycleState(data["to_state"]),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            actor=data.get("actor"),
            reason=data.get("reason"),
            metadata=data.get("metadata", {}),
            transition_id=data.get("transition_id") or new_ulid(),
        )
