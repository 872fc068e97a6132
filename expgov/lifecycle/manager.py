"""
Lifecycle manager: the authoritative state machine for experiments.

Current state is derived from the transition history held in a TransitionLog.
Every commit re-derives the state and re-validates the edge while holding the
experiment's lock, so two racing callers can never both commit from the same
state. Audit recording happens after the lock is released.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import replace
from typing import Any

from ..audit_log import (
    EXPERIMENT_ARCHIVED,
    EXPERIMENT_MODIFIED,
    EXPERIMENT_STARTED,
    EXPERIMENT_STOPPED,
    AuditEvent,
    AuditPolicy,
    AuditSink,
    create_audit_event,
    deliver,
)
from ..errors import ConcurrencyConflict, ConfigurationError, InvalidTransition
from ..persistence.backplane import GovernanceBackplane, PersistedExperimentState
from ..util import require_name, utcnow
from .states import (
    INITIAL_STATE,
    TRANSITIONS,
    LifecycleState,
    StateTransition,
    parse_state,
    validate_transition_table,
)
from .store import TransitionLog

logger = logging.getLogger(__name__)

_ACTIVE = frozenset({LifecycleState.RUNNING, LifecycleState.RAMPING})


def audit_event_type(transition: StateTransition) -> str:
    """Map a committed edge to the audit event type it is reported as."""
    if transition.to_state is LifecycleState.ARCHIVED:
        return EXPERIMENT_ARCHIVED
    if transition.to_state in _ACTIVE and transition.from_state not in _ACTIVE:
        return EXPERIMENT_STARTED
    if transition.to_state in (LifecycleState.PAUSED, LifecycleState.ROLLED_BACK):
        return EXPERIMENT_STOPPED
    return EXPERIMENT_MODIFIED


class LifecycleManager:
    """
    Validates and records lifecycle transitions.

    Args:
        log: Transition store; a fresh one is created when omitted
        transitions: Optional custom adjacency (terminal states stay terminal)
        audit_sink: Write-only audit recorder
        audit_policy: Whether audit failures are fatal to the caller
        backplane: Optional durable system of record shared across processes
    """

    def __init__(
        self,
        log: TransitionLog | None = None,
        *,
        transitions: Mapping[LifecycleState, Any] | None = None,
        audit_sink: AuditSink | None = None,
        audit_policy: AuditPolicy = AuditPolicy.BEST_EFFORT,
        backplane: GovernanceBackplane | None = None,
    ):
        self.log = log if log is not None else TransitionLog()
        self._table = validate_transition_table(transitions) if transitions is not None else TRANSITIONS
        self._audit_sink = audit_sink
        self._audit_policy = audit_policy
        self._backplane = backplane

    @property
    def transition_table(self) -> Mapping[LifecycleState, frozenset[LifecycleState]]:
        return self._table

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_state(self, experiment: str) -> LifecycleState | None:
        """Current state, or None if the experiment has no history."""
        latest = self.log.latest(require_name(experiment))
        return latest.to_state if latest is not None else None

    def current_state(self, experiment: str) -> LifecycleState:
        state = self.get_state(experiment)
        return state if state is not None else INITIAL_STATE

    def get_history(self, experiment: str) -> tuple[StateTransition, ...]:
        return self.log.history(require_name(experiment))

    def get_allowed_transitions(self, experiment: str) -> frozenset[LifecycleState]:
        return self._table[self.current_state(experiment)]

    def can_transition(self, experiment: str, target: LifecycleState | str) -> bool:
        return parse_state(target) in self.get_allowed_transitions(experiment)

    def tracked_experiments(self) -> list[str]:
        return self.log.experiments()

    # -------------------------------------------------------------------------
    # Commit
    # -------------------------------------------------------------------------

    def _check_edge(
        self,
        experiment: str,
        current: LifecycleState,
        target: LifecycleState,
        expected_state: LifecycleState | None,
    ) -> None:
        if expected_state is not None and current is not expected_state:
            raise ConcurrencyConflict(
                experiment,
                f"expected state {expected_state.value} but found {current.value}",
            )
        allowed = self._table[current]
        if target not in allowed:
            raise InvalidTransition(experiment, current, target, allowed)

    def _commit_local(
        self,
        experiment: str,
        target: LifecycleState,
        expected_state: LifecycleState | None,
        **fields: Any,
    ) -> StateTransition:
        with self.log.locked(experiment) as history:
            current = history[-1].to_state if history else INITIAL_STATE
            self._check_edge(experiment, current, target, expected_state)
            record = StateTransition(from_state=current, to_state=target, timestamp=utcnow(), **fields)
            history.append(record)
        return record

    async def _commit_with_backplane(
        self,
        backplane: GovernanceBackplane,
        experiment: str,
        target: LifecycleState,
        expected_state: LifecycleState | None,
        **fields: Any,
    ) -> StateTransition:
        persisted = await backplane.get_experiment_state(experiment)
        persisted_state = persisted.current_state if persisted is not None else INITIAL_STATE
        token = persisted.token if persisted is not None else None

        with self.log.locked(experiment) as history:
            current = history[-1].to_state if history else INITIAL_STATE
            if current is not persisted_state:
                raise ConcurrencyConflict(
                    experiment,
                    f"local state {current.value} differs from persisted state {persisted_state.value}",
                )
            self._check_edge(experiment, current, target, expected_state)
            record = StateTransition(from_state=current, to_state=target, timestamp=utcnow(), **fields)

        result = await backplane.save_experiment_state(
            PersistedExperimentState(
                experiment_name=experiment,
                current_state=target,
                last_modified=record.timestamp,
                last_modified_by=record.actor,
                configuration_version=persisted.configuration_version if persisted is not None else None,
            ),
            token,
        )
        if not result.success:
            raise ConcurrencyConflict(experiment, "persisted state changed since it was read")

        try:
            await backplane.append_state_transition(experiment, record)
        except BaseException:
            # A saved state must not point past the stored history.
            if persisted is not None:
                restored = replace(persisted, token=None)
            else:
                restored = PersistedExperimentState(
                    experiment_name=experiment,
                    current_state=INITIAL_STATE,
                    last_modified=record.timestamp,
                )
            await asyncio.shield(self._restore_state(backplane, restored, result.new_token))
            raise

        with self.log.locked(experiment) as history:
            history.append(record)
        return record

    async def _restore_state(
        self,
        backplane: GovernanceBackplane,
        state: PersistedExperimentState,
        token: str | None,
    ) -> None:
        result = await backplane.save_experiment_state(state, token)
        if result.success:
            logger.warning(
                "History append failed for '%s'; persisted state restored to %s",
                state.experiment_name,
                state.current_state.value,
            )
        else:
            logger.error(
                "History append failed for '%s' and the persisted state could not be restored; "
                "call refresh() to reconcile",
                state.experiment_name,
            )

    async def transition(
        self,
        experiment: str,
        target: LifecycleState | str,
        *,
        actor: str | None = None,
        reason: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        expected_state: LifecycleState | str | None = None,
    ) -> StateTransition:
        """
        Commit a lifecycle transition.

        Raises:
            ValueError: Empty experiment name or unknown state name
            InvalidTransition: Target not allowed from the current state
            ConcurrencyConflict: expected_state is stale, or the backplane
                rejected the write
            Exception: A backplane history write failed; the persisted
                state is restored and nothing is committed locally
            AuditRecordingError: Audit failed under AuditPolicy.REQUIRED
                (the transition is still committed)
        """
        require_name(experiment)
        target = parse_state(target)
        expected = parse_state(expected_state) if expected_state is not None else None
        fields = {"actor": actor, "reason": reason, "metadata": metadata or {}}

        if self._backplane is not None:
            record = await self._commit_with_backplane(
                self._backplane, experiment, target, expected, **fields
            )
        else:
            record = self._commit_local(experiment, target, expected, **fields)

        logger.info(
            "Experiment '%s' transitioned %s -> %s (actor=%s)",
            experiment,
            record.from_state.value,
            record.to_state.value,
            actor or "-",
        )
        await deliver(
            self._audit_sink,
            self._audit_event(experiment, record),
            policy=self._audit_policy,
            subject=record,
        )
        return record

    async def refresh(self, experiment: str) -> tuple[StateTransition, ...]:
        """
        Replace the local history with the backplane's copy.

        The persisted state is authoritative. If the stored history ends in a
        different state, a reconciling transition to the persisted state is
        appended to the backplane history before the local copy is replaced.
        """
        if self._backplane is None:
            raise ConfigurationError("refresh requires a persistence backplane")
        require_name(experiment)
        history = await self._backplane.get_state_transition_history(experiment)
        persisted = await self._backplane.get_experiment_state(experiment)
        derived = history[-1].to_state if history else INITIAL_STATE
        if persisted is not None and persisted.current_state is not derived:
            record = StateTransition(
                from_state=derived,
                to_state=persisted.current_state,
                timestamp=utcnow(),
                actor=persisted.last_modified_by,
                reason="Reconciled with persisted state",
            )
            await self._backplane.append_state_transition(experiment, record)
            history = [*history, record]
            logger.warning(
                "History for '%s' ended at %s but persisted state is %s; appended reconciling transition",
                experiment,
                derived.value,
                persisted.current_state.value,
            )
        self.log.replace(experiment, history)
        logger.debug("Reloaded %d transitions for '%s' from backplane", len(history), experiment)
        return tuple(history)

    def _audit_event(self, experiment: str, record: StateTransition) -> AuditEvent:
        details: dict[str, Any] = {
            "lifecycle_transition": {
                "from": record.from_state.value,
                "to": record.to_state.value,
            },
            "transition_id": record.transition_id,
        }
        if record.reason:
            details["reason"] = record.reason
        if record.metadata:
            details["metadata"] = dict(record.metadata)
        return create_audit_event(
            audit_event_type(record),
            experiment,
            actor=record.actor,
            details=details,
            timestamp=record.timestamp,
        )
