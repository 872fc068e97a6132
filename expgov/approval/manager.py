"""
Approval manager: registers gates per lifecycle edge and evaluates every
applicable gate for a requested transition.

Records are persisted to the backplane in one batch, and only after the whole
set of gates has been evaluated.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace

from ..errors import GateEvaluationError
from ..lifecycle.states import LifecycleState, parse_state
from ..persistence.backplane import GovernanceBackplane, PersistedApprovalRecord
from .gates import ApprovalContext, ApprovalGate, ApprovalResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GateRegistration:
    """A gate scoped to edges into `to_state`, optionally only from `from_state`."""

    from_state: LifecycleState | None
    to_state: LifecycleState
    gate: ApprovalGate

    def applies_to(self, context: ApprovalContext) -> bool:
        if self.to_state is not context.target_state:
            return False
        return self.from_state is None or self.from_state is context.current_state


class ApprovalManager:
    """
    Registry of approval gates and aggregator of their verdicts.

    Gates are evaluated sequentially in registration order. A gate that raises
    aborts the evaluation with GateEvaluationError; it never counts as an
    approval.
    """

    def __init__(self, *, backplane: GovernanceBackplane | None = None):
        self._registrations: list[GateRegistration] = []
        self._lock = threading.Lock()
        self._backplane = backplane

    def register_gate(
        self,
        from_state: LifecycleState | str | None,
        to_state: LifecycleState | str,
        gate: ApprovalGate,
    ) -> GateRegistration:
        if not isinstance(gate, ApprovalGate):
            raise TypeError(f"{type(gate).__name__} does not implement the approval gate protocol")
        registration = GateRegistration(
            from_state=parse_state(from_state) if from_state is not None else None,
            to_state=parse_state(to_state),
            gate=gate,
        )
        with self._lock:
            self._registrations.append(registration)
        logger.debug(
            "Registered gate '%s' for %s -> %s",
            gate.name,
            registration.from_state.value if registration.from_state else "*",
            registration.to_state.value,
        )
        return registration

    def registrations(self) -> tuple[GateRegistration, ...]:
        with self._lock:
            return tuple(self._registrations)

    def applicable_gates(self, context: ApprovalContext) -> list[GateRegistration]:
        return [r for r in self.registrations() if r.applies_to(context)]

    async def evaluate(self, context: ApprovalContext) -> list[ApprovalResult]:
        """
        Evaluate every applicable gate.

        Returns:
            One result per applicable gate, in registration order

        Raises:
            GateEvaluationError: A gate raised or returned a non-result
        """
        results: list[ApprovalResult] = []
        for registration in self.applicable_gates(context):
            gate = registration.gate
            try:
                result = await gate.evaluate(context)
            except Exception as e:
                logger.error(
                    "Gate '%s' raised for experiment '%s'",
                    gate.name,
                    context.experiment_name,
                    exc_info=True,
                )
                raise GateEvaluationError(gate.name, context.experiment_name, e) from e

            if not isinstance(result, ApprovalResult):
                cause = TypeError(f"expected ApprovalResult, got {type(result).__name__}")
                raise GateEvaluationError(gate.name, context.experiment_name, cause) from cause
            if result.gate_name is None:
                result = replace(result, gate_name=gate.name)
            if not result.is_approved:
                logger.warning(
                    "Gate '%s' did not approve %s -> %s for '%s': %s",
                    gate.name,
                    context.current_state.value,
                    context.target_state.value,
                    context.experiment_name,
                    result.reason or "no reason given",
                )
            results.append(result)

        if self._backplane is not None and results:
            await self._backplane.append_approval_records(
                [
                    PersistedApprovalRecord(
                        experiment_name=context.experiment_name,
                        gate_name=result.gate_name or "",
                        from_state=context.current_state,
                        to_state=context.target_state,
                        is_approved=result.is_approved,
                        timestamp=result.timestamp,
                        approver=result.approver,
                        reason=result.reason,
                    )
                    for result in results
                ]
            )
        return results

    async def is_approved(self, context: ApprovalContext) -> bool:
        """True iff every applicable gate approves (vacuously true with none)."""
        results = await self.evaluate(context)
        return all(r.is_approved for r in results)
