"""
Policy evaluator.

Runs every registered policy against one context, in registration order.
Failures are isolated per policy: a policy that raises is reported as an
Error-severity, non-compliant result and the remaining policies still run.
Cancellation is not an Exception and always propagates.
"""

from __future__ import annotations

import logging
import threading

from ..errors import PolicyEvaluationError
from ..persistence.backplane import GovernanceBackplane, PersistedPolicyEvaluation
from .models import ExperimentPolicy, PolicyContext, PolicyEvaluationResult, Severity

logger = logging.getLogger(__name__)


class PolicyEvaluator:
    def __init__(self, *, backplane: GovernanceBackplane | None = None):
        self._policies: list[ExperimentPolicy] = []
        self._lock = threading.Lock()
        self._backplane = backplane

    def register_policy(self, policy: ExperimentPolicy) -> None:
        if not isinstance(policy, ExperimentPolicy):
            raise TypeError(f"{type(policy).__name__} does not implement the experiment policy protocol")
        with self._lock:
            self._policies.append(policy)
        logger.info("Registered policy '%s': %s", policy.name, policy.description)

    def policies(self) -> tuple[ExperimentPolicy, ...]:
        with self._lock:
            return tuple(self._policies)

    async def _evaluate_one(self, policy: ExperimentPolicy, context: PolicyContext) -> PolicyEvaluationResult:
        try:
            result = await policy.evaluate(context)
            if not isinstance(result, PolicyEvaluationResult):
                raise PolicyEvaluationError(
                    f"policy returned {type(result).__name__}, expected PolicyEvaluationResult"
                )
        except Exception as e:
            logger.error(
                "Policy '%s' raised for experiment '%s'",
                policy.name,
                context.experiment_name,
                exc_info=True,
            )
            return PolicyEvaluationResult.violation(
                policy.name,
                Severity.ERROR,
                f"Policy evaluation failed: {e}",
                error_type=type(e).__name__,
            )

        if not result.is_compliant:
            logger.warning(
                "Policy '%s' violated (%s) for experiment '%s': %s",
                result.policy_name,
                result.severity.value,
                context.experiment_name,
                result.reason or "no reason given",
            )
        return result

    async def evaluate_all(self, context: PolicyContext) -> list[PolicyEvaluationResult]:
        """Evaluate every registered policy; one result per policy."""
        results = [await self._evaluate_one(policy, context) for policy in self.policies()]

        if self._backplane is not None and results:
            await self._backplane.append_policy_evaluations(
                [
                    PersistedPolicyEvaluation(
                        experiment_name=context.experiment_name,
                        policy_name=result.policy_name,
                        is_compliant=result.is_compliant,
                        severity=result.severity.value,
                        timestamp=result.timestamp,
                        reason=result.reason,
                        current_state=context.current_state,
                        target_state=context.target_state,
                        metadata=result.metadata,
                    )
                    for result in results
                ]
            )
        return results

    async def are_critical_policies_compliant(self, context: PolicyContext) -> bool:
        """False iff at least one Critical result is non-compliant."""
        results = await self.evaluate_all(context)
        return not any(r.is_blocking for r in results)
