"""
Tests for built-in policies and PolicyEvaluator.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import time, timedelta

import pytest

from expgov.errors import PolicyEvaluationError
from expgov.lifecycle import LifecycleManager
from expgov.lifecycle import LifecycleState as S
from expgov.policy import (
    ConflictPreventionPolicy,
    ErrorRatePolicy,
    PolicyContext,
    PolicyEvaluationResult,
    PolicyEvaluator,
    Severity,
    TimeWindowPolicy,
    TrafficLimitPolicy,
)


def _ctx(experiment: str = "exp", telemetry=None, metadata=None) -> PolicyContext:
    return PolicyContext(
        experiment_name=experiment,
        current_state=S.RUNNING,
        target_state=S.RAMPING,
        telemetry=telemetry or {},
        metadata=metadata or {},
    )


class StaticPolicy:
    def __init__(self, name: str, compliant: bool, severity: Severity):
        self.name = name
        self.description = f"static {name}"
        self._result = (compliant, severity)

    async def evaluate(self, context: PolicyContext) -> PolicyEvaluationResult:
        compliant, severity = self._result
        if compliant:
            return PolicyEvaluationResult.compliant(self.name)
        return PolicyEvaluationResult.violation(self.name, severity, f"{self.name} violated")


class BrokenPolicy:
    name = "Broken"
    description = "always raises"

    async def evaluate(self, context: PolicyContext) -> PolicyEvaluationResult:
        raise KeyError("missing signal")


class TestTrafficLimit:
    @pytest.mark.asyncio
    async def test_missing_telemetry_is_compliant(self) -> None:
        result = await TrafficLimitPolicy(10).evaluate(_ctx())
        assert result.is_compliant
        assert result.reason == "No traffic data available"

    @pytest.mark.asyncio
    async def test_within_limit(self) -> None:
        result = await TrafficLimitPolicy(10).evaluate(_ctx(telemetry={"traffic_percentage": 10}))
        assert result.is_compliant

    @pytest.mark.asyncio
    async def test_over_limit_without_min_stable_time_is_critical(self) -> None:
        result = await TrafficLimitPolicy(10).evaluate(
            _ctx(telemetry={"traffic_percentage": 25.0, "running_duration": timedelta(days=3)})
        )
        assert not result.is_compliant
        assert result.severity is Severity.CRITICAL
        assert result.reason == "Traffic 25% exceeds limit 10%"

    @pytest.mark.asyncio
    async def test_over_limit_allowed_once_stable(self) -> None:
        policy = TrafficLimitPolicy(10, min_stable_time=timedelta(hours=1))
        early = await policy.evaluate(_ctx(telemetry={"traffic_percentage": 50, "running_duration": 600}))
        late = await policy.evaluate(
            _ctx(telemetry={"traffic_percentage": 50, "running_duration": timedelta(hours=2)})
        )
        assert not early.is_compliant
        assert late.is_compliant

    @pytest.mark.asyncio
    async def test_unknown_duration_is_not_stable(self) -> None:
        policy = TrafficLimitPolicy(10, min_stable_time=timedelta(hours=1))
        result = await policy.evaluate(_ctx(telemetry={"traffic_percentage": 50}))
        assert not result.is_compliant

    @pytest.mark.parametrize("value", [-1, 100.5])
    def test_rejects_out_of_range_ceiling(self, value: float) -> None:
        with pytest.raises(ValueError):
            TrafficLimitPolicy(value)


class TestErrorRate:
    @pytest.mark.asyncio
    async def test_threshold(self) -> None:
        policy = ErrorRatePolicy(0.05)
        ok = await policy.evaluate(_ctx(telemetry={"error_rate": 0.05}))
        bad = await policy.evaluate(_ctx(telemetry={"error_rate": 0.2}))
        assert ok.is_compliant
        assert not bad.is_compliant
        assert bad.severity is Severity.CRITICAL

    @pytest.mark.asyncio
    async def test_non_numeric_signal_counts_as_missing(self) -> None:
        result = await ErrorRatePolicy(0.05).evaluate(_ctx(telemetry={"error_rate": "high"}))
        assert result.is_compliant
        assert result.reason == "No error rate data available"

    def test_rejects_out_of_range_threshold(self) -> None:
        with pytest.raises(ValueError):
            ErrorRatePolicy(1.5)


class TestTimeWindow:
    @pytest.mark.asyncio
    async def test_daytime_window_is_half_open(self, make_clock) -> None:
        def policy_at(hour: int) -> TimeWindowPolicy:
            return TimeWindowPolicy(time(9), time(17), clock=make_clock(hour))

        assert (await policy_at(9).evaluate(_ctx())).is_compliant
        assert (await policy_at(16).evaluate(_ctx())).is_compliant
        outside = await policy_at(17).evaluate(_ctx())
        assert not outside.is_compliant
        assert outside.severity is Severity.ERROR

    @pytest.mark.asyncio
    async def test_window_wraps_past_midnight(self, make_clock) -> None:
        def policy_at(hour: int) -> TimeWindowPolicy:
            return TimeWindowPolicy(time(22), time(6), clock=make_clock(hour))

        assert (await policy_at(23).evaluate(_ctx())).is_compliant
        assert (await policy_at(2).evaluate(_ctx())).is_compliant
        assert not (await policy_at(12).evaluate(_ctx())).is_compliant

    def test_empty_window_rejected(self) -> None:
        with pytest.raises(ValueError):
            TimeWindowPolicy(time(9), time(9))


class TestConflictPrevention:
    @pytest.mark.asyncio
    async def test_uses_running_list_without_lookup(self) -> None:
        policy = ConflictPreventionPolicy(["Checkout-V2", "pricing"])
        result = await policy.evaluate(_ctx(metadata={"running_experiments": ["checkout-v2", "search"]}))
        assert not result.is_compliant
        assert result.severity is Severity.CRITICAL
        assert result.metadata["conflicts"] == ["Checkout-V2"]

    @pytest.mark.asyncio
    async def test_without_any_data_is_compliant(self) -> None:
        result = await ConflictPreventionPolicy(["other"]).evaluate(_ctx())
        assert result.is_compliant
        assert result.reason == "No running experiments data available"

    @pytest.mark.asyncio
    async def test_never_conflicts_with_itself(self) -> None:
        policy = ConflictPreventionPolicy(["exp", "other"])
        result = await policy.evaluate(_ctx(metadata={"running_experiments": ["EXP"]}))
        assert result.is_compliant

    @pytest.mark.asyncio
    async def test_state_lookup_treats_non_terminal_as_live(self, lifecycle: LifecycleManager) -> None:
        policy = ConflictPreventionPolicy(["other", "retired", "untracked"], state_lookup=lifecycle.get_state)
        await lifecycle.transition("other", S.PENDING_APPROVAL)
        await lifecycle.transition("retired", S.ARCHIVED)

        result = await policy.evaluate(_ctx())
        assert not result.is_compliant
        assert result.metadata["conflicts"] == ["other"]

        await lifecycle.transition("other", S.DRAFT)
        await lifecycle.transition("other", S.ARCHIVED)
        assert (await policy.evaluate(_ctx())).is_compliant


class TestEvaluator:
    @pytest.mark.asyncio
    async def test_results_follow_registration_order(self) -> None:
        evaluator = PolicyEvaluator()
        for name in ("a", "b", "c"):
            evaluator.register_policy(StaticPolicy(name, True, Severity.INFO))
        results = await evaluator.evaluate_all(_ctx())
        assert [r.policy_name for r in results] == ["a", "b", "c"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("severity", [Severity.INFO, Severity.WARNING, Severity.ERROR])
    async def test_only_critical_violations_block(self, severity: Severity) -> None:
        evaluator = PolicyEvaluator()
        evaluator.register_policy(StaticPolicy("soft", False, severity))
        assert await evaluator.are_critical_policies_compliant(_ctx())

        evaluator.register_policy(StaticPolicy("hard", False, Severity.CRITICAL))
        assert not await evaluator.are_critical_policies_compliant(_ctx())

    @pytest.mark.asyncio
    async def test_broken_policy_becomes_error_result(self, caplog) -> None:
        evaluator = PolicyEvaluator()
        evaluator.register_policy(BrokenPolicy())
        evaluator.register_policy(StaticPolicy("after", True, Severity.INFO))

        with caplog.at_level(logging.ERROR, logger="expgov.policy.evaluator"):
            results = await evaluator.evaluate_all(_ctx())

        broken, after = results
        assert not broken.is_compliant
        assert broken.severity is Severity.ERROR
        assert broken.reason.startswith("Policy evaluation failed:")
        assert after.is_compliant
        assert any(r.levelno == logging.ERROR for r in caplog.records)
        assert await evaluator.are_critical_policies_compliant(_ctx())

    @pytest.mark.asyncio
    async def test_explicit_policy_error_is_captured(self) -> None:
        class Declining:
            name = "Declining"
            description = "cannot decide"

            async def evaluate(self, context: PolicyContext) -> PolicyEvaluationResult:
                raise PolicyEvaluationError("telemetry source offline")

        evaluator = PolicyEvaluator()
        evaluator.register_policy(Declining())
        (result,) = await evaluator.evaluate_all(_ctx())
        assert result.severity is Severity.ERROR
        assert "telemetry source offline" in result.reason

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self) -> None:
        class Cancelled:
            name = "Cancelled"
            description = "cancelled"

            async def evaluate(self, context: PolicyContext) -> PolicyEvaluationResult:
                raise asyncio.CancelledError()

        evaluator = PolicyEvaluator()
        evaluator.register_policy(Cancelled())
        with pytest.raises(asyncio.CancelledError):
            await evaluator.evaluate_all(_ctx())

    @pytest.mark.asyncio
    async def test_results_persisted_to_backplane(self, backplane) -> None:
        evaluator = PolicyEvaluator(backplane=backplane)
        evaluator.register_policy(StaticPolicy("a", True, Severity.INFO))
        evaluator.register_policy(StaticPolicy("b", False, Severity.WARNING))
        await evaluator.evaluate_all(_ctx())

        records = await backplane.get_policy_evaluations("exp")
        assert [(r.policy_name, r.is_compliant, r.severity) for r in records] == [
            ("a", True, "info"),
            ("b", False, "warning"),
        ]
        assert records[0].target_state is S.RAMPING

    def test_register_rejects_non_policies(self) -> None:
        with pytest.raises(TypeError):
            PolicyEvaluator().register_policy(object())  # type: ignore[arg-type]
