"""
Built-in safety policies.

Each policy reads named signals from PolicyContext.telemetry (or metadata)
and returns one PolicyEvaluationResult. Missing signals are treated as
compliant, with a reason saying so.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime, time, timedelta, timezone
from typing import Any

from ..lifecycle.states import LifecycleState, is_terminal
from ..util import utcnow
from .models import (
    ERROR_RATE,
    RUNNING_DURATION,
    RUNNING_EXPERIMENTS,
    TRAFFIC_PERCENTAGE,
    PolicyContext,
    PolicyEvaluationResult,
    Severity,
)

StateLookup = Callable[[str], "LifecycleState | None"]
Clock = Callable[[], datetime]


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _as_duration(value: Any) -> timedelta | None:
    if isinstance(value, timedelta):
        return value
    seconds = _as_number(value)
    return timedelta(seconds=seconds) if seconds is not None else None


class TrafficLimitPolicy:
    """
    Caps traffic until the experiment has been stable long enough.

    Traffic above the ceiling is allowed only once `running_duration` reaches
    `min_stable_time`. Without a configured minimum (or without a reported
    duration) the ceiling is absolute.
    """

    severity = Severity.CRITICAL

    def __init__(
        self,
        max_traffic_percentage: float,
        min_stable_time: timedelta | None = None,
        *,
        name: str = "TrafficLimit",
    ):
        if not 0 <= max_traffic_percentage <= 100:
            raise ValueError("max_traffic_percentage must be between 0 and 100")
        if min_stable_time is not None and min_stable_time < timedelta(0):
            raise ValueError("min_stable_time cannot be negative")
        self.max_traffic_percentage = float(max_traffic_percentage)
        self.min_stable_time = min_stable_time
        self.name = name
        self.description = f"Enforces maximum traffic of {max_traffic_percentage:g}%"

    async def evaluate(self, context: PolicyContext) -> PolicyEvaluationResult:
        traffic = _as_number(context.telemetry.get(TRAFFIC_PERCENTAGE))
        if traffic is None:
            return PolicyEvaluationResult.compliant(self.name, "No traffic data available")

        limit = self.max_traffic_percentage
        if traffic <= limit:
            return PolicyEvaluationResult.compliant(
                self.name,
                f"Traffic {traffic:g}% is within limit {limit:g}%",
                traffic_percentage=traffic,
            )

        duration = _as_duration(context.telemetry.get(RUNNING_DURATION))
        if self.min_stable_time is not None and duration is not None and duration >= self.min_stable_time:
            return PolicyEvaluationResult.compliant(
                self.name,
                f"Traffic {traffic:g}% exceeds limit but stable time requirement met",
                traffic_percentage=traffic,
                running_duration_seconds=duration.total_seconds(),
            )

        return PolicyEvaluationResult.violation(
            self.name,
            self.severity,
            f"Traffic {traffic:g}% exceeds limit {limit:g}%",
            traffic_percentage=traffic,
            max_traffic_percentage=limit,
        )


class ErrorRatePolicy:
    severity = Severity.CRITICAL

    def __init__(self, max_error_rate: float, *, name: str = "ErrorRate"):
        if not 0 <= max_error_rate <= 1:
            raise ValueError("max_error_rate must be between 0 and 1")
        self.max_error_rate = float(max_error_rate)
        self.name = name
        self.description = f"Enforces maximum error rate of {max_error_rate:.2%}"

    async def evaluate(self, context: PolicyContext) -> PolicyEvaluationResult:
        rate = _as_number(context.telemetry.get(ERROR_RATE))
        if rate is None:
            return PolicyEvaluationResult.compliant(self.name, "No error rate data available")
        if rate <= self.max_error_rate:
            return PolicyEvaluationResult.compliant(
                self.name,
                f"Error rate {rate:.2%} is within limit {self.max_error_rate:.2%}",
                error_rate=rate,
            )
        return PolicyEvaluationResult.violation(
            self.name,
            self.severity,
            f"Error rate {rate:.2%} exceeds limit {self.max_error_rate:.2%}",
            error_rate=rate,
            max_error_rate=self.max_error_rate,
        )


class TimeWindowPolicy:
    """
    Restricts changes to a UTC time-of-day window [start, end).

    A window whose start is later than its end wraps past midnight
    (22:00-06:00 covers the night).
    """

    severity = Severity.ERROR

    def __init__(
        self,
        start: time,
        end: time,
        *,
        clock: Clock = utcnow,
        name: str = "TimeWindow",
    ):
        start = start.replace(tzinfo=None)
        end = end.replace(tzinfo=None)
        if start == end:
            raise ValueError("time window start and end must differ")
        self.start = start
        self.end = end
        self.clock = clock
        self.name = name
        self.description = f"Restricts operations to {start:%H:%M} - {end:%H:%M} UTC"

    def contains(self, moment: time) -> bool:
        if self.start < self.end:
            return self.start <= moment < self.end
        return moment >= self.start or moment < self.end

    async def evaluate(self, context: PolicyContext) -> PolicyEvaluationResult:
        now = self.clock()
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc)
        moment = now.time().replace(tzinfo=None)

        if self.contains(moment):
            return PolicyEvaluationResult.compliant(self.name, "Current time is within allowed window")
        return PolicyEvaluationResult.violation(
            self.name,
            self.severity,
            f"Current time {moment:%H:%M} is outside allowed window {self.start:%H:%M} - {self.end:%H:%M}",
        )


class ConflictPreventionPolicy:
    """
    Blocks progress while a conflicting experiment is still live.

    With a `state_lookup` (normally LifecycleManager.get_state) any conflicting
    experiment in a non-terminal state counts. Experiments the lookup does not
    track (or every experiment, without a lookup) are checked against the
    `running_experiments` list in context metadata; with neither source they
    do not conflict. Names match case-insensitively and an experiment never
    conflicts with itself.
    """

    severity = Severity.CRITICAL

    def __init__(
        self,
        conflicting_experiments: Iterable[str],
        *,
        state_lookup: StateLookup | None = None,
        name: str = "ConflictPrevention",
    ):
        names = [n.strip() for n in conflicting_experiments if n and n.strip()]
        if not names:
            raise ValueError("ConflictPreventionPolicy requires at least one experiment name")
        self.conflicting_experiments = tuple(dict.fromkeys(names))
        self.state_lookup = state_lookup
        self.name = name
        self.description = f"Prevents conflicting experiments: {', '.join(self.conflicting_experiments)}"

    def _is_live(self, other: str, running: frozenset[str] | None) -> bool:
        state = self.state_lookup(other) if self.state_lookup is not None else None
        if state is not None:
            return not is_terminal(state)
        # Untracked here; fall back to the caller-supplied running list.
        return running is not None and other.casefold() in running

    async def evaluate(self, context: PolicyContext) -> PolicyEvaluationResult:
        raw_running = context.metadata.get(RUNNING_EXPERIMENTS)
        running: frozenset[str] | None = None
        if isinstance(raw_running, (list, tuple, set, frozenset)):
            running = frozenset(r.casefold() for r in raw_running if isinstance(r, str))
        elif self.state_lookup is None:
            return PolicyEvaluationResult.compliant(self.name, "No running experiments data available")

        own = context.experiment_name.casefold()
        conflicts = [
            other for other in self.conflicting_experiments
            if other.casefold() != own and self._is_live(other, running)
        ]

        if not conflicts:
            return PolicyEvaluationResult.compliant(self.name, "No conflicting experiments detected")
        return PolicyEvaluationResult.violation(
            self.name,
            self.severity,
            f"Conflicting experiments detected: {', '.join(conflicts)}",
            conflicts=list(conflicts),
        )
