"""
Governance profile loading (TOML).

A profile is data: which gates guard which edges, which policies run, and
how audit failures are treated. Kind strings are resolved here, once, into
the typed specs GovernanceBuilder consumes; unknown kinds and malformed
entries are rejected with a ConfigurationError naming the entry.
"""

from __future__ import annotations

import re
import tomllib
from dataclasses import dataclass, field
from datetime import time, timedelta
from pathlib import Path
from typing import Any

from .audit_log import AuditPolicy
from .errors import ConfigurationError
from .governance import (
    AutomaticGateSpec,
    ConflictPreventionSpec,
    CustomGateSpec,
    ErrorRateSpec,
    GateSpec,
    ManualGateSpec,
    PolicySpec,
    RoleBasedGateSpec,
    TimeWindowSpec,
    TrafficLimitSpec,
)
from .lifecycle.states import LifecycleState, parse_state

GATE_KINDS = ("automatic", "manual", "role_based", "custom")
POLICY_KINDS = ("traffic_limit", "error_rate", "time_window", "conflict_prevention")

_DURATION_RE = re.compile(r"^(?:(?P<days>\d+)\.)?(?P<hours>\d{1,2}):(?P<minutes>\d{2})(?::(?P<seconds>\d{2}(?:\.\d+)?))?$")


@dataclass(frozen=True)
class GovernanceProfile:
    audit_policy: AuditPolicy = AuditPolicy.BEST_EFFORT
    gates: tuple[GateSpec, ...] = ()
    policies: tuple[PolicySpec, ...] = ()
    source: Path | None = field(default=None, compare=False)


def parse_duration(value: Any) -> timedelta:
    """
    Parse a duration given as seconds or as "[D.]HH:MM[:SS]".

    Raises:
        ValueError: Unparseable or negative duration
    """
    if isinstance(value, timedelta):
        result = value
    elif isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    elif isinstance(value, (int, float)):
        result = timedelta(seconds=value)
    elif isinstance(value, str):
        m = _DURATION_RE.match(value.strip())
        if m is None:
            raise ValueError(f"Invalid duration: {value!r} (expected [D.]HH:MM[:SS] or seconds)")
        result = timedelta(
            days=int(m.group("days") or 0),
            hours=int(m.group("hours")),
            minutes=int(m.group("minutes")),
            seconds=float(m.group("seconds") or 0),
        )
    else:
        raise ValueError(f"Invalid duration: {value!r}")
    if result < timedelta(0):
        raise ValueError(f"Duration cannot be negative: {value!r}")
    return result


def parse_time_of_day(value: Any) -> time:
    """Parse "HH:MM[:SS]" (or a TOML local time) into a naive time."""
    if isinstance(value, time):
        return value.replace(tzinfo=None)
    if isinstance(value, str):
        try:
            return time.fromisoformat(value.strip())
        except ValueError:
            pass
    raise ValueError(f"Invalid time of day: {value!r} (expected HH:MM[:SS])")


def _number(raw: dict[str, Any], key: str, low: float, high: float) -> float:
    value = raw.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' must be a number")
    if not low <= value <= high:
        raise ValueError(f"'{key}' must be between {low:g} and {high:g}")
    return float(value)


def _state(raw: dict[str, Any], key: str, *, required: bool) -> LifecycleState | None:
    value = raw.get(key)
    if value is None:
        if required:
            raise ValueError(f"'{key}' is required")
        return None
    if not isinstance(value, str):
        raise ValueError(f"'{key}' must be a state name")
    return parse_state(value)


def _string_list(raw: dict[str, Any], key: str) -> tuple[str, ...]:
    value = raw.get(key)
    if not isinstance(value, list) or not value:
        raise ValueError(f"'{key}' must be a non-empty list of strings")
    items = tuple(str(v).strip() for v in value if isinstance(v, str) and v.strip())
    if len(items) != len(value):
        raise ValueError(f"'{key}' must contain only non-empty strings")
    return items


def _kind(raw: dict[str, Any], allowed: tuple[str, ...]) -> str:
    kind = str(raw.get("kind", "")).strip().lower().replace("-", "_")
    if kind not in allowed:
        raise ValueError(f"unknown kind {raw.get('kind')!r} (expected one of: {', '.join(allowed)})")
    return kind


def _parse_gate(raw: dict[str, Any]) -> GateSpec:
    kind = _kind(raw, GATE_KINDS)
    to_state = _state(raw, "to", required=True)
    from_state = _state(raw, "from", required=False)
    assert to_state is not None
    name = raw.get("name")
    if name is not None and (not isinstance(name, str) or not name.strip()):
        raise ValueError("'name' must be a non-empty string")

    if kind == "automatic":
        return AutomaticGateSpec(to_state=to_state, from_state=from_state, name=name or "automatic")
    if kind == "manual":
        return ManualGateSpec(to_state=to_state, from_state=from_state, name=name or "manual")
    if kind == "role_based":
        return RoleBasedGateSpec(
            to_state=to_state,
            roles=_string_list(raw, "roles"),
            from_state=from_state,
            name=name or "role_based",
        )

    delegate = raw.get("delegate")
    if not isinstance(delegate, str) or not delegate.strip():
        raise ValueError("custom gates require a 'delegate' name")
    return CustomGateSpec(
        to_state=to_state,
        name=name or delegate.strip(),
        from_state=from_state,
        delegate_name=delegate.strip(),
    )


def _parse_policy(raw: dict[str, Any]) -> PolicySpec:
    kind = _kind(raw, POLICY_KINDS)

    if kind == "traffic_limit":
        min_stable = raw.get("min_stable_time")
        return TrafficLimitSpec(
            max_traffic_percentage=_number(raw, "max_traffic_percentage", 0, 100),
            min_stable_time=parse_duration(min_stable) if min_stable is not None else None,
        )
    if kind == "error_rate":
        return ErrorRateSpec(max_error_rate=_number(raw, "max_error_rate", 0, 1))
    if kind == "time_window":
        start = parse_time_of_day(raw.get("start"))
        end = parse_time_of_day(raw.get("end"))
        if start == end:
            raise ValueError("'start' and 'end' must differ")
        return TimeWindowSpec(start=start, end=end)
    return ConflictPreventionSpec(conflicting_experiments=_string_list(raw, "conflicting_experiments"))


def parse_profile(data: dict[str, Any], *, source: Path | None = None) -> GovernanceProfile:
    """Build a profile from already-decoded TOML data."""
    where = f" in {source}" if source else ""

    raw_policy = data.get("audit_policy", AuditPolicy.BEST_EFFORT.value)
    try:
        audit_policy = AuditPolicy(str(raw_policy).strip().lower())
    except ValueError:
        raise ConfigurationError(
            f"audit_policy{where}: expected 'best_effort' or 'required', got {raw_policy!r}"
        ) from None

    gates: list[GateSpec] = []
    for i, raw in enumerate(data.get("gates", [])):
        try:
            if not isinstance(raw, dict):
                raise ValueError("entry must be a table")
            gates.append(_parse_gate(raw))
        except ValueError as e:
            raise ConfigurationError(f"gates[{i}]{where}: {e}") from e

    policies: list[PolicySpec] = []
    for i, raw in enumerate(data.get("policies", [])):
        try:
            if not isinstance(raw, dict):
                raise ValueError("entry must be a table")
            policies.append(_parse_policy(raw))
        except ValueError as e:
            raise ConfigurationError(f"policies[{i}]{where}: {e}") from e

    return GovernanceProfile(
        audit_policy=audit_policy,
        gates=tuple(gates),
        policies=tuple(policies),
        source=source,
    )


def load_profile(path: Path) -> GovernanceProfile:
    """
    Load a governance profile from TOML.

    Raises:
        ConfigurationError: Unreadable TOML or invalid entries
    """
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read profile {path}: {e}") from e
    return parse_profile(data, source=path)
