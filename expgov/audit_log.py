"""
Audit events and sinks.

Governance operations report what they committed to an injected, write-only
AuditSink. The sink is an external collaborator: expgov never reads audit
data back to make decisions.

This module provides:
- The closed set of audit event types and the immutable AuditEvent record
- The AuditSink protocol plus in-memory, logging and JSON Lines sinks
- AuditPolicy, which decides whether a sink failure is fatal
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from .errors import AuditRecordingError
from .util import new_ulid, utcnow

logger = logging.getLogger(__name__)

# Event type constants
EXPERIMENT_CREATED = "experiment.created"
EXPERIMENT_MODIFIED = "experiment.modified"
EXPERIMENT_STARTED = "experiment.started"
EXPERIMENT_STOPPED = "experiment.stopped"
EXPERIMENT_ARCHIVED = "experiment.archived"

# All valid event types
AUDIT_EVENT_TYPES = frozenset({
    EXPERIMENT_CREATED,
    EXPERIMENT_MODIFIED,
    EXPERIMENT_STARTED,
    EXPERIMENT_STOPPED,
    EXPERIMENT_ARCHIVED,
})


@dataclass(frozen=True)
class AuditEvent:
    """
    Immutable structured audit record.

    Details are free-form but must be JSON-compatible so file-backed sinks
    can persist them verbatim.
    """

    event_type: str  # One of AUDIT_EVENT_TYPES
    experiment_name: str
    timestamp: datetime
    actor: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict, hash=False)
    event_id: str = field(default_factory=new_ulid)

    def __post_init__(self) -> None:
        if self.event_type not in AUDIT_EVENT_TYPES:
            raise ValueError(f"Invalid event_type: {self.event_type}")
        object.__setattr__(self, "details", MappingProxyType(dict(self.details)))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible dict."""
        result: dict[str, Any] = {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "experiment_name": self.experiment_name,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.actor is not None:
            result["actor"] = self.actor
        if self.details:
            result["details"] = dict(self.details)
        return result

    def to_json(self) -> str:
        """Serialize to JSON string (single line)."""
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEvent:
        return cls(
            event_type=data["event_type"],
            experiment_name=data["experiment_name"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            actor=data.get("actor"),
            details=data.get("details", {}),
            event_id=data["event_id"],
        )

    @classmethod
    def from_json(cls, line: str) -> AuditEvent:
        return cls.from_dict(json.loads(line))


def create_audit_event(
    event_type: str,
    experiment_name: str,
    *,
    actor: str | None = None,
    details: Mapping[str, Any] | None = None,
    timestamp: datetime | None = None,
) -> AuditEvent:
    """Factory for audit events with consistent UTC timestamps."""
    return AuditEvent(
        event_type=event_type,
        experiment_name=experiment_name,
        timestamp=timestamp or utcnow(),
        actor=actor,
        details=details or {},
    )


@runtime_checkable
class AuditSink(Protocol):
    """Write-only recorder of audit events."""

    async def record(self, event: AuditEvent) -> None:
        ...


class AuditPolicy(str, Enum):
    BEST_EFFORT = "best_effort"  # log sink failures, keep the committed result
    REQUIRED = "required"  # raise AuditRecordingError after the commit


async def deliver(
    sink: AuditSink | None,
    event: AuditEvent,
    *,
    policy: AuditPolicy,
    subject: Any,
) -> None:
    """
    Hand an event to the sink according to the audit policy.

    The governance operation has already been committed when this runs, so a
    failure never undoes it. Cancellation always propagates.
    """
    if sink is None:
        return
    try:
        await sink.record(event)
    except Exception as e:
        if policy is AuditPolicy.REQUIRED:
            raise AuditRecordingError(event.experiment_name, subject, e) from e
        logger.warning(
            "Audit sink failed to record %s for experiment '%s': %s",
            event.event_type,
            event.experiment_name,
            e,
            exc_info=True,
        )


class InMemoryAuditSink:
    """Collects events in a list; useful for tests and embedding."""

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._lock = threading.Lock()

    async def record(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> list[AuditEvent]:
        with self._lock:
            return list(self._events)

    def for_experiment(self, experiment_name: str) -> list[AuditEvent]:
        return [e for e in self.events if e.experiment_name == experiment_name]


class LoggingAuditSink:
    """Writes each event as one INFO line on the `expgov.audit` logger."""

    def __init__(self, logger_name: str = "expgov.audit"):
        self._logger = logging.getLogger(logger_name)

    async def record(self, event: AuditEvent) -> None:
        self._logger.info("%s", event.to_json())


class JsonlAuditSink:
    """
    Append-only JSON Lines audit file.

    Storage format: one AuditEvent per line, never rewritten. Writes run in a
    worker thread so the event loop is not blocked on disk I/O.
    """

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()

    def _append(self, line: str) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")

    async def record(self, event: AuditEvent) -> None:
        await asyncio.to_thread(self._append, event.to_json())


def read_audit_log(path: Path, last_n: int | None = None) -> list[AuditEvent]:
    """
    Read events from a JSON Lines audit file.

    Args:
        path: Audit file written by JsonlAuditSink
        last_n: If specified, return only the last N events

    Returns:
        List of audit events (oldest first)
    """
    if not path.exists():
        return []

    events: list[AuditEvent] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                events.append(AuditEvent.from_json(line))
            except (json.JSONDecodeError, KeyError, ValueError):
                logger.warning("Skipping malformed audit line in %s", path)

    if last_n is not None:
        return events[-last_n:]
    return events


def format_audit_event(event: AuditEvent) -> str:
    """Format an audit event for human-readable display."""
    lines = [f"[{event.timestamp.isoformat()}] {event.event_type} {event.experiment_name}"]
    if event.actor:
        lines.append(f"  actor: {event.actor}")
    for key, value in event.details.items():
        lines.append(f"  {key}: {value}")
    return "\n".join(lines)
