"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from expgov.audit_log import AuditEvent, InMemoryAuditSink
from expgov.lifecycle import LifecycleManager, TransitionLog
from expgov.persistence import InMemoryGovernanceBackplane
from expgov.versioning import VersionLog, VersionManager


class FailingAuditSink:
    """Sink that always raises; records how often it was called."""

    def __init__(self) -> None:
        self.calls = 0

    async def record(self, event: AuditEvent) -> None:
        self.calls += 1
        raise RuntimeError("audit store unavailable")


def fixed_clock(hour: int, minute: int = 0):
    """Clock returning a fixed UTC moment on an arbitrary day."""
    moment = datetime(2024, 3, 1, hour, minute, tzinfo=timezone.utc)
    return lambda: moment


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def lifecycle(audit_sink: InMemoryAuditSink) -> LifecycleManager:
    return LifecycleManager(TransitionLog(), audit_sink=audit_sink)


@pytest.fixture
def versions(audit_sink: InMemoryAuditSink) -> VersionManager:
    return VersionManager(VersionLog(), audit_sink=audit_sink)


@pytest.fixture
def backplane() -> InMemoryGovernanceBackplane:
    return InMemoryGovernanceBackplane()


@pytest.fixture
def failing_sink() -> FailingAuditSink:
    return FailingAuditSink()


@pytest.fixture
def make_clock():
    return fixed_clock
