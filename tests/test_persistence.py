"""
Tests for the in-memory backplane and backplane-backed managers.
"""

from __future__ import annotations

import asyncio

import pytest

from expgov.approval import ApprovalContext, ApprovalManager, AutomaticApprovalGate
from expgov.errors import ConcurrencyConflict, ConfigurationError
from expgov.lifecycle import LifecycleManager, TransitionLog
from expgov.lifecycle import LifecycleState as S
from expgov.persistence import InMemoryGovernanceBackplane, PersistedExperimentState
from expgov.policy import ErrorRatePolicy, PolicyContext, PolicyEvaluator
from expgov.util import utcnow
from expgov.versioning import VersionLog, VersionManager


class RacingBackplane(InMemoryGovernanceBackplane):
    """Lets another writer commit right after the state is read."""

    def __init__(self) -> None:
        super().__init__()
        self.race_to: S | None = None

    async def get_experiment_state(self, experiment_name: str):
        state = await super().get_experiment_state(experiment_name)
        if self.race_to is not None:
            target, self.race_to = self.race_to, None
            await super().save_experiment_state(
                PersistedExperimentState(experiment_name, target, utcnow(), "someone-else"),
                state.token if state else None,
            )
        return state


class FlakyHistoryBackplane(InMemoryGovernanceBackplane):
    """Fails the first history append, then behaves normally."""

    def __init__(self) -> None:
        super().__init__()
        self.failures = 1

    async def append_state_transition(self, experiment_name, transition) -> None:
        if self.failures:
            self.failures -= 1
            raise OSError("history store unavailable")
        await super().append_state_transition(experiment_name, transition)


class StalledHistoryBackplane(InMemoryGovernanceBackplane):
    """Blocks inside the history append until the caller is cancelled."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()

    async def append_state_transition(self, experiment_name, transition) -> None:
        self.entered.set()
        await asyncio.Event().wait()


class SlowRecordBackplane(InMemoryGovernanceBackplane):
    """Holds evaluation record writes open until released."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()
        self.batches: list[int] = []

    async def append_policy_evaluations(self, records) -> None:
        self.entered.set()
        await self.release.wait()
        self.batches.append(len(records))
        await super().append_policy_evaluations(records)

    async def append_approval_records(self, records) -> None:
        self.entered.set()
        await self.release.wait()
        self.batches.append(len(records))
        await super().append_approval_records(records)


def _policy_evaluator(backplane) -> PolicyEvaluator:
    evaluator = PolicyEvaluator(backplane=backplane)
    for i in range(3):
        evaluator.register_policy(ErrorRatePolicy(0.05, name=f"ErrorRate-{i}"))
    return evaluator


def _approval_manager(backplane) -> ApprovalManager:
    manager = ApprovalManager(backplane=backplane)
    for i in range(3):
        manager.register_gate(None, S.APPROVED, AutomaticApprovalGate(f"auto-{i}"))
    return manager


POLICY_CONTEXT = PolicyContext("exp", S.APPROVED, S.RUNNING, telemetry={"error_rate": 0.01})
APPROVAL_CONTEXT = ApprovalContext("exp", S.PENDING_APPROVAL, S.APPROVED, actor="alice")


class TestInMemoryBackplane:
    @pytest.mark.asyncio
    async def test_save_is_compare_and_set(self, backplane: InMemoryGovernanceBackplane) -> None:
        state = PersistedExperimentState("exp", S.PENDING_APPROVAL, utcnow())
        first = await backplane.save_experiment_state(state, None)
        assert first.success and first.new_token

        stale = await backplane.save_experiment_state(state, None)
        assert not stale.success
        assert stale.conflict_detected

        second = await backplane.save_experiment_state(state, first.new_token)
        assert second.success
        assert second.new_token != first.new_token
        persisted = await backplane.get_experiment_state("exp")
        assert persisted.token == second.new_token

    @pytest.mark.asyncio
    async def test_versions_must_be_sequential(self, backplane, versions: VersionManager) -> None:
        v1 = await versions.create_version("exp", {"a": 1})
        v2 = await versions.create_version("exp", {"a": 2})
        assert not await backplane.append_configuration_version(v2)
        assert await backplane.append_configuration_version(v1)
        assert not await backplane.append_configuration_version(v1)
        assert await backplane.append_configuration_version(v2)
        assert (await backplane.get_latest_configuration_version("exp")).version_number == 2
        assert await backplane.get_configuration_version("exp", 3) is None


class TestLifecycleWithBackplane:
    @pytest.mark.asyncio
    async def test_commits_are_persisted(self, backplane) -> None:
        manager = LifecycleManager(backplane=backplane)
        first = await manager.transition("exp", S.PENDING_APPROVAL, actor="alice")
        await manager.transition("exp", S.APPROVED)

        persisted = await backplane.get_experiment_state("exp")
        assert persisted.current_state is S.APPROVED
        assert persisted.token
        history = await backplane.get_state_transition_history("exp")
        assert [t.to_state for t in history] == [S.PENDING_APPROVAL, S.APPROVED]
        assert history[0] == first

    @pytest.mark.asyncio
    async def test_token_race_raises_conflict(self) -> None:
        backplane = RacingBackplane()
        manager = LifecycleManager(backplane=backplane)
        backplane.race_to = S.ARCHIVED

        with pytest.raises(ConcurrencyConflict):
            await manager.transition("exp", S.PENDING_APPROVAL)
        assert manager.get_history("exp") == ()
        assert await backplane.get_state_transition_history("exp") == []

    @pytest.mark.asyncio
    async def test_stale_process_must_refresh(self, backplane) -> None:
        process_a = LifecycleManager(TransitionLog(), backplane=backplane)
        process_b = LifecycleManager(TransitionLog(), backplane=backplane)

        await process_a.transition("exp", S.PENDING_APPROVAL)
        with pytest.raises(ConcurrencyConflict, match="differs from persisted state"):
            await process_b.transition("exp", S.ARCHIVED)

        await process_b.refresh("exp")
        assert process_b.current_state("exp") is S.PENDING_APPROVAL
        await process_b.transition("exp", S.APPROVED)
        assert (await backplane.get_experiment_state("exp")).current_state is S.APPROVED

    @pytest.mark.asyncio
    async def test_failed_history_write_restores_persisted_state(self) -> None:
        backplane = FlakyHistoryBackplane()
        manager = LifecycleManager(backplane=backplane)

        with pytest.raises(OSError):
            await manager.transition("exp", S.PENDING_APPROVAL)
        assert (await backplane.get_experiment_state("exp")).current_state is S.DRAFT
        assert await backplane.get_state_transition_history("exp") == []
        assert manager.get_history("exp") == ()

        await manager.refresh("exp")
        await manager.transition("exp", S.PENDING_APPROVAL)
        await manager.transition("exp", S.APPROVED)
        assert (await backplane.get_experiment_state("exp")).current_state is S.APPROVED
        history = await backplane.get_state_transition_history("exp")
        assert [t.to_state for t in history] == [S.PENDING_APPROVAL, S.APPROVED]
        assert manager.get_history("exp") == tuple(history)

    @pytest.mark.asyncio
    async def test_failure_after_earlier_commits_restores_previous_state(self) -> None:
        backplane = FlakyHistoryBackplane()
        backplane.failures = 0
        manager = LifecycleManager(backplane=backplane)
        await manager.transition("exp", S.PENDING_APPROVAL, actor="alice")

        backplane.failures = 1
        with pytest.raises(OSError):
            await manager.transition("exp", S.APPROVED, actor="bob")
        persisted = await backplane.get_experiment_state("exp")
        assert persisted.current_state is S.PENDING_APPROVAL
        assert persisted.last_modified_by == "alice"
        assert manager.current_state("exp") is S.PENDING_APPROVAL

        await manager.transition("exp", S.APPROVED, actor="bob")
        assert (await backplane.get_experiment_state("exp")).current_state is S.APPROVED

    @pytest.mark.asyncio
    async def test_cancelled_history_write_restores_persisted_state(self) -> None:
        backplane = StalledHistoryBackplane()
        manager = LifecycleManager(backplane=backplane)

        task = asyncio.create_task(manager.transition("exp", S.PENDING_APPROVAL))
        await backplane.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert (await backplane.get_experiment_state("exp")).current_state is S.DRAFT
        assert manager.get_history("exp") == ()

    @pytest.mark.asyncio
    async def test_refresh_takes_persisted_state_as_authority(self, backplane) -> None:
        manager = LifecycleManager(backplane=backplane)
        await manager.transition("exp", S.PENDING_APPROVAL)
        token = (await backplane.get_experiment_state("exp")).token
        await backplane.save_experiment_state(
            PersistedExperimentState("exp", S.APPROVED, utcnow(), "carol"), token
        )

        history = await manager.refresh("exp")
        reconciled = history[-1]
        assert (reconciled.from_state, reconciled.to_state) == (S.PENDING_APPROVAL, S.APPROVED)
        assert reconciled.actor == "carol"
        assert await backplane.get_state_transition_history("exp") == list(history)
        assert manager.current_state("exp") is S.APPROVED

        await manager.transition("exp", S.RUNNING)
        assert (await backplane.get_experiment_state("exp")).current_state is S.RUNNING

    @pytest.mark.asyncio
    async def test_refresh_requires_backplane(self, lifecycle: LifecycleManager) -> None:
        with pytest.raises(ConfigurationError):
            await lifecycle.refresh("exp")


class TestVersionsWithBackplane:
    @pytest.mark.asyncio
    async def test_versions_are_persisted(self, backplane) -> None:
        manager = VersionManager(backplane=backplane)
        await manager.create_version("exp", {"a": 1})
        await manager.create_version("exp", {"a": 2})
        await manager.rollback_to_version("exp", 1)

        stored = await backplane.get_all_configuration_versions("exp")
        assert [v.version_number for v in stored] == [1, 2, 3]
        assert stored[2].is_rollback

    @pytest.mark.asyncio
    async def test_second_writer_conflicts_until_refreshed(self, backplane) -> None:
        writer_a = VersionManager(VersionLog(), backplane=backplane)
        writer_b = VersionManager(VersionLog(), backplane=backplane)

        await writer_a.create_version("exp", {"owner": "a"})
        with pytest.raises(ConcurrencyConflict):
            await writer_b.create_version("exp", {"owner": "b"})

        await writer_b.refresh("exp")
        version = await writer_b.create_version("exp", {"owner": "b"})
        assert version.version_number == 2
        assert [v.version_number for v in await backplane.get_all_configuration_versions("exp")] == [1, 2]


class TestEvaluationRecords:
    @pytest.mark.asyncio
    async def test_cancelled_policy_write_stores_nothing(self) -> None:
        backplane = SlowRecordBackplane()
        task = asyncio.create_task(_policy_evaluator(backplane).evaluate_all(POLICY_CONTEXT))
        await backplane.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert await backplane.get_policy_evaluations("exp") == []

    @pytest.mark.asyncio
    async def test_policy_records_written_as_one_batch(self) -> None:
        backplane = SlowRecordBackplane()
        backplane.release.set()
        results = await _policy_evaluator(backplane).evaluate_all(POLICY_CONTEXT)

        assert backplane.batches == [3]
        records = await backplane.get_policy_evaluations("exp")
        assert [r.policy_name for r in records] == [r.policy_name for r in results]

    @pytest.mark.asyncio
    async def test_cancelled_approval_write_stores_nothing(self) -> None:
        backplane = SlowRecordBackplane()
        task = asyncio.create_task(_approval_manager(backplane).evaluate(APPROVAL_CONTEXT))
        await backplane.entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert await backplane.get_approval_records("exp") == []

    @pytest.mark.asyncio
    async def test_approval_records_written_as_one_batch(self) -> None:
        backplane = SlowRecordBackplane()
        backplane.release.set()
        await _approval_manager(backplane).evaluate(APPROVAL_CONTEXT)

        assert backplane.batches == [3]
        records = await backplane.get_approval_records("exp")
        assert [r.gate_name for r in records] == ["auto-0", "auto-1", "auto-2"]

    @pytest.mark.asyncio
    async def test_no_write_without_results(self) -> None:
        backplane = SlowRecordBackplane()
        assert await PolicyEvaluator(backplane=backplane).evaluate_all(POLICY_CONTEXT) == []
        assert await ApprovalManager(backplane=backplane).evaluate(APPROVAL_CONTEXT) == []
        assert backplane.batches == []
