"""
Tests for configuration versions, structural diff and rollback.
"""

from __future__ import annotations

import pytest

from expgov.audit_log import EXPERIMENT_MODIFIED, AuditPolicy
from expgov.errors import AuditRecordingError, VersionNotFound
from expgov.lifecycle import LifecycleState as S
from expgov.versioning import (
    ChangeKind,
    ConfigurationVersion,
    VersionManager,
    compute_hash,
    diff_payloads,
)


def _paths(changes) -> list[tuple[str, ChangeKind]]:
    return [(c.path, c.kind) for c in changes]


class TestDiff:
    def test_identical_payloads_have_no_changes(self) -> None:
        payload = {"a": 1, "b": {"c": [1, 2], "d": None}}
        assert diff_payloads(payload, payload) == ()
        assert diff_payloads(payload, {"b": {"d": None, "c": [1, 2]}, "a": 1}) == ()

    def test_nested_paths_are_dotted(self) -> None:
        old = {"routing": {"weights": {"control": 50, "treatment": 50}}}
        new = {"routing": {"weights": {"control": 90, "treatment": 50}}}
        (change,) = diff_payloads(old, new)
        assert change.path == "routing.weights.control"
        assert change.kind is ChangeKind.MODIFIED
        assert (change.old_value, change.new_value) == (50, 90)

    def test_comparison_is_type_sensitive(self) -> None:
        assert _paths(diff_payloads({"x": 1}, {"x": True})) == [("x", ChangeKind.MODIFIED)]
        assert _paths(diff_payloads({"x": 1}, {"x": 1.0})) == [("x", ChangeKind.MODIFIED)]
        assert _paths(diff_payloads({"x": [1]}, {"x": [1.0]})) == [("x", ChangeKind.MODIFIED)]

    def test_lists_are_leaves(self) -> None:
        (change,) = diff_payloads({"tags": ["a", "b"]}, {"tags": ["a", "c"]})
        assert change.path == "tags"
        assert change.new_value == ["a", "c"]

    def test_added_and_removed_subtrees_emit_leaves(self) -> None:
        old = {"keep": 1, "gone": {"b": 2, "a": 1}}
        new = {"keep": 1, "fresh": {"x": {"y": 1}}, "empty": {}}
        assert _paths(diff_payloads(old, new)) == [
            ("fresh.x.y", ChangeKind.ADDED),
            ("empty", ChangeKind.ADDED),
            ("gone.a", ChangeKind.REMOVED),
            ("gone.b", ChangeKind.REMOVED),
        ]

    def test_order_follows_new_payload_then_sorted_removals(self) -> None:
        old = {"z": 1, "m": 1, "a": 1, "b": 1}
        new = {"b": 2, "c": 3, "a": 1}
        assert _paths(diff_payloads(old, new)) == [
            ("b", ChangeKind.MODIFIED),
            ("c", ChangeKind.ADDED),
            ("m", ChangeKind.REMOVED),
            ("z", ChangeKind.REMOVED),
        ]

    def test_mapping_replaced_by_scalar_is_modified(self) -> None:
        (change,) = diff_payloads({"x": {"y": 1}}, {"x": 5})
        assert change.kind is ChangeKind.MODIFIED
        assert change.old_value == {"y": 1}


class TestContentHash:
    def test_hash_ignores_key_order(self) -> None:
        assert compute_hash({"a": 1, "b": 2}) == compute_hash({"b": 2, "a": 1})
        assert compute_hash({"a": 1}) != compute_hash({"a": 2})


class TestVersionManager:
    @pytest.mark.asyncio
    async def test_versions_scenario(self, versions: VersionManager) -> None:
        for p in (1, 2, 3):
            await versions.create_version("exp", {"p": p})

        diff = versions.get_diff("exp", 1, 2)
        assert diff is not None
        assert [c.to_dict() for c in diff.changes] == [
            {"path": "p", "kind": "modified", "old_value": 1, "new_value": 2}
        ]

        rollback = await versions.rollback_to_version("exp", 1)
        assert rollback.version_number == 4
        assert rollback.payload == {"p": 1}
        assert rollback.is_rollback
        assert rollback.rolled_back_from == 1
        assert rollback.change_description == "Rolled back to version 1"
        assert rollback.content_hash == versions.get_version("exp", 1).content_hash

    @pytest.mark.asyncio
    async def test_numbers_start_at_one_and_are_gapless(self, versions: VersionManager) -> None:
        created = [await versions.create_version("exp", {"n": i}) for i in range(5)]
        assert [v.version_number for v in created] == [1, 2, 3, 4, 5]
        assert versions.get_all_versions("exp") == tuple(created)
        assert versions.get_latest_version("exp") == created[-1]
        assert versions.get_latest_version("other") is None

    @pytest.mark.asyncio
    async def test_queries_for_missing_versions(self, versions: VersionManager) -> None:
        await versions.create_version("exp", {"a": 1})
        assert versions.get_version("exp", 2) is None
        assert versions.get_version("exp", 0) is None
        assert versions.get_diff("exp", 1, 7) is None

    @pytest.mark.asyncio
    async def test_self_diff_is_empty(self, versions: VersionManager) -> None:
        await versions.create_version("exp", {"a": {"b": [1, 2]}})
        diff = versions.get_diff("exp", 1, 1)
        assert diff is not None and diff.is_empty

    @pytest.mark.asyncio
    async def test_rollback_to_missing_version(self, versions: VersionManager) -> None:
        await versions.create_version("exp", {"a": 1})
        with pytest.raises(VersionNotFound) as exc_info:
            await versions.rollback_to_version("exp", 9)
        assert exc_info.value.version == 9
        assert str(exc_info.value) == "Version 9 not found for experiment 'exp'"
        assert len(versions.get_all_versions("exp")) == 1

    @pytest.mark.asyncio
    async def test_rollback_copies_lifecycle_snapshot(self, versions: VersionManager) -> None:
        await versions.create_version("exp", {"a": 1}, lifecycle_state=S.RUNNING)
        await versions.create_version("exp", {"a": 2}, lifecycle_state="paused")
        rollback = await versions.rollback_to_version("exp", 1, actor="ops", description="revert bad change")
        assert rollback.lifecycle_state is S.RUNNING
        assert rollback.created_by == "ops"
        assert rollback.change_description == "revert bad change"

    @pytest.mark.asyncio
    async def test_payload_reads_are_copies(self, versions: VersionManager) -> None:
        source = {"nested": {"value": 1}}
        version = await versions.create_version("exp", source)
        source["nested"]["value"] = 99
        version.payload["nested"]["value"] = 42
        assert versions.get_version("exp", 1).payload == {"nested": {"value": 1}}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [[1, 2], "text", None, {"bad": {1, 2}}, {"nan": float("nan")}])
    async def test_non_json_payloads_are_rejected(self, versions: VersionManager, payload) -> None:
        with pytest.raises(TypeError):
            await versions.create_version("exp", payload)
        assert versions.get_all_versions("exp") == ()

    @pytest.mark.asyncio
    async def test_creation_is_audited(self, versions: VersionManager, audit_sink) -> None:
        await versions.create_version("exp", {"a": 1}, actor="alice", description="initial")
        await versions.rollback_to_version("exp", 1)
        first, second = audit_sink.for_experiment("exp")
        assert first.event_type == EXPERIMENT_MODIFIED
        assert first.actor == "alice"
        assert first.details["version_number"] == 1
        assert first.details["change_description"] == "initial"
        assert second.details["is_rollback"] is True
        assert second.details["rolled_back_from"] == 1

    @pytest.mark.asyncio
    async def test_required_audit_failure_keeps_version(self, failing_sink) -> None:
        manager = VersionManager(audit_sink=failing_sink, audit_policy=AuditPolicy.REQUIRED)
        with pytest.raises(AuditRecordingError) as exc_info:
            await manager.create_version("exp", {"a": 1})
        assert isinstance(exc_info.value.subject, ConfigurationVersion)
        assert manager.get_latest_version("exp").version_number == 1

    @pytest.mark.asyncio
    async def test_blank_experiment_rejected(self, versions: VersionManager) -> None:
        with pytest.raises(ValueError):
            await versions.create_version(" ", {"a": 1})
