"""Tests for the snapshot store and change detection."""
from __future__ import annotations

import json
import logging
from datetime import timedelta

import pytest

from clusterstate import models
from clusterstate.errors import NotFoundError, ValidationError
from clusterstate.repositories.snapshots import FieldChange, StateSnapshotRepository, detect_changes


class TestDetectChanges:
    def test_reports_each_changed_field_in_order(self):
        changes = detect_changes(
            {"status": "stopped", "cpuCores": 2, "name": "web"},
            {"status": "running", "cpuCores": 4, "name": "web"},
        )
        assert changes == [
            FieldChange("status", "stopped", "running"),
            FieldChange("cpuCores", 2, 4),
        ]

    def test_volatile_fields_skipped(self):
        changes = detect_changes(
            {"status": "running", "uptime": 10, "lastSeen": "a"},
            {"status": "running", "uptime": 20, "lastSeen": "b"},
            volatile_fields=["uptime", "lastSeen"],
        )
        assert changes == []

    def test_added_and_removed_fields(self):
        changes = detect_changes({"a": 1, "b": None}, {"b": 2, "c": 3})
        assert changes == [
            FieldChange("a", 1, None),
            FieldChange("b", None, 2),
            FieldChange("c", None, 3),
        ]

    def test_missing_key_differs_from_null(self):
        assert detect_changes({"a": None}, {}) == [FieldChange("a", None, None)]

    def test_nested_values_compared_structurally(self):
        previous = {"net": {"b": 2, "a": 1}, "tags": ["x", "y"]}
        assert detect_changes(previous, {"net": {"a": 1, "b": 2}, "tags": ("x", "y")}) == []
        assert len(detect_changes(previous, {"net": {"a": 1, "b": 3}, "tags": ["x", "y"]})) == 1


class TestSnapshotStore:
    async def test_create_and_get_latest(self, snapshot_repo):
        await snapshot_repo.create_resource_snapshot("vm", 100, {"status": "stopped"}, "created")
        await snapshot_repo.create_resource_snapshot("vm", 100, {"status": "running"}, "updated")

        latest = await snapshot_repo.get_latest_snapshot("vm", "100")
        assert latest.change_type == "updated"
        assert latest.resource_id == "100"
        assert json.loads(latest.resource_data) == {"status": "running"}
        assert await snapshot_repo.get_latest_snapshot("vm", 999) is None

    async def test_payload_must_be_mapping(self, snapshot_repo):
        with pytest.raises(ValidationError, match="resource_data must be a JSON object"):
            await snapshot_repo.create_resource_snapshot("vm", 100, ["not", "an", "object"])
        assert await snapshot_repo.count() == 0

    async def test_malformed_serialized_payload_rejected(self, snapshot_repo):
        with pytest.raises(ValidationError, match="resource_data must be valid JSON"):
            await snapshot_repo.create(
                {
                    "snapshot_time": models.utcnow(),
                    "resource_type": "vm",
                    "resource_id": "100",
                    "resource_data": "{oops",
                    "change_type": "created",
                }
            )

    async def test_unknown_classification_rejected(self, snapshot_repo):
        with pytest.raises(ValidationError, match="change_type must be one of"):
            await snapshot_repo.create_resource_snapshot("vm", 100, {}, "mutated")
        with pytest.raises(ValidationError, match="resource_type must be one of"):
            await snapshot_repo.create_resource_snapshot("disk", 100, {})

    async def test_snapshots_are_immutable(self, snapshot_repo):
        snapshot = await snapshot_repo.create_resource_snapshot("vm", 100, {}, "created")
        with pytest.raises(ValidationError, match="immutable"):
            await snapshot_repo.update(snapshot.id, {"change_type": "updated"})
        with pytest.raises(ValidationError):
            await snapshot_repo.update_many({"resource_type": "vm"}, {"change_type": "updated"})
        with pytest.raises(NotFoundError):
            await snapshot_repo.update(9999, {"change_type": "updated"})

    async def test_delete_by_id(self, snapshot_repo):
        snapshot = await snapshot_repo.create_resource_snapshot("vm", 100, {}, "created")
        await snapshot_repo.delete(snapshot.id)
        assert await snapshot_repo.find_by_id(snapshot.id) is None

    async def test_snapshots_outlive_their_resource(self, snapshot_repo, node_repo, sample_node):
        await snapshot_repo.track_resource_change("node", "n1", {"status": "online"})
        await node_repo.delete("n1")
        assert await snapshot_repo.get_latest_snapshot("node", "n1") is not None

    async def test_finders(self, snapshot_repo):
        await snapshot_repo.create_resource_snapshot("vm", 100, {}, "created")
        await snapshot_repo.create_resource_snapshot("container", 200, {}, "created")
        await snapshot_repo.create_resource_snapshot("vm", 100, {}, "updated")

        assert len(await snapshot_repo.find_by_resource("vm", 100)) == 2
        assert len(await snapshot_repo.find_by_resource_type("container")) == 1
        assert len(await snapshot_repo.find_by_change_type("created")) == 2

        now = models.utcnow()
        in_range = await snapshot_repo.find_in_time_range(now - timedelta(minutes=1), now, "vm")
        assert len(in_range) == 2

    async def test_bulk_failure_names_resource(self, snapshot_repo, caplog):
        first = await snapshot_repo.create_resource_snapshot("vm", 100, {}, "created")
        duplicate = {
            "id": first.id,
            "snapshot_time": models.utcnow(),
            "resource_type": "vm",
            "resource_id": "100",
            "resource_data": "{}",
            "change_type": "updated",
        }
        with caplog.at_level(logging.ERROR):
            result = await snapshot_repo.create_many([duplicate])
        assert len(result) == 0
        assert result.failures[0].resource_id == "vm:100"


class TestTrackResourceChange:
    async def test_created_then_discovered(self, snapshot_repo):
        first = await snapshot_repo.track_resource_change("node", "n1", {"status": "online"})
        assert first.change_type == "created"
        assert first.has_changed is True
        assert first.changes is None

        second = await snapshot_repo.track_resource_change("node", "n1", {"status": "online"})
        assert second.change_type == "discovered"
        assert second.has_changed is False
        assert second.changes == []

    async def test_volatile_only_change_is_not_a_change(self, snapshot_repo):
        await snapshot_repo.track_resource_change("vm", 100, {"status": "running", "uptime": 10})
        result = await snapshot_repo.track_resource_change("vm", 100, {"status": "running", "uptime": 99})
        assert result.has_changed is False
        assert result.change_type == "discovered"

    async def test_volatile_fields_can_be_overridden(self, session_factory):
        repo = StateSnapshotRepository(session_factory, volatile_fields=[])
        await repo.track_resource_change("vm", 100, {"uptime": 10})
        result = await repo.track_resource_change("vm", 100, {"uptime": 99})
        assert result.changes == [FieldChange("uptime", 10, 99)]

    async def test_n_changed_fields_give_n_entries(self, snapshot_repo):
        before = {"a": 1, "b": "x", "c": [1], "d": True, "e": None}
        after = {"a": 2, "b": "y", "c": [1], "d": False, "e": None}
        await snapshot_repo.track_resource_change("storage", "local", before)
        result = await snapshot_repo.track_resource_change("storage", "local", after)
        assert [(c.field, c.old_value, c.new_value) for c in result.changes] == [
            ("a", 1, 2),
            ("b", "x", "y"),
            ("d", True, False),
        ]

    async def test_non_mapping_payload_rejected_after_first_observation(self, snapshot_repo):
        await snapshot_repo.track_resource_change("vm", "100", {"status": "running"})
        with pytest.raises(ValidationError, match="resource_data must be a JSON object"):
            await snapshot_repo.track_resource_change("vm", "100", ["status", "stopped"])
        with pytest.raises(ValidationError):
            await snapshot_repo.compare_with_latest("vm", "100", "stopped")
        assert await snapshot_repo.count() == 1

    async def test_compare_with_latest_does_not_write(self, snapshot_repo):
        comparison = await snapshot_repo.compare_with_latest("vm", 100, {"status": "running"})
        assert comparison.has_changed is True
        assert comparison.previous_snapshot is None
        assert await snapshot_repo.count() == 0

    async def test_datetime_payloads_are_stable(self, snapshot_repo):
        seen = models.utcnow()
        await snapshot_repo.track_resource_change("vm", 100, {"created": seen})
        result = await snapshot_repo.track_resource_change("vm", 100, {"created": seen})
        assert result.has_changed is False

    async def test_vm_lifecycle_scenario(self, node_repo, vm_repo, snapshot_repo):
        await node_repo.create({"id": "n1", "status": "online"})
        await vm_repo.create({"id": 100, "node_id": "n1", "status": "stopped", "cpu_cores": 2})

        created = await snapshot_repo.track_resource_change("vm", "100", {"status": "stopped", "cpuCores": 2})
        assert created.change_type == "created"

        await vm_repo.update(100, {"status": "running", "cpu_cores": 4})
        updated = await snapshot_repo.track_resource_change("vm", "100", {"status": "running", "cpuCores": 4})
        assert updated.change_type == "updated"
        assert [c.to_dict() for c in updated.changes] == [
            {"field": "status", "old_value": "stopped", "new_value": "running"},
            {"field": "cpuCores", "old_value": 2, "new_value": 4},
        ]


class TestHistory:
    async def test_resource_history(self, snapshot_repo):
        await snapshot_repo.track_resource_change("vm", 100, {"status": "stopped"})
        await snapshot_repo.track_resource_change("vm", 100, {"status": "stopped"})
        await snapshot_repo.track_resource_change("vm", 100, {"status": "running"})

        history = await snapshot_repo.get_resource_history("vm", 100)
        assert len(history.snapshots) == 3
        assert history.total_changes == 1
        assert [s.change_type for s in history.snapshots] == ["updated", "discovered", "created"]
        assert history.first_seen <= history.last_seen

    async def test_history_of_unknown_resource(self, snapshot_repo):
        assert await snapshot_repo.get_resource_history("vm", 404) is None

    async def test_timeline_is_chronological_and_bounded(self, snapshot_repo):
        now = models.utcnow()
        for days_ago, change_type in [(10, "created"), (5, "updated"), (1, "discovered")]:
            await snapshot_repo.create(
                {
                    "snapshot_time": now - timedelta(days=days_ago),
                    "resource_type": "vm",
                    "resource_id": "100",
                    "resource_data": "{}",
                    "change_type": change_type,
                }
            )

        timeline = await snapshot_repo.get_resource_timeline("vm", 100)
        assert [s.change_type for s in timeline] == ["created", "updated", "discovered"]

        bounded = await snapshot_repo.get_resource_timeline(
            "vm", 100, start_time=now - timedelta(days=6), end_time=now - timedelta(days=2)
        )
        assert [s.change_type for s in bounded] == ["updated"]

    async def test_recent_changes_skip_discovered(self, snapshot_repo):
        await snapshot_repo.track_resource_change("vm", 100, {"status": "stopped"})
        await snapshot_repo.track_resource_change("vm", 100, {"status": "running"})
        await snapshot_repo.create_resource_snapshot("node", "n1", {}, "discovered")

        recent = await snapshot_repo.find_resources_with_recent_changes()
        assert len(recent) == 1
        assert recent[0].resource_type == "vm"
        assert recent[0].resource_id == "100"
        assert recent[0].change_type == "updated"

    async def test_change_statistics(self, snapshot_repo):
        await snapshot_repo.create_resource_snapshot("vm", "100", {}, "created")
        await snapshot_repo.create_resource_snapshot("vm", "100", {}, "updated")
        await snapshot_repo.create_resource_snapshot("container", "200", {}, "created")
        await snapshot_repo.create_resource_snapshot("container", "200", {}, "discovered")

        stats = await snapshot_repo.get_change_statistics()
        assert stats["total_snapshots"] == 4
        assert stats["recent_changes"] == 4
        assert stats["changes_by_type"] == {"created": 2, "updated": 1, "discovered": 1}
        assert stats["changes_by_resource"] == {"vm": 2, "container": 2}
        assert stats["most_active_resources"][0] == {
            "resource_type": "vm",
            "resource_id": "100",
            "change_count": 2,
        }

    async def test_statistics_count_unchanged_observations(self, snapshot_repo):
        for _ in range(3):
            await snapshot_repo.track_resource_change("vm", "1", {"a": 1})

        stats = await snapshot_repo.get_change_statistics()
        assert stats["recent_changes"] == 3
        assert stats["changes_by_type"] == {"created": 1, "discovered": 2}
        assert stats["most_active_resources"] == [
            {"resource_type": "vm", "resource_id": "1", "change_count": 3}
        ]

    async def test_cleanup_old_snapshots(self, snapshot_repo):
        await snapshot_repo.create(
            {
                "snapshot_time": models.utcnow() - timedelta(days=120),
                "resource_type": "vm",
                "resource_id": "100",
                "resource_data": "{}",
                "change_type": "created",
            }
        )
        await snapshot_repo.create_resource_snapshot("vm", 100, {}, "discovered")

        assert await snapshot_repo.cleanup_old_snapshots() == 1
        assert await snapshot_repo.count() == 1
        assert await snapshot_repo.cleanup_old_snapshots(days_old=0) == 1
