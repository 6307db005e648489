"""Tests for NodeRepository and the shared repository contract."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from clusterstate.errors import NotFoundError, ValidationError
from clusterstate.models import Base

pytestmark = pytest.mark.asyncio


async def _create_nodes(node_repo, count: int) -> None:
    for i in range(count):
        await node_repo.create({"id": f"node-{i:02d}", "status": "online"})


class TestCreateAndFind:
    async def test_create_then_find_by_id(self, node_repo):
        data = {
            "id": "pve1",
            "status": "online",
            "cpu_usage": 0.25,
            "cpu_max": 16,
            "uptime": 100,
            "last_seen": datetime(2026, 1, 1, tzinfo=timezone.utc),
        }
        created = await node_repo.create(data)
        assert created.created_at is not None
        assert created.updated_at is not None

        found = await node_repo.find_by_id("pve1")
        assert found is not None
        for key, value in data.items():
            assert getattr(found, key) == value

    async def test_timestamps_read_back_in_utc(self, node_repo):
        seen = datetime(2026, 1, 1, 2, 0, tzinfo=timezone(timedelta(hours=2)))
        await node_repo.create({"id": "pve1", "status": "online", "last_seen": seen})

        found = await node_repo.find_by_id("pve1")
        assert found.last_seen == seen
        assert found.last_seen.tzinfo == timezone.utc
        assert found.created_at.tzinfo == timezone.utc

    async def test_find_by_id_missing_returns_none(self, node_repo):
        assert await node_repo.find_by_id("ghost") is None

    async def test_duplicate_id_is_validation_error(self, node_repo):
        await node_repo.create({"id": "pve1", "status": "online"})
        with pytest.raises(ValidationError, match="Node with ID pve1 already exists"):
            await node_repo.create({"id": "pve1", "status": "offline"})

    @pytest.mark.parametrize(
        "payload",
        [
            {"id": "", "status": "online"},
            {"id": "pve1", "status": "invalid-status"},
            {"id": "pve1", "status": "online", "cpu_usage": 1.5},
            {"id": "pve1", "status": "online", "memory_max": -1},
            {"id": "pve1", "status": "online", "created_at": "now"},
        ],
    )
    async def test_invalid_payloads_rejected(self, node_repo, payload):
        with pytest.raises(ValidationError):
            await node_repo.create(payload)
        assert await node_repo.count() == 0


class TestFindMany:
    async def test_last_page_holds_remainder(self, node_repo):
        await _create_nodes(node_repo, 7)

        first = await node_repo.find_many(limit=3, order_by={"id": "asc"})
        assert [n.id for n in first.data] == ["node-00", "node-01", "node-02"]
        assert first.total == 7
        assert first.has_more is True

        second = await node_repo.find_many(page=2, limit=3, order_by={"id": "asc"})
        assert second.has_more is True

        last = await node_repo.find_many(page=3, limit=3, order_by={"id": "asc"})
        assert [n.id for n in last.data] == ["node-06"]
        assert last.has_more is False
        assert last.page == 3
        assert last.limit == 3

    async def test_exact_multiple_fills_last_page(self, node_repo):
        await _create_nodes(node_repo, 6)
        last = await node_repo.find_many(page=2, limit=3)
        assert len(last.data) == 3
        assert last.has_more is False

    async def test_offset_overrides_page(self, node_repo):
        await _create_nodes(node_repo, 5)
        result = await node_repo.find_many(offset=4, limit=2, page=1, order_by={"id": "asc"})
        assert [n.id for n in result.data] == ["node-04"]
        assert result.has_more is False

    async def test_filters_with_operators(self, node_repo):
        await node_repo.create({"id": "a", "status": "online", "cpu_usage": 0.9})
        await node_repo.create({"id": "b", "status": "offline", "cpu_usage": 0.1})
        await node_repo.create({"id": "c", "status": "online", "cpu_usage": 0.5})

        result = await node_repo.find_many(
            where={"status": "online", "cpu_usage": {"gte": 0.5}}, order_by={"cpu_usage": "desc"}
        )
        assert [n.id for n in result.data] == ["a", "c"]

        result = await node_repo.find_many(where={"id": {"in": ["a", "b"]}})
        assert result.total == 2

    async def test_unknown_filter_field_rejected(self, node_repo):
        with pytest.raises(ValidationError, match="Unknown field"):
            await node_repo.find_many(where={"nope": 1})

    async def test_invalid_paging_rejected(self, node_repo):
        with pytest.raises(ValidationError):
            await node_repo.find_many(limit=0)
        with pytest.raises(ValidationError):
            await node_repo.find_many(page=0)


class TestUpdateAndDelete:
    async def test_update_refreshes_timestamp(self, node_repo):
        created = await node_repo.create({"id": "pve1", "status": "online"})
        updated = await node_repo.update("pve1", {"status": "offline"})
        assert updated.status == "offline"
        assert updated.updated_at >= created.updated_at

    async def test_update_missing_raises_not_found(self, node_repo):
        with pytest.raises(NotFoundError):
            await node_repo.update("non-existent", {"status": "offline"})

    async def test_update_validates_patch(self, node_repo):
        await node_repo.create({"id": "pve1", "status": "online"})
        with pytest.raises(ValidationError):
            await node_repo.update("pve1", {"status": "exploded"})
        with pytest.raises(ValidationError):
            await node_repo.update("pve1", {"id": "pve2"})
        with pytest.raises(ValidationError):
            await node_repo.update("pve1", {"status": None})

    async def test_delete_then_find_returns_none(self, node_repo):
        await node_repo.create({"id": "pve1", "status": "online"})
        await node_repo.delete("pve1")
        assert await node_repo.find_by_id("pve1") is None

    async def test_delete_missing_raises_not_found(self, node_repo):
        with pytest.raises(NotFoundError):
            await node_repo.delete("non-existent")

    async def test_delete_blocked_by_dependents(self, node_repo, vm_repo, container_repo, sample_node):
        await vm_repo.create({"id": 100, "node_id": "n1", "status": "running"})
        await container_repo.create({"id": 200, "node_id": "n1", "status": "running"})

        with pytest.raises(ValidationError, match="Cannot delete node"):
            await node_repo.delete("n1")

        await vm_repo.delete(100)
        with pytest.raises(ValidationError):
            await node_repo.delete("n1")

        await container_repo.delete(200)
        await node_repo.delete("n1")
        assert not await node_repo.exists("n1")

    async def test_tasks_do_not_block_delete(self, node_repo, task_repo, sample_node):
        await task_repo.create(
            {"upid": "UPID:n1:0001:vzdump::root@pam:", "node_id": "n1", "type": "vzdump", "status": "OK"}
        )
        await node_repo.delete("n1")
        orphan = await task_repo.find_by_id("UPID:n1:0001:vzdump::root@pam:")
        assert orphan.node_id == "n1"

    async def test_delete_many_blocked_by_dependents(self, node_repo, vm_repo, sample_node):
        await node_repo.create({"id": "n2", "status": "offline"})
        await vm_repo.create({"id": 100, "node_id": "n1", "status": "running"})

        with pytest.raises(ValidationError):
            await node_repo.delete_many({})
        assert await node_repo.delete_many({"id": "n2"}) == 1
        assert await node_repo.count() == 1

    async def test_update_many_returns_count(self, node_repo):
        await _create_nodes(node_repo, 3)
        assert await node_repo.update_many({"id": {"ne": "node-00"}}, {"status": "offline"}) == 2
        assert await node_repo.count({"status": "offline"}) == 2


class TestNodeQueries:
    async def test_find_online_and_high_cpu(self, node_repo):
        await node_repo.create({"id": "a", "status": "online", "cpu_usage": 0.95})
        await node_repo.create({"id": "b", "status": "online", "cpu_usage": 0.85})
        await node_repo.create({"id": "c", "status": "offline", "cpu_usage": 0.2})

        assert {n.id for n in await node_repo.find_online_nodes()} == {"a", "b"}
        assert [n.id for n in await node_repo.find_with_high_cpu_usage()] == ["a", "b"]
        assert [n.id for n in await node_repo.find_with_high_cpu_usage(0.9)] == ["a"]

    async def test_update_last_seen(self, node_repo, sample_node):
        node = await node_repo.update_last_seen("n1")
        assert node.last_seen.tzinfo == timezone.utc

    async def test_find_with_relations(self, node_repo, vm_repo, task_repo, sample_node):
        await vm_repo.create({"id": 100, "node_id": "n1", "status": "running"})
        for i in range(12):
            await task_repo.create(
                {"upid": f"UPID:n1:{i:04d}", "node_id": "n1", "type": "qmstart", "status": "OK"}
            )

        node = await node_repo.find_with_relations("n1")
        assert [vm.id for vm in node.vms] == [100]
        assert node.containers == []
        assert len(node.tasks) == 10
        assert await node_repo.find_with_relations("ghost") is None

    async def test_resource_summary(self, node_repo):
        await node_repo.create({"id": "a", "status": "online", "cpu_max": 8, "memory_max": 100, "cpu_usage": 0.5})
        await node_repo.create({"id": "b", "status": "offline", "cpu_max": 4, "memory_max": 50, "cpu_usage": 0.1})

        summary = await node_repo.get_resource_summary()
        assert summary["total_nodes"] == 2
        assert summary["online_nodes"] == 1
        assert summary["total_cpu"] == 12
        assert summary["total_memory"] == 150
        assert summary["avg_cpu_usage"] == pytest.approx(0.3)


class TestProbes:
    async def test_exists_and_count(self, node_repo, sample_node):
        assert await node_repo.exists("n1")
        assert not await node_repo.exists("n2")
        assert await node_repo.count() == 1

    async def test_health_reports_healthy(self, node_repo):
        health = await node_repo.health()
        assert health.is_healthy
        assert health.to_dict()["status"] == "healthy"

    async def test_health_never_raises(self, node_repo, test_engine):
        # Dropping the tables makes the count query fail
        async with test_engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

        health = await node_repo.health()
        assert health.status == "unhealthy"
        assert health.error
