"""Repository for cluster hosts."""
from __future__ import annotations

from typing import Any

from sqlalchemy import exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.attributes import set_committed_value

from clusterstate import models
from clusterstate.config import settings
from clusterstate.errors import ValidationError
from clusterstate.repositories.base import BaseRepository, average
from clusterstate.state import NodeStatus, values
from clusterstate.validation import (
    Validator,
    is_datetime,
    is_integer,
    is_string,
    non_negative,
    one_of,
    positive,
    required,
    value_range,
)

# Number of most recent tasks loaded by find_with_relations
RECENT_TASK_LIMIT = 10

_DEPENDENTS_MESSAGE = (
    "Cannot delete node with existing VMs or containers. Delete dependent resources first."
)


class NodeRepository(BaseRepository[models.Node]):
    model = models.Node
    entity = "node"
    resource_name = "Node"
    plural = "nodes"

    def build_validator(self) -> Validator:
        return (
            Validator()
            .add_rule(required("id"))
            .add_rule(is_string("id"))
            .add_rule(required("status"))
            .add_rule(one_of("status", values(NodeStatus)))
            .add_rule(value_range("cpu_usage", 0, 1))
            .add_rule(positive("cpu_max", "cpu_max must be greater than 0"))
            .add_rule(is_integer("cpu_max"))
            .add_rule(non_negative("memory_usage"))
            .add_rule(non_negative("memory_max"))
            .add_rule(non_negative("disk_usage"))
            .add_rule(non_negative("disk_max"))
            .add_rule(non_negative("uptime"))
            .add_rule(is_datetime("last_seen"))
        )

    @staticmethod
    def _dependents_clause(node_ids):
        return or_(
            exists().where(models.VM.node_id.in_(node_ids)),
            exists().where(models.Container.node_id.in_(node_ids)),
        )

    async def _check_delete(self, session: AsyncSession, entity: models.Node) -> None:
        # Tasks are history records and do not block deletion
        has_dependents = await session.scalar(select(self._dependents_clause([entity.id])))
        if has_dependents:
            raise ValidationError(_DEPENDENTS_MESSAGE, field="id")

    async def _check_delete_many(self, session: AsyncSession, conditions: list) -> None:
        matched = select(models.Node.id).where(*conditions)
        if await session.scalar(select(self._dependents_clause(matched))):
            raise ValidationError(_DEPENDENTS_MESSAGE)

    # ------------------------------------------------------------------
    # Node-specific queries
    # ------------------------------------------------------------------

    async def find_by_status(self, status: str, order_by: Any = None) -> list[models.Node]:
        return await self._find_all({"status": status}, order_by)

    async def find_online_nodes(self, order_by: Any = None) -> list[models.Node]:
        return await self.find_by_status(NodeStatus.ONLINE.value, order_by)

    async def find_with_high_cpu_usage(self, threshold: float | None = None) -> list[models.Node]:
        if threshold is None:
            threshold = settings.high_cpu_threshold
        return await self._find_all({"cpu_usage": {"gte": threshold}}, {"cpu_usage": "desc"})

    async def find_with_relations(self, resource_id: str) -> models.Node | None:
        """Load a node with its VMs, containers and its most recent tasks."""
        stmt = (
            select(models.Node)
            .where(models.Node.id == resource_id)
            .options(selectinload(models.Node.vms), selectinload(models.Node.containers))
        )
        async with self._session_factory() as session:
            node = await session.scalar(stmt)
            if node is None:
                return None
            recent_tasks = (
                await session.execute(
                    select(models.Task)
                    .where(models.Task.node_id == resource_id)
                    .order_by(models.Task.start_time.desc(), models.Task.upid.asc())
                    .limit(RECENT_TASK_LIMIT)
                )
            ).scalars().all()
            # Populate the view-only collection without triggering a lazy load
            set_committed_value(node, "tasks", list(recent_tasks))
            return node

    async def update_last_seen(self, resource_id: str) -> models.Node:
        return await self.update(resource_id, {"last_seen": models.utcnow()})

    async def get_resource_summary(self) -> dict[str, Any]:
        nodes = await self._scan()
        return {
            "total_nodes": len(nodes),
            "online_nodes": sum(1 for n in nodes if n.status == NodeStatus.ONLINE.value),
            "total_cpu": sum(n.cpu_max or 0 for n in nodes),
            "total_memory": sum(n.memory_max or 0 for n in nodes),
            "avg_cpu_usage": average(n.cpu_usage or 0 for n in nodes),
        }
