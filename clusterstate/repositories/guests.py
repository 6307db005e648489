"""Queries shared by the two guest kinds (VMs and containers).

Both are keyed by a positive, cluster-wide integer id, belong to exactly one
node, and share the same status enum and sizing/usage columns.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar

from clusterstate.config import settings
from clusterstate.repositories.base import BaseRepository, ModelT, average
from clusterstate.state import GuestStatus, values
from clusterstate.validation import (
    Validator,
    is_boolean,
    is_datetime,
    is_integer,
    is_string,
    non_negative,
    one_of,
    positive,
    required,
    value_range,
)

BYTE_FIELDS = (
    "memory_bytes",
    "memory_usage",
    "disk_size",
    "disk_usage",
    "network_in",
    "network_out",
)


class GuestRepository(BaseRepository[ModelT]):
    parent_field = "node_id"
    relations = ("node",)
    # Extra byte-count columns beyond BYTE_FIELDS
    extra_byte_fields: ClassVar[tuple[str, ...]] = ()

    def build_validator(self) -> Validator:
        validator = (
            Validator()
            .add_rule(required("id"))
            .add_rule(required("node_id"))
            .add_rule(required("status"))
            .add_rule(is_integer("id"))
            .add_rule(is_string("node_id"))
            .add_rule(one_of("status", values(GuestStatus)))
            .add_rule(positive("id", f"{self.resource_name} ID must be greater than 0"))
            .add_rule(is_integer("cpu_cores"))
            .add_rule(positive("cpu_cores", "CPU cores must be greater than 0"))
            .add_rule(value_range("cpu_usage", 0, 1))
            .add_rule(is_boolean("template"))
            .add_rule(non_negative("uptime"))
            .add_rule(is_datetime("last_seen"))
        )
        for name in BYTE_FIELDS + self.extra_byte_fields:
            validator.add_rule(non_negative(name))
        return validator

    async def find_by_status(self, status: str, order_by: Any = None) -> list[ModelT]:
        return await self._find_all({"status": status}, order_by)

    async def find_by_node(self, node_id: str, order_by: Any = None) -> list[ModelT]:
        return await self._find_all({"node_id": node_id}, order_by or {"id": "asc"})

    async def find_templates(self, order_by: Any = None) -> list[ModelT]:
        return await self._find_all({"template": True}, order_by or {"name": "asc"})

    async def find_with_high_cpu_usage(self, threshold: float | None = None) -> list[ModelT]:
        """Running guests whose CPU usage is at or above ``threshold``."""
        if threshold is None:
            threshold = settings.high_cpu_threshold
        return await self._find_all(
            {"cpu_usage": {"gte": threshold}, "status": GuestStatus.RUNNING.value},
            {"cpu_usage": "desc"},
        )

    async def find_by_id_range(self, start_id: int, end_id: int) -> list[ModelT]:
        return await self._find_all({"id": {"gte": start_id, "lte": end_id}}, {"id": "asc"})

    async def find_stale_running(self, updated_before: datetime) -> list[ModelT]:
        """Running, non-template guests not updated since ``updated_before``."""
        return await self._find_all(
            {
                "status": GuestStatus.RUNNING.value,
                "template": False,
                "updated_at": {"lt": updated_before},
            },
            {"updated_at": "asc"},
            include=self.relations,
        )

    async def update_status(self, resource_id: int, status: str, **extra: Any) -> ModelT:
        return await self.update(resource_id, {"status": status, **extra})

    def _guest_statistics(self, guests: list) -> dict[str, Any]:
        running = [
            g for g in guests
            if g.status == GuestStatus.RUNNING.value and g.cpu_usage is not None
        ]
        return {
            "running": sum(
                1 for g in guests if g.status == GuestStatus.RUNNING.value and not g.template
            ),
            "stopped": sum(
                1 for g in guests if g.status == GuestStatus.STOPPED.value and not g.template
            ),
            "templates": sum(1 for g in guests if g.template),
            "total_memory_allocated": sum(g.memory_bytes or 0 for g in guests),
            "total_disk_allocated": sum(g.disk_size or 0 for g in guests),
            "avg_cpu_usage": average(g.cpu_usage for g in running),
        }
