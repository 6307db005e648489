"""Repository for OS-level containers."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from clusterstate import models
from clusterstate.repositories.base import distribution
from clusterstate.repositories.guests import GuestRepository
from clusterstate.state import GuestStatus
from clusterstate.validation import Validator, is_boolean, is_string


class ContainerRepository(GuestRepository[models.Container]):
    model = models.Container
    entity = "container"
    resource_name = "Container"
    plural = "containers"
    extra_byte_fields = ("swap_bytes", "swap_usage")

    def build_validator(self) -> Validator:
        return (
            super()
            .build_validator()
            .add_rule(is_string("hostname"))
            .add_rule(is_string("os_template"))
            .add_rule(is_boolean("privileged"))
            .add_rule(is_boolean("protection"))
        )

    async def find_running_containers(self, order_by: Any = None) -> list[models.Container]:
        return await self.find_by_status(GuestStatus.RUNNING.value, order_by)

    async def find_by_os_template(self, os_template: str, order_by: Any = None) -> list[models.Container]:
        return await self._find_all({"os_template": os_template}, order_by)

    async def find_by_hostname(self, hostname: str, order_by: Any = None) -> list[models.Container]:
        return await self._find_all({"hostname": hostname}, order_by)

    async def find_privileged(self, order_by: Any = None) -> list[models.Container]:
        return await self._find_all({"privileged": True}, order_by)

    async def update_container_status(
        self, resource_id: int, status: str, **extra: Any
    ) -> models.Container:
        return await self.update_status(resource_id, status, **extra)

    async def find_containers_needing_update(self, last_update_before: datetime) -> list[models.Container]:
        return await self.find_stale_running(last_update_before)

    async def get_container_statistics(self) -> dict[str, Any]:
        containers = await self._scan()
        stats = self._guest_statistics(containers)
        return {
            "total_containers": len(containers),
            "running_containers": stats["running"],
            "stopped_containers": stats["stopped"],
            "templates": stats["templates"],
            "total_memory_allocated": stats["total_memory_allocated"],
            "total_swap_allocated": sum(c.swap_bytes or 0 for c in containers),
            "total_disk_allocated": stats["total_disk_allocated"],
            "avg_cpu_usage": stats["avg_cpu_usage"],
            "os_template_distribution": distribution(c.os_template for c in containers),
        }
