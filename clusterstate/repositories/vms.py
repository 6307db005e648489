"""Repository for virtual machines."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from clusterstate import models
from clusterstate.repositories.guests import GuestRepository
from clusterstate.state import GuestStatus


class VMRepository(GuestRepository[models.VM]):
    model = models.VM
    entity = "vm"
    resource_name = "VM"
    plural = "VMs"

    async def find_running_vms(self, order_by: Any = None) -> list[models.VM]:
        return await self.find_by_status(GuestStatus.RUNNING.value, order_by)

    async def update_vm_status(self, resource_id: int, status: str, **extra: Any) -> models.VM:
        return await self.update_status(resource_id, status, **extra)

    async def find_vms_needing_backup(self, last_backup_before: datetime) -> list[models.VM]:
        # No backup metadata is tracked yet; updated_at stands in for it
        return await self.find_stale_running(last_backup_before)

    async def get_vm_statistics(self) -> dict[str, Any]:
        vms = await self._scan()
        stats = self._guest_statistics(vms)
        return {
            "total_vms": len(vms),
            "running_vms": stats["running"],
            "stopped_vms": stats["stopped"],
            "templates": stats["templates"],
            "total_memory_allocated": stats["total_memory_allocated"],
            "total_disk_allocated": stats["total_disk_allocated"],
            "avg_cpu_usage": stats["avg_cpu_usage"],
        }
