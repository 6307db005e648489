"""Repository for storage pools."""
from __future__ import annotations

from typing import Any

from clusterstate import models
from clusterstate.config import settings
from clusterstate.repositories.base import BaseRepository, distribution
from clusterstate.state import StorageType, values
from clusterstate.validation import (
    Validator,
    custom,
    is_boolean,
    is_datetime,
    is_string,
    non_negative,
    one_of,
    required,
)


def _usage_percentage(used: int, total: int) -> int:
    """Integer percentage, truncated, matching what dashboards display."""
    return (used * 100) // total if total > 0 else 0


def efficiency_rating(usage_percentage: float) -> str:
    if usage_percentage < 50:
        return "excellent"
    if usage_percentage < 70:
        return "good"
    if usage_percentage < 90:
        return "fair"
    return "poor"


def _used_within_total(candidate) -> str | None:
    total = candidate.get("total_bytes")
    used = candidate.get("used_bytes")
    if total is not None and used is not None and used > total:
        return "Used bytes cannot exceed total bytes"
    return None


class StorageRepository(BaseRepository[models.Storage]):
    model = models.Storage
    entity = "storage"
    resource_name = "Storage"
    plural = "storages"
    default_order = (("id", "asc"),)

    def build_validator(self) -> Validator:
        return (
            Validator()
            .add_rule(required("id"))
            .add_rule(is_string("id"))
            .add_rule(required("type"))
            .add_rule(one_of("type", values(StorageType)))
            .add_rule(non_negative("total_bytes", "Total bytes cannot be negative"))
            .add_rule(non_negative("used_bytes", "Used bytes cannot be negative"))
            .add_rule(non_negative("available_bytes", "Available bytes cannot be negative"))
            .add_rule(custom(_used_within_total, "used_bytes"))
            .add_rule(is_boolean("enabled"))
            .add_rule(is_boolean("shared"))
            .add_rule(is_string("content_types"))
            .add_rule(is_string("nodes"))
            .add_rule(is_datetime("last_seen"))
        )

    async def find_by_type(self, storage_type: str, order_by: Any = None) -> list[models.Storage]:
        return await self._find_all({"type": storage_type}, order_by)

    async def find_enabled(self, order_by: Any = None) -> list[models.Storage]:
        return await self._find_all({"enabled": True}, order_by)

    async def find_shared(self, order_by: Any = None) -> list[models.Storage]:
        return await self._find_all({"shared": True}, order_by)

    async def find_by_content_type(self, content_type: str, order_by: Any = None) -> list[models.Storage]:
        return await self._find_all({"content_types": {"contains": content_type}}, order_by)

    async def find_by_node(self, node_id: str) -> list[models.Storage]:
        """Pools whose owning-node list names ``node_id``."""
        candidates = await self._find_all({"nodes": {"contains": node_id}})
        return [s for s in candidates if node_id in _split_tags(s.nodes)]

    async def find_low_space(self, threshold: float | None = None) -> list[models.Storage]:
        """Pools whose used/total ratio is at or above ``threshold``."""
        if threshold is None:
            threshold = settings.low_space_threshold
        storages = await self._find_all(
            {"total_bytes": {"ne": None}, "used_bytes": {"ne": None}},
            {"used_bytes": "desc"},
        )
        return [
            s for s in storages
            if s.total_bytes and s.used_bytes / s.total_bytes >= threshold
        ]

    async def update_storage_usage(
        self, resource_id: str, used_bytes: int, available_bytes: int
    ) -> models.Storage:
        return await self.update(
            resource_id, {"used_bytes": used_bytes, "available_bytes": available_bytes}
        )

    async def find_storages_for_backup(self) -> list[models.Storage]:
        return await self._find_all(
            {"enabled": True, "content_types": {"contains": "backup"}},
            {"available_bytes": "desc"},
        )

    async def find_storages_for_images(self) -> list[models.Storage]:
        return await self._find_all(
            {"enabled": True, "content_types": {"contains": "images"}},
            {"available_bytes": "desc"},
        )

    async def get_storage_statistics(self) -> dict[str, Any]:
        storages = await self._scan()
        total_capacity = sum(s.total_bytes or 0 for s in storages)
        total_used = sum(s.used_bytes or 0 for s in storages)
        return {
            "total_storages": len(storages),
            "enabled_storages": sum(1 for s in storages if s.enabled),
            "shared_storages": sum(1 for s in storages if s.shared),
            "total_capacity": total_capacity,
            "total_used": total_used,
            "total_available": sum(s.available_bytes or 0 for s in storages),
            "usage_percentage": _usage_percentage(total_used, total_capacity),
            "storage_type_distribution": distribution(s.type for s in storages),
        }

    async def calculate_storage_efficiency(self) -> list[dict[str, Any]]:
        storages = await self._find_all({"total_bytes": {"ne": None}, "used_bytes": {"ne": None}})
        report = []
        for storage in storages:
            usage = _usage_percentage(storage.used_bytes, storage.total_bytes)
            report.append(
                {
                    "id": storage.id,
                    "type": storage.type,
                    "usage_percentage": usage,
                    "efficiency": efficiency_rating(usage),
                }
            )
        return report


def _split_tags(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]
