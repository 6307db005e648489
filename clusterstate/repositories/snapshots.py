"""State snapshot store and change detection.

Snapshots form an append-only log: one row per observation of a resource,
holding the serialized payload and how it relates to the previous
observation. The "current state" of a resource is its most recent snapshot.

``track_resource_change`` is the entry point for discovery jobs::

    result = await snapshots.track_resource_change("vm", 100, {"status": "running"})
    if result.has_changed:
        for change in result.changes or []:
            print(change.field, change.old_value, change.new_value)

Fields listed in ``settings.volatile_fields`` (timestamps, uptime counters)
change on every poll and are ignored when diffing.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from clusterstate import models
from clusterstate.config import settings
from clusterstate.errors import NotFoundError, ValidationError
from clusterstate.metrics import snapshots_recorded
from clusterstate.repositories.base import BaseRepository, distribution
from clusterstate.state import ChangeType, ResourceType, values
from clusterstate.validation import Validator, json_object, one_of, required

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class FieldChange:
    field: str
    old_value: Any
    new_value: Any

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "old_value": self.old_value, "new_value": self.new_value}


@dataclass
class StateComparison:
    """Result of diffing observed data against the latest snapshot.

    ``changes`` is None on first observation, when there is nothing to diff
    against; ``has_changed`` is True in that case.
    """

    resource_type: str
    resource_id: str
    has_changed: bool
    current_data: Mapping[str, Any]
    changes: list[FieldChange] | None = None
    previous_snapshot: models.StateSnapshot | None = None


@dataclass
class TrackResult:
    snapshot: models.StateSnapshot
    has_changed: bool
    changes: list[FieldChange] | None = None

    @property
    def change_type(self) -> str:
        return self.snapshot.change_type


@dataclass
class StateHistory:
    resource_type: str
    resource_id: str
    snapshots: list[models.StateSnapshot]
    total_changes: int
    first_seen: datetime
    last_seen: datetime


@dataclass
class RecentChange:
    resource_type: str
    resource_id: str
    last_change: datetime
    change_type: str


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def detect_changes(
    previous: Mapping[str, Any],
    current: Mapping[str, Any],
    volatile_fields: Iterable[str] = (),
) -> list[FieldChange]:
    """Field-level diff of two payloads.

    Fields are visited in the previous payload's order, followed by fields
    only present in the current one. Values are compared by their canonical
    JSON form, so nested structures compare structurally and a missing key
    differs from an explicit null. Missing values are reported as None.
    """
    volatile = frozenset(volatile_fields)
    names = list(previous)
    names.extend(name for name in current if name not in previous)

    changes = []
    for name in names:
        if name in volatile:
            continue
        old = previous.get(name, _MISSING)
        new = current.get(name, _MISSING)
        if old is _MISSING or new is _MISSING:
            differs = old is not new
        else:
            differs = _canonical(old) != _canonical(new)
        if differs:
            changes.append(
                FieldChange(
                    field=name,
                    old_value=None if old is _MISSING else old,
                    new_value=None if new is _MISSING else new,
                )
            )
    return changes


class StateSnapshotRepository(BaseRepository[models.StateSnapshot]):
    model = models.StateSnapshot
    entity = "state_snapshot"
    resource_name = "StateSnapshot"
    plural = "snapshots"
    default_order = (("snapshot_time", "desc"), ("id", "desc"))

    def __init__(self, session_factory, volatile_fields: Iterable[str] | None = None):
        super().__init__(session_factory)
        if volatile_fields is None:
            volatile_fields = settings.volatile_fields
        self.volatile_fields = frozenset(volatile_fields)

    def build_validator(self) -> Validator:
        return (
            Validator()
            .add_rule(required("snapshot_time"))
            .add_rule(required("resource_type"))
            .add_rule(required("resource_id"))
            .add_rule(required("resource_data"))
            .add_rule(required("change_type"))
            .add_rule(one_of("resource_type", values(ResourceType)))
            .add_rule(one_of("change_type", values(ChangeType)))
            .add_rule(json_object("resource_data"))
        )

    def _item_label(self, item: Mapping[str, Any]) -> str:
        return f"{item.get('resource_type')}:{item.get('resource_id')}"

    # Snapshots are immutable; only retention cleanup and explicit deletes remove them

    async def update(self, resource_id: Any, patch: Mapping[str, Any]) -> models.StateSnapshot:
        if not await self.exists(resource_id):
            raise NotFoundError(self.resource_name, resource_id)
        raise ValidationError("State snapshots are immutable and cannot be updated")

    async def update_many(self, where: Any, patch: Mapping[str, Any]) -> int:
        raise ValidationError("State snapshots are immutable and cannot be updated")

    # ------------------------------------------------------------------
    # Finders
    # ------------------------------------------------------------------

    async def find_by_resource(
        self, resource_type: str, resource_id: Any, limit: int | None = None
    ) -> list[models.StateSnapshot]:
        """Snapshots of one resource, newest first."""
        return await self._find_all(
            {"resource_type": resource_type, "resource_id": str(resource_id)}, limit=limit
        )

    async def find_by_resource_type(
        self, resource_type: str, limit: int | None = None
    ) -> list[models.StateSnapshot]:
        return await self._find_all({"resource_type": resource_type}, limit=limit)

    async def find_by_change_type(
        self, change_type: str, limit: int | None = None
    ) -> list[models.StateSnapshot]:
        return await self._find_all({"change_type": change_type}, limit=limit)

    async def find_in_time_range(
        self, start_time: datetime, end_time: datetime, resource_type: str | None = None
    ) -> list[models.StateSnapshot]:
        where: dict[str, Any] = {"snapshot_time": {"gte": start_time, "lte": end_time}}
        if resource_type:
            where["resource_type"] = resource_type
        return await self._find_all(where)

    async def get_latest_snapshot(
        self, resource_type: str, resource_id: Any
    ) -> models.StateSnapshot | None:
        latest = await self.find_by_resource(resource_type, resource_id, limit=1)
        return latest[0] if latest else None

    # ------------------------------------------------------------------
    # Recording and change detection
    # ------------------------------------------------------------------

    async def create_resource_snapshot(
        self,
        resource_type: str,
        resource_id: Any,
        data: Mapping[str, Any],
        change_type: str = ChangeType.DISCOVERED.value,
    ) -> models.StateSnapshot:
        """Serialize ``data`` and append it as a new snapshot."""
        if not isinstance(data, Mapping):
            raise ValidationError("resource_data must be a JSON object", field="resource_data")
        try:
            serialized = json.dumps(dict(data), default=str)
        except (TypeError, ValueError) as e:
            raise ValidationError(
                f"resource_data is not serializable: {e}", field="resource_data", cause=e
            ) from e

        return await self.create(
            {
                "snapshot_time": models.utcnow(),
                "resource_type": resource_type,
                "resource_id": str(resource_id),
                "resource_data": serialized,
                "change_type": change_type,
            }
        )

    async def compare_with_latest(
        self, resource_type: str, resource_id: Any, current_data: Mapping[str, Any]
    ) -> StateComparison:
        if not isinstance(current_data, Mapping):
            raise ValidationError("resource_data must be a JSON object", field="resource_data")
        resource_id = str(resource_id)
        latest = await self.get_latest_snapshot(resource_type, resource_id)
        if latest is None:
            return StateComparison(
                resource_type=resource_type,
                resource_id=resource_id,
                has_changed=True,
                current_data=current_data,
            )

        previous = json.loads(latest.resource_data)
        changes = detect_changes(previous, current_data, self.volatile_fields)
        return StateComparison(
            resource_type=resource_type,
            resource_id=resource_id,
            has_changed=bool(changes),
            current_data=current_data,
            changes=changes,
            previous_snapshot=latest,
        )

    async def track_resource_change(
        self, resource_type: str, resource_id: Any, current_data: Mapping[str, Any]
    ) -> TrackResult:
        """Diff against the latest snapshot, then record a classified snapshot.

        The new snapshot is ``created`` on first observation, ``updated`` when
        any non-volatile field differs and ``discovered`` otherwise.
        """
        comparison = await self.compare_with_latest(resource_type, resource_id, current_data)
        if comparison.previous_snapshot is None:
            change_type = ChangeType.CREATED.value
        elif comparison.has_changed:
            change_type = ChangeType.UPDATED.value
        else:
            change_type = ChangeType.DISCOVERED.value

        snapshot = await self.create_resource_snapshot(
            resource_type, resource_id, current_data, change_type
        )
        snapshots_recorded.labels(resource_type=resource_type, change_type=change_type).inc()

        if change_type == ChangeType.UPDATED.value:
            logger.info(
                f"{resource_type} {resource_id} changed: "
                f"{', '.join(c.field for c in comparison.changes or [])}",
                extra={
                    "event": "resource_changed",
                    "resource_type": resource_type,
                    "resource_id": str(resource_id),
                    "changed_fields": [c.field for c in comparison.changes or []],
                },
            )
        else:
            logger.debug(f"{resource_type} {resource_id} recorded as {change_type}")

        return TrackResult(
            snapshot=snapshot,
            has_changed=comparison.has_changed,
            changes=comparison.changes,
        )

    # ------------------------------------------------------------------
    # History and reporting
    # ------------------------------------------------------------------

    async def get_resource_history(
        self, resource_type: str, resource_id: Any
    ) -> StateHistory | None:
        """Every snapshot of a resource, newest first, or None if never seen."""
        snapshots = await self.find_by_resource(resource_type, resource_id)
        if not snapshots:
            return None
        return StateHistory(
            resource_type=resource_type,
            resource_id=str(resource_id),
            snapshots=snapshots,
            total_changes=sum(
                1 for s in snapshots if s.change_type == ChangeType.UPDATED.value
            ),
            first_seen=snapshots[-1].snapshot_time,
            last_seen=snapshots[0].snapshot_time,
        )

    async def get_resource_timeline(
        self,
        resource_type: str,
        resource_id: Any,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> list[models.StateSnapshot]:
        """Snapshots of a resource in chronological order, optionally bounded."""
        where: dict[str, Any] = {"resource_type": resource_type, "resource_id": str(resource_id)}
        bounds = {}
        if start_time is not None:
            bounds["gte"] = start_time
        if end_time is not None:
            bounds["lte"] = end_time
        if bounds:
            where["snapshot_time"] = bounds
        return await self._find_all(where, (("snapshot_time", "asc"), ("id", "asc")))

    async def find_resources_with_recent_changes(
        self, hours: float | None = None
    ) -> list[RecentChange]:
        """Latest non-``discovered`` snapshot per resource within the window."""
        if hours is None:
            hours = settings.recent_changes_hours
        since = models.utcnow() - timedelta(hours=hours)
        snapshots = await self._find_all(
            {
                "snapshot_time": {"gte": since},
                "change_type": {"ne": ChangeType.DISCOVERED.value},
            }
        )

        latest: dict[tuple[str, str], RecentChange] = {}
        for snapshot in snapshots:
            key = (snapshot.resource_type, snapshot.resource_id)
            if key not in latest:
                latest[key] = RecentChange(
                    resource_type=snapshot.resource_type,
                    resource_id=snapshot.resource_id,
                    last_change=snapshot.snapshot_time,
                    change_type=snapshot.change_type,
                )
        return list(latest.values())

    async def get_change_statistics(self) -> dict[str, Any]:
        """Snapshot counts overall, per classification and per resource.

        Every snapshot counts as activity, including ``discovered``
        re-observations of an unchanged resource.
        """
        snapshots = await self._scan()
        one_day_ago = models.utcnow() - timedelta(days=1)

        activity = distribution(f"{s.resource_type}:{s.resource_id}" for s in snapshots)
        ranked = sorted(activity.items(), key=lambda item: item[1], reverse=True)
        most_active = []
        for key, count in ranked[: settings.most_active_limit]:
            resource_type, _, resource_id = key.partition(":")
            most_active.append(
                {"resource_type": resource_type, "resource_id": resource_id, "change_count": count}
            )

        return {
            "total_snapshots": len(snapshots),
            "recent_changes": sum(1 for s in snapshots if s.snapshot_time >= one_day_ago),
            "changes_by_type": distribution(s.change_type for s in snapshots),
            "changes_by_resource": distribution(s.resource_type for s in snapshots),
            "most_active_resources": most_active,
        }

    async def cleanup_old_snapshots(self, days_old: int | None = None) -> int:
        """Delete snapshots taken more than ``days_old`` days ago."""
        if days_old is None:
            days_old = settings.snapshot_retention_days
        cutoff = models.utcnow() - timedelta(days=days_old)
        deleted = await self.delete_many({"snapshot_time": {"lt": cutoff}})
        if deleted:
            logger.info(
                f"Removed {deleted} snapshots older than {cutoff.isoformat()}",
                extra={"event": "snapshot_cleanup", "deleted": deleted, "days_old": days_old},
            )
        return deleted
