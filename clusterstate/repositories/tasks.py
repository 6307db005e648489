"""Repository for task (operation) records.

Tasks are keyed by their UPID, an opaque string of the form
``UPID:<node>:<pid>:<pstart>:<starttime>:<type>:<id>:<user>:``. Only the
``UPID:`` prefix is checked; the remaining structure is not parsed.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import Any

from clusterstate import models
from clusterstate.config import settings
from clusterstate.errors import NotFoundError
from clusterstate.repositories.base import BaseRepository, average, distribution
from clusterstate.state import COMPLETED_TASK_STATUSES, TASK_TARGET_TYPES, TaskStatus, values
from clusterstate.validation import (
    Validator,
    custom,
    is_datetime,
    is_string,
    one_of,
    required,
    starts_with,
)

logger = logging.getLogger(__name__)


def _ends_after_start(candidate) -> str | None:
    start, end = candidate.get("start_time"), candidate.get("end_time")
    if start is not None and end is not None and models.as_utc(end) < models.as_utc(start):
        return "end_time cannot be earlier than start_time"
    return None


def _log_entries_array(candidate) -> str | None:
    value = candidate.get("log_entries")
    if value is None:
        return None
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError):
        return "log_entries must be a JSON array"
    if not isinstance(parsed, list):
        return "log_entries must be a JSON array"
    return None


class TaskRepository(BaseRepository[models.Task]):
    model = models.Task
    entity = "task"
    resource_name = "Task"
    plural = "tasks"
    parent_field = "node_id"
    default_order = (("start_time", "desc"),)
    relations = ("node",)
    id_label = "UPID"

    def build_validator(self) -> Validator:
        return (
            Validator()
            .add_rule(required("upid"))
            .add_rule(required("node_id"))
            .add_rule(required("type"))
            .add_rule(required("status"))
            .add_rule(starts_with("upid", "UPID:"))
            .add_rule(is_string("node_id"))
            .add_rule(is_string("type"))
            .add_rule(one_of("status", values(TaskStatus)))
            .add_rule(one_of("resource_type", TASK_TARGET_TYPES))
            .add_rule(is_string("resource_id"))
            .add_rule(is_string("user"))
            .add_rule(is_datetime("start_time"))
            .add_rule(is_datetime("end_time"))
            .add_rule(custom(_ends_after_start, "end_time"))
            .add_rule(custom(_log_entries_array, "log_entries"))
        )

    # ------------------------------------------------------------------
    # Task-specific queries
    # ------------------------------------------------------------------

    async def find_by_status(self, status: str, order_by: Any = None) -> list[models.Task]:
        return await self._find_all({"status": status}, order_by)

    async def find_by_node(self, node_id: str, order_by: Any = None) -> list[models.Task]:
        return await self._find_all({"node_id": node_id}, order_by)

    async def find_by_type(self, task_type: str, order_by: Any = None) -> list[models.Task]:
        return await self._find_all({"type": task_type}, order_by)

    async def find_by_resource(
        self, resource_type: str, resource_id: str, order_by: Any = None
    ) -> list[models.Task]:
        return await self._find_all(
            {"resource_type": resource_type, "resource_id": str(resource_id)}, order_by
        )

    async def find_by_user(self, user: str, order_by: Any = None) -> list[models.Task]:
        return await self._find_all({"user": user}, order_by)

    async def find_running(self, order_by: Any = None) -> list[models.Task]:
        return await self.find_by_status(TaskStatus.RUNNING.value, order_by)

    async def find_completed(self, order_by: Any = None) -> list[models.Task]:
        return await self._find_all(
            {"status": {"in": sorted(COMPLETED_TASK_STATUSES)}},
            order_by or {"end_time": "desc"},
        )

    async def find_failed(self, order_by: Any = None) -> list[models.Task]:
        return await self.find_by_status(TaskStatus.ERROR.value, order_by)

    async def find_recent_tasks(self, hours: float = 24) -> list[models.Task]:
        since = models.utcnow() - timedelta(hours=hours)
        return await self._find_all({"start_time": {"gte": since}})

    async def find_long_running_tasks(self, minutes: float = 60) -> list[models.Task]:
        """Tasks still running that started at least ``minutes`` ago."""
        threshold = models.utcnow() - timedelta(minutes=minutes)
        return await self._find_all(
            {"status": TaskStatus.RUNNING.value, "start_time": {"lte": threshold}},
            {"start_time": "asc"},
            include=self.relations,
        )

    async def get_task_statistics(self) -> dict[str, Any]:
        tasks = await self._scan()
        completed = [t for t in tasks if t.status in COMPLETED_TASK_STATUSES]
        durations = [
            (t.end_time - t.start_time).total_seconds()
            for t in completed
            if t.start_time is not None and t.end_time is not None
        ]
        one_day_ago = models.utcnow() - timedelta(days=1)
        return {
            "total_tasks": len(tasks),
            "running_tasks": sum(1 for t in tasks if t.status == TaskStatus.RUNNING.value),
            "completed_tasks": len(completed),
            "failed_tasks": sum(1 for t in tasks if t.status == TaskStatus.ERROR.value),
            "avg_execution_time": average(durations),
            "task_type_distribution": distribution(t.type for t in tasks),
            "recent_tasks_count": sum(1 for t in tasks if t.created_at >= one_day_ago),
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def update_task_status(
        self,
        upid: str,
        status: str,
        exit_status: str | None = None,
        end_time: datetime | None = None,
    ) -> models.Task:
        """Set a task's status, stamping ``end_time`` once it stops running."""
        patch: dict[str, Any] = {"status": status}
        if exit_status:
            patch["exit_status"] = exit_status
        if end_time is not None:
            patch["end_time"] = end_time
        elif status != TaskStatus.RUNNING.value:
            patch["end_time"] = models.utcnow()
        return await self.update(upid, patch)

    async def add_log_entry(self, upid: str, line: str) -> models.Task:
        task = await self.find_by_id(upid)
        if task is None:
            raise NotFoundError(self.resource_name, upid)

        entries: list[str] = []
        if task.log_entries:
            try:
                parsed = json.loads(task.log_entries)
                if isinstance(parsed, list):
                    entries = parsed
            except ValueError:
                logger.warning(f"Discarding unreadable log entries for task {upid}")

        entries.append(f"{models.utcnow().isoformat()}: {line}")
        return await self.update(upid, {"log_entries": json.dumps(entries)})

    def get_log_entries(self, task: models.Task) -> list[str]:
        if not task.log_entries:
            return []
        try:
            parsed = json.loads(task.log_entries)
        except ValueError:
            return []
        return parsed if isinstance(parsed, list) else []

    async def cleanup_old_tasks(self, days_old: int | None = None) -> int:
        """Delete finished tasks whose end time is older than ``days_old`` days."""
        if days_old is None:
            days_old = settings.task_retention_days
        cutoff = models.utcnow() - timedelta(days=days_old)
        deleted = await self.delete_many(
            {"status": {"in": sorted(COMPLETED_TASK_STATUSES)}, "end_time": {"lt": cutoff}}
        )
        if deleted:
            logger.info(f"Removed {deleted} tasks that finished before {cutoff.isoformat()}")
        return deleted
