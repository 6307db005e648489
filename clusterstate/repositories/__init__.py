"""Repositories for cluster resources and their snapshot history."""

from clusterstate.repositories.base import (
    BaseRepository,
    BulkCreateResult,
    BulkFailure,
    FindManyResult,
    HealthStatus,
)
from clusterstate.repositories.containers import ContainerRepository
from clusterstate.repositories.factory import (
    RepositoryContainer,
    configure_repository_container,
    get_repository_container,
    reset_repository_container,
)
from clusterstate.repositories.nodes import NodeRepository
from clusterstate.repositories.snapshots import (
    FieldChange,
    RecentChange,
    StateComparison,
    StateHistory,
    StateSnapshotRepository,
    TrackResult,
    detect_changes,
)
from clusterstate.repositories.storage import StorageRepository
from clusterstate.repositories.tasks import TaskRepository
from clusterstate.repositories.vms import VMRepository

__all__ = [
    "BaseRepository",
    "BulkCreateResult",
    "BulkFailure",
    "ContainerRepository",
    "FieldChange",
    "FindManyResult",
    "HealthStatus",
    "NodeRepository",
    "RecentChange",
    "RepositoryContainer",
    "StateComparison",
    "StateHistory",
    "StateSnapshotRepository",
    "StorageRepository",
    "TaskRepository",
    "TrackResult",
    "VMRepository",
    "configure_repository_container",
    "detect_changes",
    "get_repository_container",
    "reset_repository_container",
]
