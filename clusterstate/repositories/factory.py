"""Registry of repositories sharing one connection handle.

A :class:`RepositoryContainer` is built once at process start from a session
factory and passed to whatever needs data access. Each repository is created
on first access and the same instance is returned afterwards.

Callers that do not manage their own container can use the process-wide
default::

    configure_repository_container(session_factory)   # at startup
    vms = get_repository_container().vms

Without an explicit configuration the default container connects to
``settings.database_url``.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clusterstate import models
from clusterstate.db import create_engine_from_url, create_session_factory
from clusterstate.repositories.base import BaseRepository, HealthStatus
from clusterstate.repositories.containers import ContainerRepository
from clusterstate.repositories.nodes import NodeRepository
from clusterstate.repositories.snapshots import StateSnapshotRepository
from clusterstate.repositories.storage import StorageRepository
from clusterstate.repositories.tasks import TaskRepository
from clusterstate.repositories.vms import VMRepository

logger = logging.getLogger(__name__)

_REPOSITORY_CLASSES: dict[str, type[BaseRepository]] = {
    "nodes": NodeRepository,
    "vms": VMRepository,
    "containers": ContainerRepository,
    "storage": StorageRepository,
    "tasks": TaskRepository,
    "state_snapshots": StateSnapshotRepository,
}


class RepositoryContainer:
    """Lazily constructed, cached repositories over one session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._repositories: dict[str, BaseRepository] = {}

    def _get(self, name: str) -> Any:
        repository = self._repositories.get(name)
        if repository is None:
            repository = _REPOSITORY_CLASSES[name](self.session_factory)
            self._repositories[name] = repository
        return repository

    @property
    def nodes(self) -> NodeRepository:
        return self._get("nodes")

    @property
    def vms(self) -> VMRepository:
        return self._get("vms")

    @property
    def containers(self) -> ContainerRepository:
        return self._get("containers")

    @property
    def storage(self) -> StorageRepository:
        return self._get("storage")

    @property
    def tasks(self) -> TaskRepository:
        return self._get("tasks")

    @property
    def state_snapshots(self) -> StateSnapshotRepository:
        return self._get("state_snapshots")

    def get_all_repositories(self) -> dict[str, BaseRepository]:
        return {name: self._get(name) for name in _REPOSITORY_CLASSES}

    async def health_check(self) -> dict[str, Any]:
        """Probe every repository; healthy only if all of them are."""
        report: dict[str, HealthStatus] = {}
        for name, repository in self.get_all_repositories().items():
            report[name] = await repository.health()
        healthy = all(result.is_healthy for result in report.values())
        if not healthy:
            failing = [name for name, result in report.items() if not result.is_healthy]
            logger.warning(f"Repository health check failed for: {', '.join(failing)}")
        return {
            "status": "healthy" if healthy else "unhealthy",
            "repositories": {name: result.to_dict() for name, result in report.items()},
            "timestamp": models.utcnow().isoformat(),
        }

    def reset(self) -> None:
        """Drop cached repositories; the next access builds fresh ones."""
        self._repositories.clear()


# Module-level default container for callers without their own wiring.
_container: RepositoryContainer | None = None


def configure_repository_container(
    session_factory: async_sessionmaker[AsyncSession],
) -> RepositoryContainer:
    """Install a default container bound to ``session_factory``."""
    global _container
    _container = RepositoryContainer(session_factory)
    return _container


def get_repository_container() -> RepositoryContainer:
    """Get the default container, connecting to the configured database if needed."""
    global _container
    if _container is None:
        _container = RepositoryContainer(create_session_factory(create_engine_from_url()))
    return _container


def reset_repository_container() -> None:
    """Forget the default container. Intended for test isolation."""
    global _container
    _container = None
