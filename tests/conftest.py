"""Shared pytest fixtures for repository tests."""
from __future__ import annotations

import pytest
from sqlalchemy.pool import StaticPool

from clusterstate.db import create_engine_from_url, create_session_factory, init_db
from clusterstate.repositories.factory import RepositoryContainer, reset_repository_container


@pytest.fixture(scope="function")
async def test_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_engine_from_url("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return create_session_factory(test_engine)


@pytest.fixture(scope="function")
def repositories(session_factory):
    """A fresh repository container bound to the test database."""
    container = RepositoryContainer(session_factory)
    yield container
    container.reset()
    reset_repository_container()


@pytest.fixture
def node_repo(repositories):
    return repositories.nodes


@pytest.fixture
def vm_repo(repositories):
    return repositories.vms


@pytest.fixture
def container_repo(repositories):
    return repositories.containers


@pytest.fixture
def storage_repo(repositories):
    return repositories.storage


@pytest.fixture
def task_repo(repositories):
    return repositories.tasks


@pytest.fixture
def snapshot_repo(repositories):
    return repositories.state_snapshots


@pytest.fixture
async def sample_node(node_repo):
    """An online node named n1 that guests and tasks can attach to."""
    return await node_repo.create(
        {"id": "n1", "status": "online", "cpu_max": 8, "memory_max": 32 * 1024**3}
    )
