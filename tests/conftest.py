"""Shared test fixtures for moana."""

import pytest

from moana.config import Settings
from moana.database import create_database
from moana.models import NodeState
from moana.registry import Registry
from moana.services.agent_channel import InMemoryAgentChannel
from moana.services.task_orchestrator import TaskOrchestrator


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "integration: Tests driving tasks end to end through worker threads")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        workdir=str(tmp_path),
        database_url="sqlite://",
        task_max_attempts=3,
        task_retry_backoff_seconds=0.0,
        agent_ack_timeout_seconds=0.2,
    )


@pytest.fixture
def database():
    db = create_database("sqlite://")
    yield db
    db.dispose()


@pytest.fixture
def registry(database):
    return Registry(database)


@pytest.fixture
def cluster(registry):
    return registry.bootstrap_cluster("test")


@pytest.fixture
def make_nodes(registry, cluster):
    """Add online nodes directly, bypassing the add_node task."""
    def _make(count, zones=None, capacity_bytes=0):
        nodes = []
        for i in range(count):
            node = registry.add_node(
                cluster.id,
                f"node{i + 1}",
                capacity_bytes=capacity_bytes,
                zone=zones[i] if zones else None,
                status=NodeState.ONLINE,
            )
            nodes.append(node)
        return nodes
    return _make


@pytest.fixture
def channel(settings):
    return InMemoryAgentChannel(ack_timeout_seconds=settings.agent_ack_timeout_seconds)


@pytest.fixture
def orchestrator(registry, channel, settings):
    orch = TaskOrchestrator(registry, channel, settings=settings, sleep=lambda seconds: None)
    yield orch
    orch.shutdown()
