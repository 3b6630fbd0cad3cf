"""Fixtures for controller tests."""

from collections.abc import AsyncGenerator

import pytest

from chart_sync.cluster import InMemoryCluster
from chart_sync.config import ControllerConfig
from chart_sync.controller import ReleaseController
from chart_sync.source import InMemorySource
from chart_sync.store import InMemoryReleaseStore

from . import RELEASE


@pytest.fixture(name="config")
def config_fixture() -> ControllerConfig:
    """Fixture for a configuration with short timeouts."""
    return ControllerConfig(
        resync_interval_seconds=3600,
        per_operation_timeout_seconds=5,
        verify_timeout_seconds=0.3,
        verify_initial_backoff_seconds=0.01,
        verify_max_backoff_seconds=0.05,
    )


@pytest.fixture(name="cluster")
def cluster_fixture() -> InMemoryCluster:
    return InMemoryCluster()


@pytest.fixture(name="source")
def source_fixture() -> InMemorySource:
    return InMemorySource()


@pytest.fixture(name="store")
def store_fixture() -> InMemoryReleaseStore:
    return InMemoryReleaseStore()


@pytest.fixture(name="controller")
async def controller_fixture(
    source: InMemorySource,
    cluster: InMemoryCluster,
    store: InMemoryReleaseStore,
    config: ControllerConfig,
) -> AsyncGenerator[ReleaseController, None]:
    """Fixture for a controller of the test release."""
    controller = ReleaseController(RELEASE, source, cluster, store, config)
    yield controller
    await controller.close()
