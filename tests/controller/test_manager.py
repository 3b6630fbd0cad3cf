"""Tests for the controller manager."""

import asyncio

import pytest

from chart_sync.chart import Chart
from chart_sync.cluster import InMemoryCluster
from chart_sync.config import ControllerConfig
from chart_sync.controller import ControllerManager
from chart_sync.manifest import ReleaseRef
from chart_sync.source import InMemorySource
from chart_sync.store import InMemoryReleaseStore, SyncStatus

from . import RELEASE, make_revision

STAGING = ReleaseRef("staging", "shop")


@pytest.fixture(name="manager")
def manager_fixture(
    source: InMemorySource,
    cluster: InMemoryCluster,
    store: InMemoryReleaseStore,
    config: ControllerConfig,
) -> ControllerManager:
    return ControllerManager([RELEASE, STAGING], source, cluster, store, config)


async def test_sync_all(
    manager: ControllerManager,
    source: InMemorySource,
    cluster: InMemoryCluster,
    chart: Chart,
) -> None:
    """Test every release is synced independently."""
    source.publish(RELEASE, make_revision(chart, "r1"))
    source.publish(STAGING, make_revision(chart, "r1", "database.enabled=false"))

    states = await manager.sync_all()
    assert [state.status for state in states] == [SyncStatus.SYNCED, SyncStatus.SYNCED]
    assert not manager.has_failed_releases()
    assert len(cluster.objects) == 14

    reports = manager.reports()
    assert [(report.namespace, report.status) for report in reports] == [
        ("shop", "Synced"),
        ("staging", "Synced"),
    ]
    assert reports[0].revision == 1
    assert reports[0].last_revision == "r1"


async def test_failed_release(
    manager: ControllerManager, source: InMemorySource, chart: Chart
) -> None:
    """Test a release without a source does not affect the others."""
    source.publish(RELEASE, make_revision(chart, "r1"))

    states = await manager.sync_all()
    assert [state.status for state in states] == [
        SyncStatus.SYNCED,
        SyncStatus.DEGRADED,
    ]
    assert manager.has_failed_releases()
    assert manager.get(RELEASE).state.status == SyncStatus.SYNCED

    with pytest.raises(KeyError, match="not managed"):
        manager.get(ReleaseRef("other", "shop"))


async def test_start_stop(
    manager: ControllerManager,
    source: InMemorySource,
    store: InMemoryReleaseStore,
    chart: Chart,
) -> None:
    """Test the background loops react to new revisions."""
    await manager.start()
    await manager.start()
    try:
        await asyncio.sleep(0.01)
        source.publish(RELEASE, make_revision(chart, "r1"))
        source.publish(STAGING, make_revision(chart, "r1"))
        state = await asyncio.wait_for(store.watch_cycle(RELEASE), 5)
        assert state.last_source_revision == "r1"
        state = await asyncio.wait_for(store.watch_cycle(STAGING), 5)
        assert state.last_source_revision == "r1"
    finally:
        await manager.stop()
    await manager.stop()
