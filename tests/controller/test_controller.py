"""Tests for the release controller."""

import asyncio
from typing import Any

import pytest

from chart_sync.chart import Chart
from chart_sync.cluster import InMemoryCluster
from chart_sync.config import ControllerConfig
from chart_sync.controller import ReleaseController
from chart_sync.exceptions import (
    ConflictError,
    ForbiddenError,
    InputException,
    SourceException,
)
from chart_sync.manifest import ReleaseRef
from chart_sync.source import InMemorySource, SourceRevision
from chart_sync.store import (
    ErrorReason,
    InMemoryReleaseStore,
    Phase,
    ReleaseState,
    StoreEvent,
    SyncStatus,
)
from chart_sync.template import parse_templates

from . import (
    APPLY_ORDER,
    CONFIG_MAP,
    DEPLOYMENT,
    RELEASE,
    SECRET,
    SERVICE_ACCOUNT,
    SERVICE_API,
    STATEFUL_SET,
    make_revision,
)


def _replicas(cluster: InMemoryCluster) -> int:
    deployment = cluster.peek(DEPLOYMENT)
    assert deployment is not None
    return deployment["spec"]["replicas"]


def _scale(replicas: int) -> Any:
    def mutate(obj: dict[str, Any]) -> None:
        obj["spec"]["replicas"] = replicas

    return mutate


async def test_sync_converges(
    controller: ReleaseController,
    source: InMemorySource,
    cluster: InMemoryCluster,
    chart: Chart,
) -> None:
    """Test a first sync creates every object and a second one is a no-op."""
    source.publish(RELEASE, make_revision(chart, "r1"))

    state = await controller.sync()
    assert state.status == SyncStatus.SYNCED
    assert state.phase == Phase.IDLE
    assert state.revision == 1
    assert state.last_source_revision == "r1"
    assert state.last_error is None
    assert state.errors == []
    assert state.cycles == 1
    assert cluster.calls == [("create", key) for key in APPLY_ORDER]
    assert _replicas(cluster) == 1

    state = await controller.sync()
    assert state.status == SyncStatus.SYNCED
    assert state.revision == 1
    assert state.cycles == 2
    assert len(cluster.calls) == len(APPLY_ORDER)


async def test_values_change(
    controller: ReleaseController,
    source: InMemorySource,
    cluster: InMemoryCluster,
    chart: Chart,
) -> None:
    """Test a new source revision only updates the objects that changed."""
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()
    cluster.calls.clear()

    source.publish(RELEASE, make_revision(chart, "r2", "replicaCount=5"))
    state = await controller.sync()
    assert state.status == SyncStatus.SYNCED
    assert state.revision == 2
    assert state.last_source_revision == "r2"
    assert cluster.calls == [("update", DEPLOYMENT)]
    assert _replicas(cluster) == 5


async def test_source_error(
    controller: ReleaseController, cluster: InMemoryCluster
) -> None:
    """Test a sync with no readable source revision."""
    state = await controller.sync()
    assert state.status == SyncStatus.DEGRADED
    assert state.last_error is not None
    assert state.last_error.reason == ErrorReason.SOURCE
    assert state.revision == 0
    assert cluster.calls == []


async def test_missing_value(
    controller: ReleaseController,
    source: InMemorySource,
    cluster: InMemoryCluster,
    chart: Chart,
) -> None:
    """Test a render failure leaves the cluster untouched."""
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()
    cluster.calls.clear()

    source.publish(RELEASE, make_revision(chart, "r2", "image.tag=null"))
    state = await controller.sync()
    assert state.status == SyncStatus.DEGRADED
    assert state.last_error is not None
    assert state.last_error.reason == ErrorReason.MISSING_VALUE
    assert "image.tag" in state.last_error.message
    assert state.last_source_revision == "r1"
    assert state.revision == 1
    assert cluster.calls == []


async def test_invalid_template(
    controller: ReleaseController, source: InMemorySource, cluster: InMemoryCluster
) -> None:
    """Test a template rendering an incomplete document."""
    templates = parse_templates("bad", "kind: ConfigMap\nmetadata:\n  name: a\n")
    source.publish(RELEASE, SourceRevision(revision="r1", templates=templates))
    state = await controller.sync()
    assert state.status == SyncStatus.DEGRADED
    assert state.last_error is not None
    assert state.last_error.reason == ErrorReason.INVALID_TEMPLATE
    assert cluster.calls == []


async def test_orphans_without_prune(
    controller: ReleaseController,
    source: InMemorySource,
    cluster: InMemoryCluster,
    chart: Chart,
) -> None:
    """Test objects no longer desired are reported but kept."""
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()
    cluster.calls.clear()

    source.publish(RELEASE, make_revision(chart, "r2", "database.enabled=false"))
    state = await controller.sync()
    assert state.status == SyncStatus.OUT_OF_SYNC
    assert state.drifted_keys == [STATEFUL_SET, SECRET]
    assert cluster.calls == []
    assert cluster.peek(SECRET) is not None


async def test_prune(
    source: InMemorySource,
    cluster: InMemoryCluster,
    store: InMemoryReleaseStore,
    config: ControllerConfig,
    chart: Chart,
) -> None:
    """Test objects no longer desired are deleted in reverse apply order."""
    config.prune_enabled = True
    controller = ReleaseController(RELEASE, source, cluster, store, config)
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()
    cluster.calls.clear()

    source.publish(RELEASE, make_revision(chart, "r2", "database.enabled=false"))
    state = await controller.sync()
    assert state.status == SyncStatus.SYNCED
    assert state.drifted_keys == []
    assert cluster.calls == [("delete", STATEFUL_SET), ("delete", SECRET)]
    assert cluster.peek(SECRET) is None
    assert cluster.peek(STATEFUL_SET) is None


async def test_prune_skipped_on_failure(
    source: InMemorySource,
    cluster: InMemoryCluster,
    store: InMemoryReleaseStore,
    config: ControllerConfig,
    chart: Chart,
) -> None:
    """Test nothing is pruned when an apply failed."""
    config.prune_enabled = True
    controller = ReleaseController(RELEASE, source, cluster, store, config)
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()
    cluster.calls.clear()

    cluster.fail_next("update", DEPLOYMENT, ForbiddenError("updates are denied"))
    source.publish(
        RELEASE, make_revision(chart, "r2", "database.enabled=false", "replicaCount=5")
    )
    state = await controller.sync()
    assert state.status == SyncStatus.DEGRADED
    assert [(error.reason, error.key) for error in state.errors] == [
        (ErrorReason.FORBIDDEN, DEPLOYMENT)
    ]
    assert state.drifted_keys == [DEPLOYMENT, STATEFUL_SET, SECRET]
    assert cluster.calls == [("update", DEPLOYMENT)]
    assert cluster.peek(SECRET) is not None


async def test_conflict_converges(
    controller: ReleaseController,
    source: InMemorySource,
    cluster: InMemoryCluster,
    chart: Chart,
) -> None:
    """Test an update racing a concurrent edit is retried against the new version."""
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()
    cluster.calls.clear()

    def concurrent_edit(target: InMemoryCluster) -> None:
        def mutate(obj: dict[str, Any]) -> None:
            obj["metadata"].setdefault("annotations", {})["editor"] = "someone-else"

        target.edit(DEPLOYMENT, mutate)

    cluster.before_next("update", DEPLOYMENT, concurrent_edit)
    source.publish(RELEASE, make_revision(chart, "r2", "replicaCount=5"))
    state = await controller.sync()
    assert state.status == SyncStatus.SYNCED
    assert cluster.calls == [("update", DEPLOYMENT), ("update", DEPLOYMENT)]
    assert _replicas(cluster) == 5


async def test_conflict_retries_exhausted(
    controller: ReleaseController,
    source: InMemorySource,
    cluster: InMemoryCluster,
    chart: Chart,
) -> None:
    """Test a resource that keeps conflicting fails with a Conflict error."""
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()
    cluster.calls.clear()

    cluster.fail_next("update", DEPLOYMENT, ConflictError("modified"), count=10)
    source.publish(RELEASE, make_revision(chart, "r2", "replicaCount=5"))
    state = await controller.sync()
    assert state.status == SyncStatus.DEGRADED
    assert state.last_error is not None
    assert state.last_error.reason == ErrorReason.CONFLICT
    assert state.last_error.key == DEPLOYMENT
    # The first attempt plus three retries
    assert cluster.calls == [("update", DEPLOYMENT)] * 4
    assert _replicas(cluster) == 1


async def test_adopt_existing_object(
    controller: ReleaseController,
    source: InMemorySource,
    cluster: InMemoryCluster,
    chart: Chart,
) -> None:
    """Test an untracked object with a desired identity is taken over."""
    cluster.add(
        {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {"name": "shop-config", "namespace": "shop"},
            "data": {"LOG_LEVEL": "debug"},
        }
    )
    source.publish(RELEASE, make_revision(chart, "r1"))
    state = await controller.sync()
    assert state.status == SyncStatus.SYNCED
    assert cluster.calls.count(("create", CONFIG_MAP)) == 1
    assert cluster.calls.count(("update", CONFIG_MAP)) == 1
    config_map = cluster.peek(CONFIG_MAP)
    assert config_map is not None
    assert config_map["data"]["LOG_LEVEL"] == "info"
    assert config_map["metadata"]["labels"]["chart-sync.io/release"] == "shop.shop"


async def test_dependency_failed(
    controller: ReleaseController,
    source: InMemorySource,
    cluster: InMemoryCluster,
    chart: Chart,
) -> None:
    """Test a failed resource blocks its dependents but not other resources."""
    cluster.fail_next("create", CONFIG_MAP, ForbiddenError("configmaps are denied"))
    source.publish(RELEASE, make_revision(chart, "r1"))
    state = await controller.sync()
    assert state.status == SyncStatus.DEGRADED
    assert [(error.reason, error.key) for error in state.errors] == [
        (ErrorReason.FORBIDDEN, CONFIG_MAP),
        (ErrorReason.DEPENDENCY_FAILED, DEPLOYMENT),
    ]
    assert state.last_error == state.errors[0]
    assert "ConfigMap/shop/shop-config" in state.errors[1].message
    assert cluster.peek(DEPLOYMENT) is None
    assert cluster.peek(SERVICE_API) is not None
    assert ("create", DEPLOYMENT) not in cluster.calls


async def test_rollback(
    controller: ReleaseController,
    source: InMemorySource,
    cluster: InMemoryCluster,
    chart: Chart,
) -> None:
    """Test rolling back re-applies the previous revision as a new one."""
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()
    source.publish(RELEASE, make_revision(chart, "r2", "replicaCount=5"))
    await controller.sync()
    assert _replicas(cluster) == 5

    state = await controller.rollback()
    assert state.status == SyncStatus.SYNCED
    assert state.revision == 3
    assert state.current is not None
    assert state.current.rollback_of == 1
    assert state.current.source.revision == "r1"
    assert state.last_source_revision == "r2"
    assert state.report().rollback_of == 1
    assert _replicas(cluster) == 1

    # A tick without a new source revision keeps the rollback in place
    state = await controller.resync()
    assert state.status == SyncStatus.SYNCED
    assert state.revision == 3
    assert _replicas(cluster) == 1

    state = await controller.rollback(2)
    assert state.revision == 4
    assert state.current is not None
    assert state.current.rollback_of == 2
    assert _replicas(cluster) == 5


async def test_rollback_without_history(
    controller: ReleaseController, source: InMemorySource, chart: Chart
) -> None:
    """Test rolling back when there is nothing to roll back to."""
    with pytest.raises(InputException, match="no previous revision"):
        await controller.rollback()

    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()
    with pytest.raises(InputException, match="no previous revision"):
        await controller.rollback()
    with pytest.raises(InputException, match="no revision 42"):
        await controller.rollback(42)


async def test_drift_detected(
    controller: ReleaseController,
    source: InMemorySource,
    cluster: InMemoryCluster,
    chart: Chart,
) -> None:
    """Test a tick reports drift without correcting it when self-heal is off."""
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()
    cluster.calls.clear()

    cluster.edit(DEPLOYMENT, _scale(3))
    state = await controller.resync()
    assert state.status == SyncStatus.OUT_OF_SYNC
    assert state.drifted_keys == [DEPLOYMENT]
    assert cluster.calls == []
    assert _replicas(cluster) == 3

    cluster.edit(DEPLOYMENT, _scale(1))
    state = await controller.resync()
    assert state.status == SyncStatus.SYNCED
    assert state.drifted_keys == []


async def test_back_in_sync_clears_errors(
    controller: ReleaseController,
    source: InMemorySource,
    cluster: InMemoryCluster,
    chart: Chart,
) -> None:
    """Test a tick finding the release in sync drops errors of earlier cycles."""
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()

    cluster.fail_next("update", DEPLOYMENT, ForbiddenError("updates are denied"))
    source.publish(RELEASE, make_revision(chart, "r2", "replicaCount=5"))
    state = await controller.sync()
    assert state.status == SyncStatus.DEGRADED
    assert [error.reason for error in state.errors] == [ErrorReason.FORBIDDEN]

    # The retried update lands but the cycle is cancelled while verifying
    cluster.before_next("update", DEPLOYMENT, lambda _: controller.cancel_cycle())
    state = await controller.sync()
    assert state.status == SyncStatus.OUT_OF_SYNC
    assert state.last_error is not None
    assert state.last_error.reason == ErrorReason.CANCELLED
    assert _replicas(cluster) == 5

    state = await controller.resync()
    assert state.status == SyncStatus.SYNCED
    assert state.errors == []
    assert state.drifted_keys == []
    assert state.last_error is None


async def test_self_heal(
    source: InMemorySource,
    cluster: InMemoryCluster,
    store: InMemoryReleaseStore,
    config: ControllerConfig,
    chart: Chart,
) -> None:
    """Test a tick corrects drift when self-heal is on."""
    config.self_heal_enabled = True
    controller = ReleaseController(RELEASE, source, cluster, store, config)
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()
    cluster.calls.clear()

    cluster.edit(DEPLOYMENT, _scale(3))
    cluster.remove(SERVICE_API)
    state = await controller.resync()
    assert state.status == SyncStatus.SYNCED
    assert state.revision == 1
    assert cluster.calls == [("update", DEPLOYMENT), ("create", SERVICE_API)]
    assert _replicas(cluster) == 1


async def test_self_heal_immutable_field(
    source: InMemorySource,
    cluster: InMemoryCluster,
    store: InMemoryReleaseStore,
    config: ControllerConfig,
    chart: Chart,
) -> None:
    """Test a changed immutable field is corrected by replacing the object."""
    config.self_heal_enabled = True
    controller = ReleaseController(RELEASE, source, cluster, store, config)
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()
    cluster.calls.clear()
    original = cluster.peek(STATEFUL_SET)
    assert original is not None

    def rename(obj: dict[str, Any]) -> None:
        obj["spec"]["serviceName"] = "other"

    cluster.edit(STATEFUL_SET, rename)
    state = await controller.resync()
    assert state.status == SyncStatus.SYNCED
    assert cluster.calls == [("delete", STATEFUL_SET), ("create", STATEFUL_SET)]
    replaced = cluster.peek(STATEFUL_SET)
    assert replaced is not None
    assert replaced["spec"]["serviceName"] == "shop-db"
    assert replaced["metadata"]["uid"] != original["metadata"]["uid"]


async def test_tick_picks_up_new_revision(
    controller: ReleaseController,
    source: InMemorySource,
    cluster: InMemoryCluster,
    chart: Chart,
) -> None:
    """Test a tick applies a new source revision."""
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()

    source.publish(RELEASE, make_revision(chart, "r2", "replicaCount=2"))
    state = await controller.resync()
    assert state.revision == 2
    assert state.last_source_revision == "r2"
    assert _replicas(cluster) == 2


async def test_tick_source_failure(
    controller: ReleaseController,
    source: InMemorySource,
    cluster: InMemoryCluster,
    chart: Chart,
) -> None:
    """Test a tick that cannot read the source still checks for drift."""
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()

    source.fail(SourceException("repository unreachable"))
    cluster.edit(DEPLOYMENT, _scale(3))
    state = await controller.resync()
    assert state.status == SyncStatus.OUT_OF_SYNC
    assert state.drifted_keys == [DEPLOYMENT]
    assert state.last_error is None


async def test_verify_not_ready(
    source: InMemorySource,
    store: InMemoryReleaseStore,
    config: ControllerConfig,
    chart: Chart,
) -> None:
    """Test workloads that never become ready degrade the release."""
    cluster = InMemoryCluster(auto_ready=False)
    controller = ReleaseController(RELEASE, source, cluster, store, config)
    source.publish(RELEASE, make_revision(chart, "r1"))
    state = await controller.sync()
    assert state.status == SyncStatus.DEGRADED
    assert [(error.reason, error.key) for error in state.errors] == [
        (ErrorReason.NOT_READY, STATEFUL_SET),
        (ErrorReason.NOT_READY, DEPLOYMENT),
    ]
    assert "availableReplicas 0/1" in state.errors[1].message

    cluster.set_status(STATEFUL_SET, {"readyReplicas": 1})
    cluster.set_status(DEPLOYMENT, {"availableReplicas": 1})
    state = await controller.sync()
    assert state.status == SyncStatus.SYNCED
    assert state.errors == []


async def test_verify_waits_for_ready(
    source: InMemorySource,
    store: InMemoryReleaseStore,
    config: ControllerConfig,
    chart: Chart,
) -> None:
    """Test verification polls until workloads become ready."""
    config.verify_timeout_seconds = 5
    cluster = InMemoryCluster(auto_ready=False)
    controller = ReleaseController(RELEASE, source, cluster, store, config)
    source.publish(RELEASE, make_revision(chart, "r1"))

    async def become_ready() -> None:
        async with asyncio.timeout(5):
            while cluster.peek(DEPLOYMENT) is None:
                await asyncio.sleep(0.01)
        await asyncio.sleep(0.1)
        cluster.set_status(STATEFUL_SET, {"readyReplicas": 1})
        cluster.set_status(DEPLOYMENT, {"availableReplicas": 1})

    state, _ = await asyncio.gather(controller.sync(), become_ready())
    assert state.status == SyncStatus.SYNCED


async def test_cancel_cycle(
    controller: ReleaseController,
    source: InMemorySource,
    cluster: InMemoryCluster,
    chart: Chart,
) -> None:
    """Test a cancelled cycle stops at the next mutation."""
    cluster.before_next(
        "create", SERVICE_ACCOUNT, lambda _: controller.cancel_cycle()
    )
    source.publish(RELEASE, make_revision(chart, "r1"))
    state = await controller.sync()
    assert state.status == SyncStatus.OUT_OF_SYNC
    assert state.last_error is not None
    assert state.last_error.reason == ErrorReason.CANCELLED
    assert state.phase == Phase.IDLE
    assert cluster.calls == [("create", key) for key in APPLY_ORDER[:2]]

    # The next cycle picks up where the cancelled one stopped
    state = await controller.sync()
    assert state.status == SyncStatus.SYNCED
    assert state.revision == 1
    assert cluster.calls == [("create", key) for key in APPLY_ORDER]


async def test_cancel_idle(controller: ReleaseController) -> None:
    """Test cancelling with no cycle in flight has no effect on the next one."""
    controller.cancel_cycle()
    state = await controller.sync()
    assert state.last_error is not None
    assert state.last_error.reason == ErrorReason.SOURCE


async def test_phases_published(
    controller: ReleaseController,
    source: InMemorySource,
    store: InMemoryReleaseStore,
    chart: Chart,
) -> None:
    """Test the store is notified as a cycle moves through its phases."""
    phases: list[Phase] = []

    def on_update(release: ReleaseRef, state: ReleaseState) -> None:
        if not phases or phases[-1] != state.phase:
            phases.append(state.phase)

    store.add_listener(StoreEvent.STATE_UPDATED, on_update)
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()
    assert phases == [
        Phase.RENDERING,
        Phase.DIFFING,
        Phase.APPLYING,
        Phase.VERIFYING,
        Phase.IDLE,
    ]


async def test_single_flight(
    source: InMemorySource,
    store: InMemoryReleaseStore,
    config: ControllerConfig,
    chart: Chart,
) -> None:
    """Test requests that arrive together or during a cycle are coalesced."""
    cluster = InMemoryCluster(latency=0.01)
    controller = ReleaseController(RELEASE, source, cluster, store, config)
    source.publish(RELEASE, make_revision(chart, "r1"))
    controller.start()
    try:
        controller.request_sync()
        controller.request_sync()
        controller.request_tick()
        await asyncio.wait_for(store.watch_cycle(RELEASE), 5)
        await asyncio.sleep(0.1)
        assert controller.state.cycles == 1
        assert controller.state.status == SyncStatus.SYNCED

        # A new revision starts a cycle, requests during it add exactly one more
        source.publish(RELEASE, make_revision(chart, "r2", "replicaCount=2"))
        async with asyncio.timeout(5):
            while not controller.busy:
                await asyncio.sleep(0.005)
        controller.request_sync()
        controller.request_tick()
        controller.request_sync()
        await asyncio.wait_for(store.watch_cycle(RELEASE, after=2), 5)
        await asyncio.sleep(0.2)
        assert controller.state.cycles == 3
        assert controller.state.revision == 2
        assert not controller.busy
    finally:
        await controller.close()


async def test_request_rollback(
    source: InMemorySource,
    cluster: InMemoryCluster,
    store: InMemoryReleaseStore,
    config: ControllerConfig,
    chart: Chart,
) -> None:
    """Test a rollback requested through the background loop."""
    controller = ReleaseController(RELEASE, source, cluster, store, config)
    source.publish(RELEASE, make_revision(chart, "r1"))
    await controller.sync()
    source.publish(RELEASE, make_revision(chart, "r2", "replicaCount=5"))
    await controller.sync()

    controller.start()
    try:
        controller.request_rollback(1)
        await asyncio.wait_for(store.watch_cycle(RELEASE, after=2), 5)
        assert controller.state.revision == 3
        assert _replicas(cluster) == 1
    finally:
        await controller.close()
