"""
Release Controller implementation.

This controller drives the live objects of one release toward the desired
state rendered from its source. A cycle moves through the phases Rendering,
Diffing, Applying and Verifying and ends with the release Synced, Degraded
or OutOfSync.

Key Concepts:
    - Single flight: at most one cycle runs per release. Requests that arrive
      during a cycle set a pending flag and are served by one more cycle
      once the current one finishes.
    - Ticks: every resync interval the source is polled. A new revision starts
      a full cycle, otherwise the last applied desired set is compared to the
      cluster to detect drift, which is corrected when self-heal is enabled.
    - Rollback: a prior revision's templates and values are rendered and
      applied through the same pipeline, recorded as a new revision.
    - Cancellation: a cycle checks for cancellation before every cluster
      mutation and verification step.
"""

import asyncio
from collections.abc import Awaitable, Callable
import logging

from chart_sync.cluster import ClusterClient
from chart_sync.config import ControllerConfig
from chart_sync.differ import SyncPlan, describe, diff
from chart_sync.exceptions import (
    ClusterException,
    CycleCancelledError,
    DiffError,
    InputException,
    MissingValueError,
    RenderError,
    SourceException,
)
from chart_sync.manifest import DesiredSet, LiveSnapshot, ReleaseRef
from chart_sync.renderer import KIND_ORDER, render
from chart_sync.source import DesiredStateSource, SourceRevision
from chart_sync.store import (
    ErrorReason,
    Phase,
    ReleaseRevision,
    ReleaseState,
    ReleaseStore,
    ResourceError,
    SyncStatus,
)
from chart_sync.task import get_task_service

from .apply import Applier
from .verify import Verifier

__all__ = [
    "ReleaseController",
]

_LOGGER = logging.getLogger(__name__)

_DEFAULT_KINDS = frozenset(kind for kinds in KIND_ORDER for kind in kinds)


class ReleaseController:
    """Controller reconciling a single release."""

    def __init__(
        self,
        release: ReleaseRef,
        source: DesiredStateSource,
        cluster: ClusterClient,
        store: ReleaseStore,
        config: ControllerConfig | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            release: The release this controller owns
            source: Where desired state revisions are read from
            cluster: Client for the cluster the release is deployed to
            store: Where the release state is published
            config: Reconciliation settings
        """
        self._release = release
        self._source = source
        self._cluster = cluster
        self._store = store
        self._config = config or ControllerConfig()
        self._applier = Applier(cluster, self._config)
        self._verifier = Verifier(cluster, self._config)
        self._state = store.get_state(release) or ReleaseState(release=release)
        self._store.update_state(self._state)

        self._lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._pending_sync = False
        self._pending_tick = False
        self._pending_rollback = False
        self._rollback_target: int | None = None
        self._cancel_requested = False
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def release(self) -> ReleaseRef:
        return self._release

    @property
    def state(self) -> ReleaseState:
        return self._state

    @property
    def busy(self) -> bool:
        """True while a cycle is in flight."""
        return self._lock.locked()

    def start(self) -> None:
        """Start watching the source and ticking in the background."""
        if self._tasks:
            return
        _LOGGER.info("Starting controller for release %s", self._release)
        task_service = get_task_service()
        self._tasks = [
            task_service.create_background_task(
                self._run_requests(), name=f"{self._release}-requests"
            ),
            task_service.create_background_task(
                self._run_ticks(), name=f"{self._release}-ticks"
            ),
            task_service.create_background_task(
                self._watch_source(), name=f"{self._release}-watch"
            ),
        ]

    async def close(self) -> None:
        """Stop the controller.

        A cycle in progress is cancelled at its next checkpoint and allowed to
        finish recording its state before the background tasks are stopped.
        """
        _LOGGER.info("Closing controller for release %s", self._release)
        self.cancel_cycle()
        async with self._lock:
            pass
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    # Triggers

    def request_sync(self) -> None:
        """Request a full cycle against the latest source revision."""
        self._pending_sync = True
        self._wake.set()

    def request_tick(self) -> None:
        """Request a periodic resync."""
        self._pending_tick = True
        self._wake.set()

    def request_rollback(self, revision: int | None = None) -> None:
        """Request a rollback to a revision, or to the previous one."""
        self._pending_rollback = True
        self._rollback_target = revision
        self._wake.set()

    def cancel_cycle(self) -> None:
        """Cancel the cycle in progress at its next checkpoint."""
        if self._lock.locked():
            _LOGGER.info("Cancelling cycle for release %s", self._release)
            self._cancel_requested = True

    async def _run_requests(self) -> None:
        while True:
            await self._wake.wait()
            self._wake.clear()
            await self._serve_pending()

    async def _serve_pending(self) -> None:
        """Run one cycle per batch of coalesced requests."""
        while self._pending_rollback or self._pending_sync or self._pending_tick:
            if self._pending_rollback:
                self._pending_rollback = False
                target, self._rollback_target = self._rollback_target, None
                try:
                    await self.rollback(target)
                except InputException as err:
                    _LOGGER.error("Unable to roll back %s: %s", self._release, err)
            elif self._pending_sync:
                # A full cycle also covers any pending tick
                self._pending_sync = False
                self._pending_tick = False
                await self.sync()
            else:
                self._pending_tick = False
                await self.resync()

    async def _run_ticks(self) -> None:
        while True:
            await asyncio.sleep(self._config.resync_interval_seconds)
            self.request_tick()

    async def _watch_source(self) -> None:
        try:
            async for revision in self._source.watch(self._release):
                if revision != self._state.last_source_revision:
                    _LOGGER.info(
                        "Source revision %s available for %s", revision, self._release
                    )
                    self.request_sync()
        except SourceException as err:
            _LOGGER.error("Stopped watching source for %s: %s", self._release, err)

    # Cycles

    async def sync(self) -> ReleaseState:
        """Run a full cycle against the latest source revision."""
        return await self._run_cycle(self._sync)

    async def resync(self) -> ReleaseState:
        """Run a periodic cycle: pick up new revisions or check for drift."""
        return await self._run_cycle(self._resync)

    async def rollback(self, revision: int | None = None) -> ReleaseState:
        """Re-apply the inputs of a prior revision.

        Without a revision number, rolls back to the revision before the
        current one.
        """
        target = self._find_rollback_target(revision)
        _LOGGER.info(
            "Rolling back release %s to revision %d", self._release, target.number
        )

        async def _rollback() -> None:
            await self._reconcile(target.source, rollback_of=target.number)

        return await self._run_cycle(_rollback)

    def _find_rollback_target(self, revision: int | None) -> ReleaseRevision:
        history = self._state.history
        if revision is None:
            if len(history) < 2:
                raise InputException(
                    f"Release {self._release} has no previous revision to roll back to"
                )
            return history[-2]
        if (target := self._state.get_revision(revision)) is None:
            raise InputException(
                f"Release {self._release} has no revision {revision} in its history"
            )
        return target

    async def _run_cycle(self, body: Callable[[], Awaitable[None]]) -> ReleaseState:
        async with self._lock:
            self._cancel_requested = False
            try:
                await body()
            except CycleCancelledError as err:
                _LOGGER.warning("%s", err)
                self._state.status = SyncStatus.OUT_OF_SYNC
                self._state.last_error = ResourceError(ErrorReason.CANCELLED, str(err))
            finally:
                self._state.phase = Phase.IDLE
                self._state.cycles += 1
                self._store.update_state(self._state)
        return self._state

    def _checkpoint(self) -> None:
        if self._cancel_requested:
            raise CycleCancelledError(f"Reconciliation of {self._release} was cancelled")

    def _set_phase(self, phase: Phase) -> None:
        _LOGGER.debug("Release %s entering phase %s", self._release, phase)
        self._state.phase = phase
        self._store.update_state(self._state)

    def _fail(self, error: ResourceError) -> None:
        _LOGGER.error("Release %s failed: %s", self._release, error)
        self._state.status = SyncStatus.DEGRADED
        self._state.last_error = error
        self._state.errors = [error]

    async def _latest(self) -> SourceRevision:
        try:
            async with asyncio.timeout(self._config.per_operation_timeout_seconds):
                return await self._source.get_latest(self._release)
        except TimeoutError as err:
            raise SourceException(f"Timed out reading source for {self._release}") from err

    async def _sync(self) -> None:
        self._state.status = SyncStatus.PROGRESSING
        self._set_phase(Phase.RENDERING)
        try:
            revision = await self._latest()
        except SourceException as err:
            self._fail(ResourceError(ErrorReason.SOURCE, str(err)))
            return
        await self._reconcile(revision)

    async def _resync(self) -> None:
        try:
            latest: SourceRevision | None = await self._latest()
        except SourceException as err:
            _LOGGER.warning("Unable to poll source for %s: %s", self._release, err)
            latest = None
        if latest is not None and latest.revision != self._state.last_source_revision:
            _LOGGER.info(
                "Release %s has new revision %s", self._release, latest.revision
            )
            await self._reconcile(latest)
            return

        if (desired := self._state.applied) is None:
            return
        self._set_phase(Phase.DIFFING)
        if (plan := await self._plan(desired)) is None:
            return
        if self._config.self_heal_enabled and (
            not plan.in_sync or self._state.status == SyncStatus.DEGRADED
        ):
            if not plan.in_sync:
                _LOGGER.warning(
                    "Correcting drift of %d objects in %s",
                    len(plan.drifted_keys),
                    self._release,
                )
            self._state.status = SyncStatus.PROGRESSING
            await self._apply(plan, desired)
        elif not plan.in_sync:
            _LOGGER.warning(
                "Release %s drifted: %s",
                self._release,
                ", ".join(str(key) for key in plan.drifted_keys),
            )
            self._state.drifted_keys = plan.drifted_keys
            if self._state.status != SyncStatus.DEGRADED:
                self._state.status = SyncStatus.OUT_OF_SYNC
        elif self._state.status == SyncStatus.OUT_OF_SYNC:
            _LOGGER.info("Release %s is back in sync", self._release)
            self._state.status = SyncStatus.SYNCED
            self._state.drifted_keys = []
            self._state.errors = []
            self._state.last_error = None

    async def _reconcile(
        self, source: SourceRevision, rollback_of: int | None = None
    ) -> None:
        """Render a source revision and drive the cluster toward it."""
        self._checkpoint()
        self._state.status = SyncStatus.PROGRESSING
        self._set_phase(Phase.RENDERING)
        try:
            desired = render(
                source.templates, source.layers, self._release, source.chart
            )
        except RenderError as err:
            reason = (
                ErrorReason.MISSING_VALUE
                if isinstance(err, MissingValueError)
                else ErrorReason.INVALID_TEMPLATE
            )
            self._fail(ResourceError(reason, f"Revision {source.revision}: {err}"))
            return

        if rollback_of is None:
            self._state.last_source_revision = source.revision
        current = self._state.current
        if (
            current is None
            or current.desired != desired
            or (rollback_of is not None and current.rollback_of != rollback_of)
        ):
            revision = self._state.add_revision(
                source, desired, self._config.max_history, rollback_of=rollback_of
            )
            _LOGGER.info(
                "Release %s revision %d from source %s",
                self._release,
                revision.number,
                source.revision,
            )
            self._store.update_state(self._state, revision_added=True)

        self._set_phase(Phase.DIFFING)
        if (plan := await self._plan(desired)) is None:
            return
        await self._apply(plan, desired)

    async def _snapshot(self, desired: DesiredSet) -> LiveSnapshot:
        kinds = set(_DEFAULT_KINDS)
        for revision in self._state.history:
            kinds.update(doc.kind for doc in revision.desired)
        kinds.update(doc.kind for doc in desired)
        async with asyncio.timeout(self._config.per_operation_timeout_seconds):
            objects = await self._cluster.list(self._release.selector, sorted(kinds))
        return LiveSnapshot(objects=objects, owner=self._release.tracking_value)

    async def _plan(self, desired: DesiredSet) -> SyncPlan | None:
        """Compare against a fresh snapshot, or record the failure and return None."""
        try:
            live = await self._snapshot(desired)
        except ClusterException as err:
            self._fail(ResourceError(ErrorReason.UNAVAILABLE, f"Unable to list objects: {err}"))
            return None
        except TimeoutError:
            self._fail(ResourceError(ErrorReason.TIMEOUT, "Timed out listing objects"))
            return None
        try:
            return diff(desired, live, self._config.prune_policy)
        except DiffError as err:
            self._fail(ResourceError(ErrorReason.MALFORMED_LIVE_OBJECT, str(err)))
            return None

    async def _apply(self, plan: SyncPlan, desired: DesiredSet) -> None:
        for line in describe(plan.changes):
            _LOGGER.info("Release %s: %s", self._release, line)
        self._set_phase(Phase.APPLYING)
        result = await self._applier.apply(plan, desired, self._checkpoint)

        self._set_phase(Phase.VERIFYING)
        verify_errors = await self._verifier.verify(
            desired, result.failed_keys, self._checkpoint
        )

        errors = result.errors + verify_errors
        drifted = {error.key: None for error in errors if error.key is not None}
        drifted.update({key: None for key in result.orphans})
        self._state.errors = errors
        self._state.drifted_keys = list(drifted)
        if errors:
            self._state.status = SyncStatus.DEGRADED
            self._state.last_error = errors[0]
            _LOGGER.error(
                "Release %s degraded with %d errors, first: %s",
                self._release,
                len(errors),
                errors[0],
            )
        elif result.orphans:
            self._state.status = SyncStatus.OUT_OF_SYNC
            self._state.last_error = None
            _LOGGER.warning(
                "Release %s has %d objects left unpruned",
                self._release,
                len(result.orphans),
            )
        else:
            self._state.status = SyncStatus.SYNCED
            self._state.last_error = None
            _LOGGER.info("Release %s synced", self._release)
