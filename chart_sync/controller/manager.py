"""Manager running one controller per release.

Releases reconcile independently and concurrently. The manager only owns
their lifecycle and exposes the combined status.
"""

import asyncio
from collections.abc import Iterable
import logging

from chart_sync.cluster import ClusterClient
from chart_sync.config import ControllerConfig
from chart_sync.manifest import ReleaseRef
from chart_sync.source import DesiredStateSource
from chart_sync.store import ReleaseState, ReleaseStore, StatusReport
from chart_sync.task import get_task_service

from .controller import ReleaseController

__all__ = [
    "ControllerManager",
]

_LOGGER = logging.getLogger(__name__)


class ControllerManager:
    """Coordinates the controllers of every configured release.

    The manager is responsible for:
    - Creating a controller per release
    - Starting and stopping their background loops
    - Running a one shot sync of every release concurrently
    """

    def __init__(
        self,
        releases: Iterable[ReleaseRef],
        source: DesiredStateSource,
        cluster: ClusterClient,
        store: ReleaseStore,
        config: ControllerConfig | None = None,
    ) -> None:
        """Initialize the manager."""
        self.store = store
        self.config = config or ControllerConfig()
        self.controllers: dict[ReleaseRef, ReleaseController] = {
            release: ReleaseController(release, source, cluster, store, self.config)
            for release in releases
        }
        self._started = False

    def get(self, release: ReleaseRef) -> ReleaseController:
        """Return the controller of a release."""
        if (controller := self.controllers.get(release)) is None:
            raise KeyError(f"Release {release} is not managed")
        return controller

    async def start(self) -> None:
        """Start the background loops of all controllers."""
        if self._started:
            return
        _LOGGER.info("Starting %d release controllers", len(self.controllers))
        for controller in self.controllers.values():
            controller.start()
        self._started = True

    async def stop(self) -> None:
        """Stop all controllers."""
        if not self._started:
            return
        _LOGGER.info("Stopping release controllers")
        for release, controller in reversed(self.controllers.items()):
            _LOGGER.debug("Stopping controller: %s", release)
            await controller.close()
        await get_task_service().block_till_done()
        self._started = False
        _LOGGER.info("Release controllers stopped")

    async def sync_all(self) -> list[ReleaseState]:
        """Run one full cycle of every release concurrently."""
        return list(
            await asyncio.gather(
                *(controller.sync() for controller in self.controllers.values())
            )
        )

    def reports(self) -> list[StatusReport]:
        return self.store.reports()

    def has_failed_releases(self) -> bool:
        return self.store.has_failed_releases()
