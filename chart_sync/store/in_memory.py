"""Module for in memory release store."""

import asyncio
from collections import defaultdict
from collections.abc import Callable
import logging
from typing import Any, DefaultDict

from chart_sync.manifest import ReleaseRef

from .status import ReleaseState, SyncStatus
from .store import ReleaseStore, StoreEvent

_LOGGER = logging.getLogger(__name__)


class InMemoryReleaseStore(ReleaseStore):
    """In-memory implementation of the ReleaseStore interface."""

    def __init__(self) -> None:
        """Initialize the InMemoryReleaseStore."""
        self._states: dict[ReleaseRef, ReleaseState] = {}
        self._listeners: DefaultDict[
            StoreEvent, list[Callable[[ReleaseRef, ReleaseState], None]]
        ] = defaultdict(list)

    def get_state(self, release: ReleaseRef) -> ReleaseState | None:
        return self._states.get(release)

    def update_state(self, state: ReleaseState, revision_added: bool = False) -> None:
        if state.status == SyncStatus.DEGRADED:
            _LOGGER.debug(
                "Release %s is %s: %s", state.release, state.status, state.last_error
            )
        self._states[state.release] = state
        if revision_added:
            self._fire_event(StoreEvent.REVISION_ADDED, state.release, state)
        self._fire_event(StoreEvent.STATE_UPDATED, state.release, state)

    def list_states(self) -> list[ReleaseState]:
        return [self._states[release] for release in sorted(self._states)]

    def has_failed_releases(self) -> bool:
        return any(
            state.status == SyncStatus.DEGRADED for state in self._states.values()
        )

    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[ReleaseRef, ReleaseState], None],
    ) -> Callable[[], None]:
        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)
        return remove

    def _fire_event(self, event: StoreEvent, *args: Any) -> None:
        for cb in list(self._listeners[event]):  # Iterate over a copy for safe removal
            try:
                cb(*args)
            except Exception:
                _LOGGER.exception("Store listener callback failed for event %s", event)

    async def watch_cycle(self, release: ReleaseRef, after: int = 0) -> ReleaseState:
        if (state := self._states.get(release)) is not None and state.cycles > after:
            return state

        done = asyncio.Event()

        def callback(updated: ReleaseRef, updated_state: ReleaseState) -> None:
            if updated == release and updated_state.cycles > after:
                done.set()

        remove_listener = self.add_listener(StoreEvent.STATE_UPDATED, callback)
        try:
            await done.wait()
        except asyncio.CancelledError:
            _LOGGER.debug("watch_cycle for %s cancelled", release)
            raise
        finally:
            remove_listener()
        return self._states[release]
