"""Store module holding the state of every release."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum

from chart_sync.manifest import ReleaseRef

from .status import ReleaseState, StatusReport


class StoreEvent(str, Enum):
    """Enum for store events."""

    STATE_UPDATED = "state_updated"
    REVISION_ADDED = "revision_added"


class ReleaseStore(ABC):
    """Abstract base class for release state storage with listener support."""

    @abstractmethod
    def get_state(self, release: ReleaseRef) -> ReleaseState | None:
        """Return the state of a release."""

    @abstractmethod
    def update_state(self, state: ReleaseState, revision_added: bool = False) -> None:
        """Store the state of a release and notify listeners."""

    @abstractmethod
    def list_states(self) -> list[ReleaseState]:
        """Return the state of every release."""

    @abstractmethod
    def has_failed_releases(self) -> bool:
        """Return True if any release is Degraded."""

    def reports(self) -> list[StatusReport]:
        """Return the status report of every release."""
        return [state.report() for state in self.list_states()]

    @abstractmethod
    def add_listener(
        self,
        event: StoreEvent,
        callback: Callable[[ReleaseRef, ReleaseState], None],
    ) -> Callable[[], None]:
        """Register a callback for an event.

        Returns a callable that can be called to remove the listener.
        """

    @abstractmethod
    async def watch_cycle(self, release: ReleaseRef, after: int = 0) -> ReleaseState:
        """Wait until the release completes more than `after` cycles.

        Callers are expected to bound the wait with a timeout.
        """
