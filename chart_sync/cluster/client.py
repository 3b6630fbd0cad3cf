"""Interface to the kubernetes cluster API."""

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from chart_sync.manifest import ResourceKey


class ClusterClient(ABC):
    """Reads and writes objects in a cluster.

    Every call may raise a `ClusterException`. Failures are distinguished as
    `ConflictError`, `NotFoundError`, `ForbiddenError` and `UnavailableError`.
    Mutations are preconditioned on the resource version the caller observed.
    """

    @abstractmethod
    async def get(self, key: ResourceKey) -> dict[str, Any] | None:
        """Return the live object or None if it does not exist."""

    @abstractmethod
    async def list(
        self, selector: dict[str, str], kinds: Iterable[str] | None = None
    ) -> list[dict[str, Any]]:
        """Return all objects matching the label selector.

        The kinds narrow which resource types are queried; None means every
        kind the client knows about.
        """

    @abstractmethod
    async def create(self, content: dict[str, Any]) -> dict[str, Any]:
        """Create a new object, raising ConflictError if it already exists."""

    @abstractmethod
    async def update(
        self, content: dict[str, Any], resource_version: str
    ) -> dict[str, Any]:
        """Replace an object if its resource version still matches.

        Raises ConflictError on a version mismatch and NotFoundError if the
        object was removed.
        """

    @abstractmethod
    async def delete(self, key: ResourceKey, resource_version: str | None) -> None:
        """Delete an object if its resource version still matches.

        Returns once the object is gone from the cluster.
        """
