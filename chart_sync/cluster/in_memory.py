"""An in memory cluster used for local runs and tests.

The cluster assigns resource versions the way the API server does and
enforces them as preconditions. Workloads can be made ready automatically
so verification succeeds without a real scheduler.
"""

import asyncio
from collections import defaultdict
from collections.abc import Callable, Iterable
import copy
import datetime
import logging
from typing import Any, DefaultDict
import uuid

from chart_sync.exceptions import ClusterException, ConflictError, NotFoundError
from chart_sync.manifest import ResourceKey

from .client import ClusterClient

__all__ = [
    "InMemoryCluster",
    "ready_status",
]

_LOGGER = logging.getLogger(__name__)


def ready_status(content: dict[str, Any]) -> dict[str, Any] | None:
    """Return a status block that reports the object as ready."""
    kind = content.get("kind")
    spec = content.get("spec") or {}
    replicas = spec.get("replicas", 1)
    if kind == "Deployment":
        return {
            "replicas": replicas,
            "readyReplicas": replicas,
            "availableReplicas": replicas,
        }
    if kind in ("StatefulSet", "ReplicaSet"):
        return {"replicas": replicas, "readyReplicas": replicas}
    if kind == "DaemonSet":
        return {"desiredNumberScheduled": 1, "numberAvailable": 1}
    if kind == "Job":
        return {"succeeded": 1}
    if kind == "PersistentVolumeClaim":
        return {"phase": "Bound"}
    if kind == "Pod":
        return {"phase": "Running"}
    return None


class InMemoryCluster(ClusterClient):
    """A cluster that keeps objects in a dictionary."""

    def __init__(self, auto_ready: bool = True, latency: float = 0.0) -> None:
        """Initialize InMemoryCluster."""
        self.auto_ready = auto_ready
        self.latency = latency
        self._objects: dict[ResourceKey, dict[str, Any]] = {}
        self._version = 0
        self._failures: DefaultDict[tuple[str, ResourceKey], list[ClusterException]] = (
            defaultdict(list)
        )
        self._hooks: DefaultDict[
            tuple[str, ResourceKey], list[Callable[["InMemoryCluster"], None]]
        ] = defaultdict(list)
        self.calls: list[tuple[str, ResourceKey]] = []
        """Record of every mutation attempted, in order."""

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def _store(
        self, content: dict[str, Any], previous: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        obj = copy.deepcopy(content)
        key = ResourceKey.from_doc(obj)
        metadata = obj["metadata"]
        metadata["resourceVersion"] = self._next_version()
        if previous is not None:
            prev_metadata = previous["metadata"]
            metadata["uid"] = prev_metadata["uid"]
            metadata["creationTimestamp"] = prev_metadata["creationTimestamp"]
            metadata["generation"] = prev_metadata.get("generation", 1) + 1
            if "status" not in obj and "status" in previous:
                obj["status"] = copy.deepcopy(previous["status"])
        else:
            metadata["uid"] = str(uuid.uuid4())
            metadata["creationTimestamp"] = (
                datetime.datetime.now(datetime.UTC).isoformat()
            )
            metadata["generation"] = 1
        if self.auto_ready and (status := ready_status(obj)) is not None:
            obj["status"] = status
        self._objects[key] = obj
        return copy.deepcopy(obj)

    # Out of band access, simulating other actors editing the cluster.

    @property
    def objects(self) -> list[dict[str, Any]]:
        """Return copies of all objects in the cluster."""
        return [copy.deepcopy(obj) for obj in self._objects.values()]

    def peek(self, key: ResourceKey) -> dict[str, Any] | None:
        """Return a copy of an object without going through the API."""
        if (obj := self._objects.get(key)) is None:
            return None
        return copy.deepcopy(obj)

    def add(self, content: dict[str, Any]) -> dict[str, Any]:
        """Add or replace an object out of band."""
        key = ResourceKey.from_doc(content)
        return self._store(content, self._objects.get(key))

    def edit(self, key: ResourceKey, mutate: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        """Mutate an object out of band, bumping its resource version."""
        if (obj := self._objects.get(key)) is None:
            raise NotFoundError(f"{key} not found")
        content = copy.deepcopy(obj)
        mutate(content)
        return self._store(content, obj)

    def remove(self, key: ResourceKey) -> None:
        """Remove an object out of band."""
        self._objects.pop(key, None)

    def set_status(self, key: ResourceKey, status: dict[str, Any]) -> None:
        """Replace the status of an object without changing its version."""
        if (obj := self._objects.get(key)) is None:
            raise NotFoundError(f"{key} not found")
        obj["status"] = copy.deepcopy(status)

    def fail_next(
        self, verb: str, key: ResourceKey, error: ClusterException, count: int = 1
    ) -> None:
        """Make the next calls of a verb for the key raise an error."""
        self._failures[(verb, key)].extend([error] * count)

    def before_next(
        self, verb: str, key: ResourceKey, hook: Callable[["InMemoryCluster"], None]
    ) -> None:
        """Run a hook right before the next call of a verb for the key."""
        self._hooks[(verb, key)].append(hook)

    async def _enter(self, verb: str, key: ResourceKey) -> None:
        await asyncio.sleep(self.latency)
        if hooks := self._hooks.get((verb, key)):
            hooks.pop(0)(self)
        if failures := self._failures.get((verb, key)):
            error = failures.pop(0)
            _LOGGER.debug("Injected failure for %s %s: %s", verb, key, error)
            raise error

    # Cluster API

    async def get(self, key: ResourceKey) -> dict[str, Any] | None:
        await self._enter("get", key)
        return self.peek(key)

    async def list(
        self, selector: dict[str, str], kinds: Iterable[str] | None = None
    ) -> list[dict[str, Any]]:
        await asyncio.sleep(self.latency)
        kind_filter = set(kinds) if kinds is not None else None
        results = []
        for key, obj in sorted(self._objects.items()):
            if kind_filter is not None and key.kind not in kind_filter:
                continue
            labels = obj["metadata"].get("labels") or {}
            if all(labels.get(name) == value for name, value in selector.items()):
                results.append(copy.deepcopy(obj))
        return results

    async def create(self, content: dict[str, Any]) -> dict[str, Any]:
        key = ResourceKey.from_doc(content)
        self.calls.append(("create", key))
        await self._enter("create", key)
        if key in self._objects:
            raise ConflictError(f"{key} already exists")
        _LOGGER.debug("Creating %s", key)
        return self._store(content)

    async def update(
        self, content: dict[str, Any], resource_version: str
    ) -> dict[str, Any]:
        key = ResourceKey.from_doc(content)
        self.calls.append(("update", key))
        await self._enter("update", key)
        if (current := self._objects.get(key)) is None:
            raise NotFoundError(f"{key} not found")
        if current["metadata"]["resourceVersion"] != resource_version:
            raise ConflictError(
                f"{key} has been modified (version {current['metadata']['resourceVersion']}, expected {resource_version})"
            )
        _LOGGER.debug("Updating %s", key)
        return self._store(content, current)

    async def delete(self, key: ResourceKey, resource_version: str | None) -> None:
        self.calls.append(("delete", key))
        await self._enter("delete", key)
        if (current := self._objects.get(key)) is None:
            raise NotFoundError(f"{key} not found")
        if (
            resource_version is not None
            and current["metadata"]["resourceVersion"] != resource_version
        ):
            raise ConflictError(f"{key} has been modified")
        _LOGGER.debug("Deleting %s", key)
        del self._objects[key]
