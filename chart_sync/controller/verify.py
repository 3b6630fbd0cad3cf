"""Confirms applied objects match the desired set and report ready."""

import asyncio
from collections.abc import Callable
import logging
from typing import Any

from chart_sync.cluster import ClusterClient
from chart_sync.config import ControllerConfig
from chart_sync.differ import matches
from chart_sync.exceptions import ClusterException
from chart_sync.manifest import DesiredSet, ResourceDocument, ResourceKey
from chart_sync.store import ErrorReason, ResourceError

__all__ = [
    "Verifier",
    "readiness",
]

_LOGGER = logging.getLogger(__name__)


def _at_least(status: dict[str, Any], field_name: str, wanted: int) -> str | None:
    current = status.get(field_name) or 0
    if current < wanted:
        return f"{field_name} {current}/{wanted}"
    return None


def readiness(obj: dict[str, Any]) -> str | None:
    """Return why a live object is not ready, or None when it is."""
    kind = obj.get("kind")
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    replicas = spec.get("replicas", 1)
    if kind == "Deployment":
        return _at_least(status, "availableReplicas", replicas)
    if kind in ("StatefulSet", "ReplicaSet"):
        return _at_least(status, "readyReplicas", replicas)
    if kind == "DaemonSet":
        return _at_least(
            status, "numberAvailable", status.get("desiredNumberScheduled") or 0
        )
    if kind == "Job":
        return _at_least(status, "succeeded", 1)
    if kind == "PersistentVolumeClaim":
        if (phase := status.get("phase")) != "Bound":
            return f"phase is {phase or 'unknown'}"
        return None
    if kind == "Pod":
        if (phase := status.get("phase")) not in ("Running", "Succeeded"):
            return f"phase is {phase or 'unknown'}"
        return None
    return None


class Verifier:
    """Polls the cluster with exponential backoff until objects converge."""

    def __init__(self, cluster: ClusterClient, config: ControllerConfig) -> None:
        """Initialize Verifier."""
        self._cluster = cluster
        self._config = config

    async def _check(self, doc: ResourceDocument) -> ResourceError | None:
        key = doc.key
        try:
            async with asyncio.timeout(self._config.per_operation_timeout_seconds):
                live = await self._cluster.get(key)
        except (ClusterException, TimeoutError) as err:
            return ResourceError(
                ErrorReason.VERIFY_TIMEOUT,
                f"Unable to read object: {str(err) or 'timed out'}",
                key,
            )
        if live is None:
            return ResourceError(ErrorReason.NOT_READY, "Object does not exist", key)
        if not matches(doc, live):
            return ResourceError(
                ErrorReason.NOT_READY, "Object does not match the applied spec", key
            )
        if (reason := readiness(live)) is not None:
            return ResourceError(ErrorReason.NOT_READY, f"Not ready: {reason}", key)
        return None

    async def verify(
        self,
        desired: DesiredSet,
        skip: set[ResourceKey],
        checkpoint: Callable[[], None],
    ) -> list[ResourceError]:
        """Wait for every desired object not in skip to match and be ready.

        Returns the errors of objects still unconverged when the budget runs out.
        """
        pending = [doc for doc in desired if doc.key not in skip]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.verify_timeout_seconds
        delay = self._config.verify_initial_backoff_seconds
        while True:
            errors: list[ResourceError] = []
            still_pending: list[ResourceDocument] = []
            for doc in pending:
                checkpoint()
                if (error := await self._check(doc)) is not None:
                    errors.append(error)
                    still_pending.append(doc)
            pending = still_pending
            if not pending:
                _LOGGER.debug("All objects verified")
                return []
            remaining = deadline - loop.time()
            if remaining <= 0:
                for error in errors:
                    _LOGGER.warning("Verification failed for %s", error)
                return errors
            _LOGGER.debug(
                "%d objects not converged, retrying in %.1fs", len(pending), delay
            )
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, self._config.verify_max_backoff_seconds)
