"""Applies a sync plan to the cluster.

Each operation runs as a small state machine: an attempt either applies,
fails, or conflicts with a concurrent edit. A conflict re-reads the object,
recomputes the operations for that single object and tries again until the
retry budget is spent. Failures are recorded per resource and never stop
independent resources from being applied, while resources that depend on a
failed one are skipped.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Any

from chart_sync.cluster import ClusterClient
from chart_sync.config import ControllerConfig
from chart_sync.dependencies import resource_dependencies
from chart_sync.differ import (
    Create,
    Delete,
    Noop,
    SyncOperation,
    SyncPlan,
    Update,
    diff_one,
)
from chart_sync.exceptions import (
    ClusterException,
    ConflictError,
    ForbiddenError,
    MalformedLiveObjectError,
    NotFoundError,
)
from chart_sync.manifest import DesiredSet, ResourceKey
from chart_sync.store import ErrorReason, ResourceError

__all__ = [
    "Applier",
    "ApplyResult",
]

_LOGGER = logging.getLogger(__name__)


class Outcome(Enum):
    """Result of a single attempt at an operation."""

    APPLIED = "applied"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass(frozen=True)
class Attempt:
    """The outcome of one call to the cluster."""

    outcome: Outcome
    error: ResourceError | None = None


@dataclass
class ApplyResult:
    """What happened while applying a plan."""

    applied: list[ResourceKey] = field(default_factory=list)
    """Keys of objects created, updated or deleted, in order."""

    errors: list[ResourceError] = field(default_factory=list)
    orphans: list[ResourceKey] = field(default_factory=list)
    """Owned objects left in place because pruning was disabled or skipped."""

    @property
    def failed_keys(self) -> set[ResourceKey]:
        return {error.key for error in self.errors if error.key is not None}


def _is_prune(op: SyncOperation) -> bool:
    return isinstance(op, Delete) and not op.superseded


def _failure(key: ResourceKey, err: ClusterException) -> Attempt:
    if isinstance(err, ForbiddenError):
        reason = ErrorReason.FORBIDDEN
    elif isinstance(err, NotFoundError):
        reason = ErrorReason.NOT_FOUND
    else:
        reason = ErrorReason.UNAVAILABLE
    return Attempt(Outcome.FAILED, ResourceError(reason, str(err), key))


class Applier:
    """Executes sync operations in order against a cluster."""

    def __init__(self, cluster: ClusterClient, config: ControllerConfig) -> None:
        """Initialize Applier."""
        self._cluster = cluster
        self._config = config

    async def _call(self, coro: Any) -> Any:
        async with asyncio.timeout(self._config.per_operation_timeout_seconds):
            return await coro

    async def _attempt(self, op: SyncOperation) -> Attempt:
        key = op.key
        try:
            if isinstance(op, Create):
                await self._call(self._cluster.create(op.document.content))
            elif isinstance(op, Update):
                await self._call(
                    self._cluster.update(op.document.content, op.resource_version)
                )
            elif isinstance(op, Delete):
                await self._call(self._cluster.delete(key, op.resource_version))
        except ConflictError as err:
            _LOGGER.debug("Conflict applying %s: %s", key, err)
            return Attempt(Outcome.CONFLICT)
        except NotFoundError as err:
            if isinstance(op, Create):
                return _failure(key, err)
            _LOGGER.debug("%s disappeared while applying: %s", key, err)
            return Attempt(Outcome.CONFLICT)
        except ClusterException as err:
            return _failure(key, err)
        except TimeoutError:
            return Attempt(
                Outcome.FAILED,
                ResourceError(
                    ErrorReason.TIMEOUT,
                    f"No response within {self._config.per_operation_timeout_seconds}s",
                    key,
                ),
            )
        return Attempt(Outcome.APPLIED)

    async def _recompute(self, op: SyncOperation) -> list[SyncOperation]:
        """Re-read the object and return the operations that still apply."""
        live = await self._call(self._cluster.get(op.key))
        if isinstance(op, Delete):
            if live is None:
                return []
            version = (live.get("metadata") or {}).get("resourceVersion")
            return [Delete(op.key, version, superseded=op.superseded)]
        if isinstance(op, (Create, Update)):
            return diff_one(op.document, live)
        return []

    async def execute(self, op: SyncOperation) -> ResourceError | None:
        """Apply one operation, retrying conflicts within the retry budget."""
        key = op.key
        conflicts = 0
        pending: list[SyncOperation] = [op]
        while pending:
            current = pending.pop(0)
            if isinstance(current, Noop):
                continue
            attempt = await self._attempt(current)
            if attempt.outcome is Outcome.APPLIED:
                _LOGGER.debug("Applied %s %s", type(current).__name__, key)
                continue
            if attempt.outcome is Outcome.FAILED:
                return attempt.error

            conflicts += 1
            if conflicts > self._config.max_apply_retries:
                return ResourceError(
                    ErrorReason.CONFLICT,
                    f"Still conflicting after {self._config.max_apply_retries} retries",
                    key,
                )
            _LOGGER.info("Retrying %s after conflict (%d)", key, conflicts)
            try:
                pending = await self._recompute(current) + pending
            except ClusterException as err:
                return _failure(key, err).error
            except TimeoutError:
                return ResourceError(ErrorReason.TIMEOUT, "Timed out re-reading object", key)
            except MalformedLiveObjectError as err:
                return ResourceError(ErrorReason.MALFORMED_LIVE_OBJECT, str(err), key)
        return None

    async def apply(
        self,
        plan: SyncPlan,
        desired: DesiredSet,
        checkpoint: Callable[[], None],
    ) -> ApplyResult:
        """Apply creates and updates in order, then prune deletes.

        The checkpoint is called before every operation and raises to cancel
        the cycle.
        """
        result = ApplyResult()
        failed: set[ResourceKey] = set()
        dependencies = {doc.key: resource_dependencies(doc) for doc in desired}

        for op in plan.operations:
            if isinstance(op, Noop) or _is_prune(op):
                continue
            checkpoint()
            key = op.key
            if key in failed:
                # The delete half of a supersede pair failed
                continue
            if blocked := [dep for dep in dependencies.get(key, []) if dep in failed]:
                failed.add(key)
                result.errors.append(
                    ResourceError(
                        ErrorReason.DEPENDENCY_FAILED,
                        f"Not applied because {blocked[0]} failed",
                        key,
                    )
                )
                continue
            if (error := await self.execute(op)) is not None:
                _LOGGER.warning("Failed to apply %s: %s", key, error)
                failed.add(key)
                result.errors.append(error)
            else:
                result.applied.append(key)

        prunes = [op for op in plan.operations if _is_prune(op)]
        if failed and prunes:
            _LOGGER.warning(
                "Skipping prune of %d objects because %d resources failed",
                len(prunes),
                len(failed),
            )
            result.orphans.extend(op.key for op in prunes)
        else:
            for op in prunes:
                checkpoint()
                _LOGGER.info("Pruning %s", op.key)
                if (error := await self.execute(op)) is not None:
                    result.errors.append(error)
                    result.orphans.append(op.key)
                else:
                    result.applied.append(op.key)

        result.orphans.extend(plan.orphans)
        return result
