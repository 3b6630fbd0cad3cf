"""Status of a release and its revision history."""

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
import logging
from pathlib import Path

import aiofiles
import yaml
from mashumaro import field_options

from chart_sync.manifest import BaseModel, DesiredSet, ReleaseRef, ResourceKey
from chart_sync.source import SourceRevision

__all__ = [
    "SyncStatus",
    "Phase",
    "ErrorReason",
    "ResourceError",
    "ReleaseRevision",
    "ReleaseState",
    "StatusReport",
    "StatusWriter",
    "write_status",
]

_LOGGER = logging.getLogger(__name__)


class SyncStatus(StrEnum):
    """Externally visible status of a release."""

    PROGRESSING = "Progressing"
    SYNCED = "Synced"
    DEGRADED = "Degraded"
    OUT_OF_SYNC = "OutOfSync"


class Phase(StrEnum):
    """Step of the reconciliation cycle a release is in."""

    IDLE = "Idle"
    RENDERING = "Rendering"
    DIFFING = "Diffing"
    APPLYING = "Applying"
    VERIFYING = "Verifying"


class ErrorReason(StrEnum):
    """Why a release or one of its resources failed."""

    SOURCE = "SourceError"
    MISSING_VALUE = "MissingValue"
    INVALID_TEMPLATE = "InvalidTemplate"
    MALFORMED_LIVE_OBJECT = "MalformedLiveObject"
    CONFLICT = "Conflict"
    FORBIDDEN = "Forbidden"
    UNAVAILABLE = "Unavailable"
    NOT_FOUND = "NotFound"
    TIMEOUT = "Timeout"
    DEPENDENCY_FAILED = "DependencyFailed"
    NOT_READY = "NotReady"
    VERIFY_TIMEOUT = "VerifyTimeout"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class ResourceError:
    """A failure attributed to a resource, or to the whole release when key is None."""

    reason: ErrorReason
    message: str
    key: ResourceKey | None = None

    def __str__(self) -> str:
        if self.key is None:
            return f"{self.reason}: {self.message}"
        return f"{self.key}: {self.reason}: {self.message}"


@dataclass(frozen=True)
class ReleaseRevision:
    """A desired set that was applied, with the inputs that produced it."""

    number: int
    source: SourceRevision
    desired: DesiredSet
    rollback_of: int | None = None
    """Revision number whose inputs were re-applied, for rollbacks."""


@dataclass
class ReleaseState:
    """State of a release, owned and mutated by its controller."""

    release: ReleaseRef
    status: SyncStatus = SyncStatus.PROGRESSING
    phase: Phase = Phase.IDLE
    history: list[ReleaseRevision] = field(default_factory=list)
    last_source_revision: str | None = None
    """The latest source revision that was rendered, used to detect changes."""

    last_error: ResourceError | None = None
    errors: list[ResourceError] = field(default_factory=list)
    drifted_keys: list[ResourceKey] = field(default_factory=list)
    cycles: int = 0
    """Number of completed reconciliation cycles."""

    @property
    def current(self) -> ReleaseRevision | None:
        return self.history[-1] if self.history else None

    @property
    def revision(self) -> int:
        """Number of the most recent revision, zero before the first apply."""
        return self.history[-1].number if self.history else 0

    @property
    def applied(self) -> DesiredSet | None:
        return self.history[-1].desired if self.history else None

    def get_revision(self, number: int) -> ReleaseRevision | None:
        for revision in self.history:
            if revision.number == number:
                return revision
        return None

    def add_revision(
        self,
        source: SourceRevision,
        desired: DesiredSet,
        max_history: int,
        rollback_of: int | None = None,
    ) -> ReleaseRevision:
        """Record a new revision, dropping the oldest beyond max_history."""
        revision = ReleaseRevision(
            number=self.revision + 1,
            source=source,
            desired=desired,
            rollback_of=rollback_of,
        )
        self.history.append(revision)
        del self.history[:-max_history]
        return revision

    def report(self) -> "StatusReport":
        current = self.current
        return StatusReport(
            name=self.release.name,
            namespace=self.release.namespace,
            status=str(self.status),
            phase=str(self.phase),
            revision=current.number if current else None,
            last_revision=current.source.revision if current else None,
            rollback_of=current.rollback_of if current else None,
            last_error=str(self.last_error) if self.last_error else None,
            errors=[str(error) for error in self.errors],
            drifted_keys=[str(key) for key in self.drifted_keys],
            cycles=self.cycles,
        )


@dataclass
class StatusReport(BaseModel):
    """Status of a release published for operators and tools."""

    name: str
    namespace: str
    status: str
    phase: str
    revision: int | None = None
    last_revision: str | None = field(
        default=None, metadata=field_options(alias="lastRevision")
    )
    """Source revision of the applied desired set."""

    rollback_of: int | None = field(
        default=None, metadata=field_options(alias="rollbackOf")
    )
    last_error: str | None = field(
        default=None, metadata=field_options(alias="lastError")
    )
    errors: list[str] = field(default_factory=list)
    drifted_keys: list[str] = field(
        default_factory=list, metadata=field_options(alias="driftedKeys")
    )
    cycles: int = 0


async def write_status(path: Path, reports: list[StatusReport]) -> None:
    """Write status reports to a YAML file."""
    content = yaml.dump(
        {"releases": [report.to_dict() for report in reports]},
        sort_keys=False,
        explicit_start=True,
    )
    async with aiofiles.open(str(path), mode="w") as status_file:
        await status_file.write(content)
    _LOGGER.debug("Wrote status for %d releases to %s", len(reports), path)


class StatusWriter:
    """Writes status reports to one file as releases change.

    Writes never overlap. Updates that arrive while a write is in progress
    are coalesced so only the latest reports are written next.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = asyncio.Lock()
        self._pending: list[StatusReport] | None = None

    async def write(self, reports: list[StatusReport]) -> None:
        self._pending = reports
        async with self._lock:
            if self._pending is None:
                return
            reports, self._pending = self._pending, None
            await write_status(self._path, reports)
