"""
The store module tracks the state of each release: its sync status, the
phase of the current cycle, per-resource errors and the revision history
used for rollback.

This abstract interface allows for various implementations (in-memory, persistent, etc.).
"""

from .store import ReleaseStore, StoreEvent
from .in_memory import InMemoryReleaseStore
from .status import (
    ErrorReason,
    Phase,
    ReleaseRevision,
    ReleaseState,
    ResourceError,
    StatusReport,
    StatusWriter,
    SyncStatus,
    write_status,
)

__all__ = [
    "ReleaseStore",
    "StoreEvent",
    "InMemoryReleaseStore",
    "ErrorReason",
    "Phase",
    "ReleaseRevision",
    "ReleaseState",
    "ResourceError",
    "StatusReport",
    "StatusWriter",
    "SyncStatus",
    "write_status",
]
