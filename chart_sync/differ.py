"""Module for computing the operations that move live state to desired state.

Live objects are compared against rendered documents after stripping fields
populated by the server. A document matches its live object when every
field it declares is present with the same value in the live object and the
live object carries the checksum of the document, which catches fields that
were removed from the desired document.
"""

import base64
from collections.abc import Generator, Sequence
import copy
from dataclasses import dataclass, field
import difflib
import hashlib
import json
import logging
from typing import Any

import yaml

from .exceptions import InputException, MalformedLiveObjectError
from .manifest import (
    CONFIG_MAP_KIND,
    SECRET_KIND,
    DesiredSet,
    LiveSnapshot,
    ResourceDocument,
    ResourceKey,
    redact_secret,
)
from .renderer import sort_keys
from .values import MISSING, lookup

__all__ = [
    "PrunePolicy",
    "Create",
    "Update",
    "Delete",
    "Noop",
    "SyncOperation",
    "SyncPlan",
    "diff",
    "diff_one",
    "matches",
    "unified_diff",
]

_LOGGER = logging.getLogger(__name__)

_TRUNCATE = "[Diff truncated by chart-sync]"

CHECKSUM_ANNOTATION = "chart-sync.io/checksum"
LAST_APPLIED_ANNOTATION = "kubectl.kubernetes.io/last-applied-configuration"

SERVER_METADATA_FIELDS = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "deletionTimestamp",
    "deletionGracePeriodSeconds",
    "managedFields",
    "selfLink",
    "ownerReferences",
)

_WORKLOAD_SELECTOR = (("spec", "selector"),)

# Fields the API server refuses to change on an existing object
IMMUTABLE_FIELDS: dict[str, tuple[tuple[str, ...], ...]] = {
    "Deployment": _WORKLOAD_SELECTOR,
    "DaemonSet": _WORKLOAD_SELECTOR,
    "ReplicaSet": _WORKLOAD_SELECTOR,
    "StatefulSet": _WORKLOAD_SELECTOR
    + (
        ("spec", "serviceName"),
        ("spec", "volumeClaimTemplates"),
        ("spec", "podManagementPolicy"),
    ),
    "Job": _WORKLOAD_SELECTOR + (("spec", "template"),),
    "PersistentVolumeClaim": (("spec", "storageClassName"), ("spec", "accessModes")),
    "Service": (("spec", "clusterIP"),),
}


@dataclass(frozen=True)
class PrunePolicy:
    """Controls what happens to owned live objects no longer desired."""

    prune: bool = False


@dataclass(frozen=True)
class Create:
    """Create an object that does not exist."""

    document: ResourceDocument

    @property
    def key(self) -> ResourceKey:
        return self.document.key


@dataclass(frozen=True)
class Update:
    """Replace an object, preconditioned on the observed resource version."""

    document: ResourceDocument
    resource_version: str

    @property
    def key(self) -> ResourceKey:
        return self.document.key


@dataclass(frozen=True)
class Delete:
    """Delete an object, preconditioned on the observed resource version."""

    key: ResourceKey
    resource_version: str | None = None
    superseded: bool = False
    """True when the object is deleted so it can be recreated with the same identity."""


@dataclass(frozen=True)
class Noop:
    """The live object already matches the desired document."""

    key: ResourceKey


SyncOperation = Create | Update | Delete | Noop


@dataclass(frozen=True)
class SyncPlan:
    """The ordered operations for one reconciliation."""

    operations: list[SyncOperation] = field(default_factory=list)
    """Operations in the order they must be applied."""

    orphans: list[ResourceKey] = field(default_factory=list)
    """Owned live objects that are not desired and were not pruned."""

    @property
    def changes(self) -> list[SyncOperation]:
        return [op for op in self.operations if not isinstance(op, Noop)]

    @property
    def drifted_keys(self) -> list[ResourceKey]:
        """Keys that differ from the desired state, including unpruned orphans."""
        keys: dict[ResourceKey, None] = {op.key: None for op in self.changes}
        keys.update({key: None for key in self.orphans})
        return list(keys)

    @property
    def in_sync(self) -> bool:
        return not self.changes and not self.orphans


def _fold_string_data(content: dict[str, Any]) -> None:
    """Secrets are returned by the server with stringData merged into data."""
    if not (string_data := content.pop("stringData", None)):
        return
    data = content.get("data") or {}
    for key, value in string_data.items():
        data[key] = base64.b64encode(str(value).encode()).decode()
    content["data"] = data


def normalize(content: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of an object without server populated fields."""
    result = copy.deepcopy(content)
    result.pop("status", None)
    metadata = result.get("metadata")
    if isinstance(metadata, dict):
        for name in SERVER_METADATA_FIELDS:
            metadata.pop(name, None)
        if annotations := metadata.get("annotations"):
            annotations.pop(LAST_APPLIED_ANNOTATION, None)
            annotations.pop(CHECKSUM_ANNOTATION, None)
            if not annotations:
                del metadata["annotations"]
    if result.get("kind") == SECRET_KIND:
        _fold_string_data(result)
    return result


def checksum(doc: ResourceDocument) -> str:
    """Return a stable digest of the normalized desired content."""
    encoded = json.dumps(normalize(doc.content), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode()).hexdigest()


def stamp(doc: ResourceDocument) -> ResourceDocument:
    """Return a copy of the document annotated with its checksum."""
    content = copy.deepcopy(doc.content)
    metadata = content["metadata"]
    metadata["annotations"] = {
        **(metadata.get("annotations") or {}),
        CHECKSUM_ANNOTATION: checksum(doc),
    }
    return ResourceDocument(content=content)


def is_subset(desired: Any, live: Any) -> bool:
    """Return True if every field set in desired has the same value in live."""
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            return False
        for key, value in desired.items():
            if value is None:
                if live.get(key) is not None:
                    return False
                continue
            if key not in live or not is_subset(value, live[key]):
                return False
        return True
    if isinstance(desired, list):
        if not isinstance(live, list) or len(desired) != len(live):
            return False
        return all(is_subset(d, v) for d, v in zip(desired, live))
    if isinstance(desired, bool) or isinstance(live, bool):
        return desired is live
    return bool(desired == live)


def _live_key(obj: dict[str, Any]) -> ResourceKey:
    try:
        return ResourceKey.from_doc(obj)
    except InputException as err:
        raise MalformedLiveObjectError(f"Malformed live object: {err}") from err


def _resource_version(key: ResourceKey, obj: dict[str, Any]) -> str:
    if not (version := (obj.get("metadata") or {}).get("resourceVersion")):
        raise MalformedLiveObjectError(f"Live object {key} has no resourceVersion")
    return str(version)


def matches(doc: ResourceDocument, live: dict[str, Any]) -> bool:
    """Return True if the live object reflects the desired document."""
    annotations = (live.get("metadata") or {}).get("annotations") or {}
    if annotations.get(CHECKSUM_ANNOTATION) != checksum(doc):
        return False
    return is_subset(normalize(doc.content), normalize(live))


def _immutable_changed(doc: ResourceDocument, live: dict[str, Any]) -> bool:
    desired = normalize(doc.content)
    current = normalize(live)
    for path in IMMUTABLE_FIELDS.get(doc.kind, ()):
        if (desired_value := lookup(desired, path)) is MISSING:
            continue
        live_value = lookup(current, path)
        if live_value is MISSING or not is_subset(desired_value, live_value):
            _LOGGER.debug("Immutable field %s of %s changed", ".".join(path), doc.key)
            return True
    if doc.kind in (CONFIG_MAP_KIND, SECRET_KIND) and current.get("immutable"):
        for name in ("data", "binaryData"):
            if desired.get(name) != current.get(name):
                _LOGGER.debug("Immutable %s of %s changed", name, doc.key)
                return True
    return False


def diff_one(doc: ResourceDocument, live: dict[str, Any] | None) -> list[SyncOperation]:
    """Return the operations for a single document given its live object.

    A change to an immutable field yields a Delete followed by a Create of
    the same identity; otherwise exactly one operation is returned.
    """
    key = doc.key
    if live is None:
        return [Create(stamp(doc))]
    if (live_key := _live_key(live)) != key:
        raise MalformedLiveObjectError(f"Live object {live_key} does not match {key}")
    resource_version = _resource_version(key, live)
    if matches(doc, live):
        return [Noop(key)]
    if _immutable_changed(doc, live):
        return [
            Delete(key, resource_version, superseded=True),
            Create(stamp(doc)),
        ]
    return [Update(stamp(doc), resource_version)]


def diff(desired: DesiredSet, live: LiveSnapshot, policy: PrunePolicy) -> SyncPlan:
    """Compare the desired set to the live snapshot.

    Creates and updates follow the order of the desired set. Deletes of
    objects no longer desired come after all of them, in reverse apply order.
    """
    live_objects: dict[ResourceKey, dict[str, Any]] = {}
    for obj in live.objects:
        key = _live_key(obj)
        if key in live_objects:
            raise MalformedLiveObjectError(f"Duplicate live object {key}")
        live_objects[key] = obj

    operations: list[SyncOperation] = []
    desired_keys: set[ResourceKey] = set()
    for doc in desired:
        desired_keys.add(doc.key)
        operations.extend(diff_one(doc, live_objects.get(doc.key)))

    orphans: list[ResourceKey] = []
    orphan_keys = [
        key
        for key, obj in live_objects.items()
        if key not in desired_keys and live.owns(obj)
    ]
    for key in sort_keys(orphan_keys, reverse=True):
        if policy.prune:
            operations.append(Delete(key, _resource_version(key, live_objects[key])))
        else:
            _LOGGER.debug("Live object %s is not desired and prune is disabled", key)
            orphans.append(key)

    plan = SyncPlan(operations=operations, orphans=orphans)
    _LOGGER.debug(
        "Diff produced %d operations (%d changes, %d orphans)",
        len(plan.operations),
        len(plan.changes),
        len(plan.orphans),
    )
    return plan


def _dump(content: dict[str, Any] | None) -> list[str]:
    if content is None:
        return []
    text = yaml.dump(
        normalize(redact_secret(content)), sort_keys=False, default_flow_style=False
    )
    return text.splitlines()


def unified_diff(
    key: ResourceKey,
    desired: dict[str, Any] | None,
    live: dict[str, Any] | None,
    n: int = 3,
    limit_bytes: int = 0,
) -> Generator[str, None, None]:
    """Generate a unified diff from the live object to the desired document."""
    diff_text = difflib.unified_diff(
        a=_dump(live),
        b=_dump(desired),
        fromfile=f"live {key}",
        tofile=f"desired {key}",
        n=n,
        lineterm="",
    )
    size = 0
    for line in diff_text:
        size += len(line)
        if limit_bytes and size > limit_bytes:
            yield _TRUNCATE
            break
        yield line


def describe(operations: Sequence[SyncOperation]) -> list[str]:
    """Return one line per operation for logs and the command line."""
    lines = []
    for op in operations:
        if isinstance(op, Delete):
            suffix = " (superseded)" if op.superseded else ""
            lines.append(f"delete {op.key}{suffix}")
        else:
            lines.append(f"{type(op).__name__.lower()} {op.key}")
    return lines
