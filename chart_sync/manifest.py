"""Representation of rendered and live kubernetes resources.

A `ResourceDocument` is a fully rendered manifest identified by a
`ResourceKey`. A `DesiredSet` is the ordered output of one render pass and
is what the differ compares against a `LiveSnapshot` of the cluster.
"""

import base64
from collections.abc import Iterator
import copy
from dataclasses import dataclass, field
import logging
from typing import Any

import yaml
from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "ResourceKey",
    "ReleaseRef",
    "ResourceDocument",
    "DesiredSet",
    "LiveSnapshot",
]

_LOGGER = logging.getLogger(__name__)


NAMESPACE_KIND = "Namespace"
SECRET_KIND = "Secret"
CONFIG_MAP_KIND = "ConfigMap"
SERVICE_ACCOUNT_KIND = "ServiceAccount"
PVC_KIND = "PersistentVolumeClaim"
SERVICE_KIND = "Service"
INGRESS_KIND = "Ingress"
CORE_API_VERSION = "v1"

CLUSTER_SCOPED_KINDS = frozenset(
    {
        NAMESPACE_KIND,
        "ClusterRole",
        "ClusterRoleBinding",
        "PersistentVolume",
        "StorageClass",
        "CustomResourceDefinition",
        "PriorityClass",
    }
)

# Labels used to find live objects owned by a release
TRACKING_LABEL = "chart-sync.io/release"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY = "chart-sync"

VALUE_PLACEHOLDER_TEMPLATE = "..PLACEHOLDER_{name}.."


class BaseModel(DataClassDictMixin):
    """Base class for serializable objects."""

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Identity of a kubernetes resource."""

    api_version: str
    kind: str
    namespace: str | None
    name: str

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "ResourceKey":
        """Build the identity key for a raw kubernetes object."""
        if not isinstance(doc, dict):
            raise InputException(f"Invalid object, expected a mapping: {doc!r}")
        if not (api_version := doc.get("apiVersion")):
            raise InputException(f"Invalid object missing apiVersion: {doc}")
        if not (kind := doc.get("kind")):
            raise InputException(f"Invalid object missing kind: {doc}")
        if not isinstance(metadata := doc.get("metadata"), dict):
            raise InputException(f"Invalid object missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid object missing metadata.name: {doc}")
        return cls(
            api_version=str(api_version),
            kind=str(kind),
            namespace=metadata.get("namespace") or None,
            name=str(name),
        )

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


@dataclass(frozen=True, order=True)
class ReleaseRef:
    """Identifier for a release, unique per (namespace, name)."""

    namespace: str
    name: str

    @property
    def tracking_value(self) -> str:
        """Value of the tracking label placed on every owned object."""
        return f"{self.namespace}.{self.name}"

    @property
    def selector(self) -> dict[str, str]:
        """Label selector matching live objects owned by this release."""
        return {TRACKING_LABEL: self.tracking_value}

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ResourceDocument(BaseModel):
    """A fully rendered kubernetes manifest."""

    content: dict[str, Any]
    """The complete manifest including apiVersion, kind and metadata."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ResourceDocument":
        """Parse a document, validating it carries a complete identity."""
        ResourceKey.from_doc(doc)
        return cls(content=doc)

    @property
    def key(self) -> ResourceKey:
        return ResourceKey.from_doc(self.content)

    @property
    def api_version(self) -> str:
        return str(self.content["apiVersion"])

    @property
    def kind(self) -> str:
        return str(self.content["kind"])

    @property
    def name(self) -> str:
        return str(self.content["metadata"]["name"])

    @property
    def namespace(self) -> str | None:
        return self.content["metadata"].get("namespace") or None

    @property
    def labels(self) -> dict[str, str]:
        return dict(self.content["metadata"].get("labels") or {})

    @property
    def annotations(self) -> dict[str, str]:
        return dict(self.content["metadata"].get("annotations") or {})

    @property
    def spec(self) -> dict[str, Any] | None:
        return self.content.get("spec")

    def redacted(self) -> dict[str, Any]:
        """Return a copy of the content with secret values replaced."""
        return redact_secret(self.content)


def redact_secret(content: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of an object safe for display, wiping any Secret values."""
    result = copy.deepcopy(content)
    if result.get("kind") != SECRET_KIND:
        return result
    if data := result.get("data"):
        for key in data:
            data[key] = base64.b64encode(
                VALUE_PLACEHOLDER_TEMPLATE.format(name=key).encode()
            ).decode()
    if string_data := result.get("stringData"):
        for key in string_data:
            string_data[key] = VALUE_PLACEHOLDER_TEMPLATE.format(name=key)
    return result


@dataclass(frozen=True)
class DesiredSet(BaseModel):
    """The complete ordered output of one render pass."""

    documents: list[ResourceDocument] = field(default_factory=list)

    def __iter__(self) -> Iterator[ResourceDocument]:
        return iter(self.documents)

    def __len__(self) -> int:
        return len(self.documents)

    def keys(self) -> list[ResourceKey]:
        """Return the identity keys in apply order."""
        return [doc.key for doc in self.documents]

    def get(self, key: ResourceKey) -> ResourceDocument | None:
        for doc in self.documents:
            if doc.key == key:
                return doc
        return None

    def yaml(self, redact: bool = True) -> str:
        """Serialize as a multi-document YAML stream in apply order."""
        docs = [doc.redacted() if redact else doc.content for doc in self.documents]
        if not docs:
            return ""
        return yaml.dump_all(
            docs, sort_keys=False, explicit_start=True, default_flow_style=False
        )


@dataclass(frozen=True)
class LiveSnapshot:
    """Objects read from the cluster for a single reconciliation cycle.

    A snapshot is never reused across cycles.
    """

    objects: list[dict[str, Any]] = field(default_factory=list)
    """Raw live objects as returned by the cluster API."""

    owner: str | None = None
    """Tracking label value of the release; only objects carrying it are pruned."""

    def owns(self, obj: dict[str, Any]) -> bool:
        """Return True if the live object belongs to the release."""
        if self.owner is None:
            return True
        labels = (obj.get("metadata") or {}).get("labels") or {}
        return bool(labels.get(TRACKING_LABEL) == self.owner)


def parse_documents(content: str) -> list[dict[str, Any]]:
    """Parse a multi-document YAML stream, skipping empty documents."""
    try:
        docs = list(yaml.load_all(content, Loader=yaml.SafeLoader))
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse YAML: {err}") from err
    results = []
    for doc in docs:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise InputException(f"Expected a YAML mapping, found {type(doc).__name__}")
        results.append(doc)
    _LOGGER.debug("Parsed %d documents", len(results))
    return results
