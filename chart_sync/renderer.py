"""Module for rendering templates into an ordered set of resource documents.

Rendering is a pure function of the templates, the value layers and the
release identity. The output order is derived from a fixed precedence table
keyed by kind, so reordering template files never changes the apply order.
"""

from collections.abc import Iterable, Sequence
import logging
from typing import Any

from .exceptions import InvalidTemplateError, InputException
from .manifest import (
    CLUSTER_SCOPED_KINDS,
    MANAGED_BY,
    MANAGED_BY_LABEL,
    TRACKING_LABEL,
    DesiredSet,
    ReleaseRef,
    ResourceDocument,
    ResourceKey,
)
from .template import RenderContext, Template
from .values import ValueLayer, merge_layers

__all__ = [
    "render",
    "apply_order",
    "sort_documents",
]

_LOGGER = logging.getLogger(__name__)


# Kinds in the order they must be applied. Kinds not listed are applied last.
KIND_ORDER: list[tuple[str, ...]] = [
    ("Namespace",),
    ("ServiceAccount", "ClusterRole", "Role", "ClusterRoleBinding", "RoleBinding"),
    ("Secret", "ConfigMap"),
    ("PersistentVolume", "PersistentVolumeClaim"),
    ("StatefulSet",),
    ("Deployment", "DaemonSet", "ReplicaSet", "Job", "CronJob", "Pod"),
    ("Service",),
    ("Ingress",),
]

_KIND_RANK: dict[str, int] = {
    kind: rank for rank, kinds in enumerate(KIND_ORDER) for kind in kinds
}


def apply_order(kind: str) -> int:
    """Return the precedence rank of a kind, lower is applied first."""
    return _KIND_RANK.get(kind, len(KIND_ORDER))


def _sort_key(key: ResourceKey) -> tuple[int, str, str, str, str]:
    return (
        apply_order(key.kind),
        key.namespace or "",
        key.name,
        key.kind,
        key.api_version,
    )


def sort_documents(documents: Iterable[ResourceDocument]) -> list[ResourceDocument]:
    """Return documents in a stable apply order."""
    return sorted(documents, key=lambda doc: _sort_key(doc.key))


def sort_keys(keys: Iterable[ResourceKey], reverse: bool = False) -> list[ResourceKey]:
    """Return keys in apply order, or reverse apply order for deletes."""
    return sorted(keys, key=_sort_key, reverse=reverse)


def _finalize(
    template: Template, content: dict[str, Any], release: ReleaseRef
) -> ResourceDocument:
    """Place the document in the release namespace and add tracking labels."""
    try:
        key = ResourceKey.from_doc(content)
    except InputException as err:
        raise InvalidTemplateError(template.name, str(err)) from err
    metadata = content["metadata"]
    if key.kind in CLUSTER_SCOPED_KINDS:
        metadata.pop("namespace", None)
    elif not metadata.get("namespace"):
        metadata["namespace"] = release.namespace
    labels = metadata.get("labels") or {}
    if not isinstance(labels, dict):
        raise InvalidTemplateError(template.name, f"labels of {key} must be a mapping")
    metadata["labels"] = {
        **labels,
        TRACKING_LABEL: release.tracking_value,
        MANAGED_BY_LABEL: MANAGED_BY,
    }
    return ResourceDocument(content=content)


def render(
    templates: Iterable[Template],
    layers: Sequence[ValueLayer],
    release: ReleaseRef,
    chart: dict[str, Any] | None = None,
) -> DesiredSet:
    """Render templates against layered values into an ordered DesiredSet.

    Raises a RenderError if any template can't be rendered; no partial
    output is ever returned.
    """
    values = merge_layers(layers)
    context = RenderContext(values=values, release=release, chart=chart or {})

    documents: dict[ResourceKey, ResourceDocument] = {}
    for template in sorted(templates, key=lambda t: t.name):
        rendered = template.expand(context)
        _LOGGER.debug("Template %s rendered %d documents", template.name, len(rendered))
        for content in rendered:
            doc = _finalize(template, content, release)
            if doc.key in documents:
                raise InvalidTemplateError(
                    template.name, f"duplicate resource {doc.key}"
                )
            documents[doc.key] = doc

    desired = DesiredSet(documents=sort_documents(documents.values()))
    _LOGGER.info("Rendered %d documents for release %s", len(desired), release)
    return desired
