"""Module for finding references between resource documents.

A document depends on its namespace and on the objects its pod spec mounts
or references. An ingress depends on its backend services and TLS secrets.
When one of these fails to apply, the documents that depend on it are not
attempted.
"""

from collections.abc import Generator
from typing import Any

from .manifest import (
    CONFIG_MAP_KIND,
    CORE_API_VERSION,
    INGRESS_KIND,
    NAMESPACE_KIND,
    PVC_KIND,
    SECRET_KIND,
    SERVICE_ACCOUNT_KIND,
    SERVICE_KIND,
    ResourceDocument,
    ResourceKey,
)

__all__ = [
    "resource_dependencies",
]


def _pod_spec(doc: ResourceDocument) -> dict[str, Any] | None:
    spec = doc.spec or {}
    if doc.kind == "Pod":
        return spec
    if doc.kind == "CronJob":
        spec = (spec.get("jobTemplate") or {}).get("spec") or {}
    template = spec.get("template") or {}
    return template.get("spec")


def _pod_references(pod_spec: dict[str, Any]) -> Generator[tuple[str, str], None, None]:
    """Yield (kind, name) of objects referenced from a pod spec."""
    if name := pod_spec.get("serviceAccountName"):
        yield SERVICE_ACCOUNT_KIND, name
    for pull_secret in pod_spec.get("imagePullSecrets") or ():
        if name := pull_secret.get("name"):
            yield SECRET_KIND, name

    for volume in pod_spec.get("volumes") or ():
        if (secret := volume.get("secret")) and not secret.get("optional"):
            if name := secret.get("secretName"):
                yield SECRET_KIND, name
        if (config_map := volume.get("configMap")) and not config_map.get("optional"):
            if name := config_map.get("name"):
                yield CONFIG_MAP_KIND, name
        if claim := volume.get("persistentVolumeClaim"):
            if name := claim.get("claimName"):
                yield PVC_KIND, name
        for source in (volume.get("projected") or {}).get("sources") or ():
            for field_name, kind in (("secret", SECRET_KIND), ("configMap", CONFIG_MAP_KIND)):
                if (ref := source.get(field_name)) and not ref.get("optional"):
                    if name := ref.get("name"):
                        yield kind, name

    containers = list(pod_spec.get("initContainers") or ()) + list(
        pod_spec.get("containers") or ()
    )
    for container in containers:
        for env in container.get("env") or ():
            value_from = env.get("valueFrom") or {}
            for field_name, kind in (
                ("secretKeyRef", SECRET_KIND),
                ("configMapKeyRef", CONFIG_MAP_KIND),
            ):
                if (ref := value_from.get(field_name)) and not ref.get("optional"):
                    if name := ref.get("name"):
                        yield kind, name
        for env_from in container.get("envFrom") or ():
            for field_name, kind in (
                ("secretRef", SECRET_KIND),
                ("configMapRef", CONFIG_MAP_KIND),
            ):
                if (ref := env_from.get(field_name)) and not ref.get("optional"):
                    if name := ref.get("name"):
                        yield kind, name


def _ingress_references(spec: dict[str, Any]) -> Generator[tuple[str, str], None, None]:
    backends = []
    if default_backend := spec.get("defaultBackend"):
        backends.append(default_backend)
    for rule in spec.get("rules") or ():
        for path in (rule.get("http") or {}).get("paths") or ():
            if backend := path.get("backend"):
                backends.append(backend)
    for backend in backends:
        if name := (backend.get("service") or {}).get("name"):
            yield SERVICE_KIND, name
    for tls in spec.get("tls") or ():
        if name := tls.get("secretName"):
            yield SECRET_KIND, name


def resource_dependencies(doc: ResourceDocument) -> list[ResourceKey]:
    """Return the keys of objects that must exist before this document."""
    results: dict[ResourceKey, None] = {}
    namespace = doc.namespace
    if namespace:
        results[ResourceKey(CORE_API_VERSION, NAMESPACE_KIND, None, namespace)] = None

    references: list[tuple[str, str]] = []
    if (pod_spec := _pod_spec(doc)) is not None:
        references.extend(_pod_references(pod_spec))
    if doc.kind == INGRESS_KIND:
        references.extend(_ingress_references(doc.spec or {}))

    for kind, name in references:
        results[ResourceKey(CORE_API_VERSION, kind, namespace, name)] = None
    return list(results)
