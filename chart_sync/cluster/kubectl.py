"""A cluster client that shells out to kubectl."""

from collections.abc import Iterable
import json
import logging
from pathlib import Path
from typing import Any

from chart_sync import command
from chart_sync.exceptions import (
    ClusterException,
    CommandException,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnavailableError,
)
from chart_sync.manifest import ResourceKey

from .client import ClusterClient

__all__ = [
    "KubectlClient",
]

_LOGGER = logging.getLogger(__name__)

KUBECTL_BIN = "kubectl"

# Reasons printed by kubectl as `Error from server (<Reason>): ...`
_ERROR_REASONS: list[tuple[str, type[ClusterException]]] = [
    ("(AlreadyExists)", ConflictError),
    ("(Conflict)", ConflictError),
    ("(NotFound)", NotFoundError),
    ("(Forbidden)", ForbiddenError),
]


def _map_error(err: CommandException) -> ClusterException:
    message = str(err)
    for marker, exc in _ERROR_REASONS:
        if marker in message:
            return exc(message)
    return UnavailableError(message)


def resource_type(api_version: str, kind: str) -> str:
    """Return the kubectl resource type for an apiVersion and kind."""
    if "/" in api_version:
        group = api_version.split("/")[0]
        return f"{kind.lower()}.{group}"
    return kind.lower()


class KubectlClient(ClusterClient):
    """Cluster client backed by the kubectl command."""

    def __init__(
        self,
        context: str | None = None,
        kubeconfig: Path | None = None,
        timeout: float = 30.0,
    ) -> None:
        """Initialize KubectlClient."""
        self._context = context
        self._kubeconfig = kubeconfig
        self._timeout = timeout

    def _command(self, args: list[str]) -> command.Command:
        cmd = [KUBECTL_BIN]
        if self._context:
            cmd.extend(["--context", self._context])
        if self._kubeconfig:
            cmd.extend(["--kubeconfig", str(self._kubeconfig)])
        return command.Command(cmd + args, timeout=self._timeout)

    async def _run(self, args: list[str], stdin: str | None = None) -> str:
        try:
            return await command.run(self._command(args), stdin=stdin)
        except CommandException as err:
            raise _map_error(err) from err

    async def _run_json(self, args: list[str], stdin: str | None = None) -> Any:
        out = await self._run(args, stdin=stdin)
        if not out.strip():
            return None
        try:
            return json.loads(out)
        except json.JSONDecodeError as err:
            raise UnavailableError(f"Unable to parse kubectl output: {err}") from err

    @staticmethod
    def _target(key: ResourceKey) -> list[str]:
        args = [resource_type(key.api_version, key.kind), key.name]
        if key.namespace:
            args.extend(["--namespace", key.namespace])
        return args

    async def get(self, key: ResourceKey) -> dict[str, Any] | None:
        result = await self._run_json(
            ["get", *self._target(key), "--ignore-not-found", "-o", "json"]
        )
        return result if isinstance(result, dict) else None

    async def list(
        self, selector: dict[str, str], kinds: Iterable[str] | None = None
    ) -> list[dict[str, Any]]:
        types = ",".join(sorted({kind.lower() for kind in kinds or ()})) or "all"
        label_selector = ",".join(f"{name}={value}" for name, value in selector.items())
        result = await self._run_json(
            ["get", types, "--all-namespaces", "-l", label_selector, "-o", "json"]
        )
        if not isinstance(result, dict):
            return []
        items = result.get("items") or []
        _LOGGER.debug("Listed %d objects matching %s", len(items), label_selector)
        return list(items)

    async def create(self, content: dict[str, Any]) -> dict[str, Any]:
        result = await self._run_json(
            ["create", "-f", "-", "-o", "json"], stdin=json.dumps(content)
        )
        return result or content

    async def update(
        self, content: dict[str, Any], resource_version: str
    ) -> dict[str, Any]:
        # The server rejects a replace whose resourceVersion is stale
        body = {
            **content,
            "metadata": {**content["metadata"], "resourceVersion": resource_version},
        }
        result = await self._run_json(
            ["replace", "-f", "-", "-o", "json"], stdin=json.dumps(body)
        )
        return result or body

    async def delete(self, key: ResourceKey, resource_version: str | None) -> None:
        if resource_version is not None:
            # TODO: Send a DeleteOptions precondition once the client talks to the API directly
            current = await self.get(key)
            if current is None:
                raise NotFoundError(f"{key} not found")
            if current["metadata"].get("resourceVersion") != resource_version:
                raise ConflictError(f"{key} has been modified")
        # Finalizers keep an object terminating; a create of the same name must
        # wait until it is gone
        await self._run(
            ["delete", *self._target(key), "--wait=true", f"--timeout={self._timeout:g}s"]
        )
