"""Chart-sync diff action."""

from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import logging
import pathlib
from typing import Any, cast

import aiofiles

from chart_sync.cluster import KubectlClient
from chart_sync.differ import (
    Create,
    Delete,
    PrunePolicy,
    SyncPlan,
    Update,
    describe,
    diff,
    unified_diff,
)
from chart_sync.exceptions import InputException
from chart_sync.manifest import (
    DesiredSet,
    LiveSnapshot,
    ReleaseRef,
    ResourceKey,
    parse_documents,
)

from .release_flags import add_release_flags, build_desired

_LOGGER = logging.getLogger(__name__)


async def read_live(path: pathlib.Path) -> list[dict[str, Any]]:
    """Read live objects from a YAML file, expanding `List` objects."""
    try:
        async with aiofiles.open(str(path)) as live_file:
            content = await live_file.read()
    except FileNotFoundError as err:
        raise InputException(f"Live objects file {path} does not exist") from err
    objects: list[dict[str, Any]] = []
    for doc in parse_documents(content):
        if doc.get("kind") == "List":
            objects.extend(doc.get("items") or [])
        else:
            objects.append(doc)
    return objects


def _diff_lines(
    plan: SyncPlan,
    live: list[dict[str, Any]],
    unified: int,
    limit_bytes: int,
) -> list[str]:
    live_objects: dict[ResourceKey, dict[str, Any]] = {}
    for obj in live:
        live_objects[ResourceKey.from_doc(obj)] = obj
    lines: list[str] = []
    for op in plan.changes:
        if isinstance(op, Create):
            lines.extend(
                unified_diff(op.key, op.document.content, None, unified, limit_bytes)
            )
        elif isinstance(op, Update):
            lines.extend(
                unified_diff(
                    op.key,
                    op.document.content,
                    live_objects.get(op.key),
                    unified,
                    limit_bytes,
                )
            )
        elif isinstance(op, Delete) and not op.superseded:
            lines.extend(
                unified_diff(op.key, None, live_objects.get(op.key), unified, limit_bytes)
            )
    return lines


class DiffAction:
    """Chart-sync diff action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "diff",
                help="Compare a rendered chart with live objects",
                description="""Renders the chart and compares it with the live
                    objects of the release, read from a file or from the
                    cluster, printing the operations a sync would perform.""",
            ),
        )
        add_release_flags(args)
        args.add_argument(
            "--live",
            type=pathlib.Path,
            default=None,
            help="YAML file of live objects, otherwise objects are read with kubectl",
        )
        args.add_argument(
            "--kube-context",
            type=str,
            default=None,
            help="Kubernetes context used when reading live objects from the cluster",
        )
        args.add_argument(
            "--prune",
            type=bool,
            action=BooleanOptionalAction,
            default=False,
            help="Delete owned objects that are no longer rendered",
        )
        args.add_argument(
            "--output",
            "-o",
            choices=["diff", "plan"],
            default="diff",
            help="Output format of the command",
        )
        args.add_argument(
            "--unified",
            "-u",
            type=int,
            default=3,
            help="output NUM (default 3) lines of unified context",
        )
        args.add_argument(
            "--limit-bytes",
            help="Maximum bytes for each diff output (0=unlimited)",
            type=int,
            default=0,
        )
        args.add_argument(
            "--output-file",
            type=str,
            default="/dev/stdout",
            help="Output file for the results of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def _live(
        self,
        release: ReleaseRef,
        desired: DesiredSet,
        live: pathlib.Path | None,
        kube_context: str | None,
    ) -> list[dict[str, Any]]:
        if live is not None:
            return await read_live(live)
        client = KubectlClient(context=kube_context)
        kinds = {doc.kind for doc in desired}
        return await client.list(release.selector, sorted(kinds))

    async def run(  # type: ignore[no-untyped-def]
        self,
        chart: pathlib.Path,
        release_name: str | None,
        namespace: str,
        values: list[pathlib.Path],
        set: list[str],  # pylint: disable=redefined-builtin
        live: pathlib.Path | None,
        kube_context: str | None,
        prune: bool,
        output: str,
        unified: int,
        limit_bytes: int,
        output_file: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        release, desired = await build_desired(
            chart, release_name, namespace, values, set
        )
        live_objects = await self._live(release, desired, live, kube_context)
        snapshot = LiveSnapshot(objects=live_objects, owner=release.tracking_value)
        plan = diff(desired, snapshot, PrunePolicy(prune=prune))

        _LOGGER.debug("Diffing content")
        with open(output_file, "w") as file:
            if output == "plan":
                for line in describe(plan.changes):
                    print(line, file=file)
                for key in plan.orphans:
                    print(f"orphan {key}", file=file)
                return
            for line in _diff_lines(plan, live_objects, unified, limit_bytes):
                print(line, file=file)
