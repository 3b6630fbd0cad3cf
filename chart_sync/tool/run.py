"""Chart-sync run action."""

from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import asyncio
import logging
import pathlib
import sys
from typing import cast

import yaml

from chart_sync.cluster import KubectlClient
from chart_sync.config import read_config
from chart_sync.controller import ControllerManager
from chart_sync.exceptions import InputException
from chart_sync.manifest import ReleaseRef
from chart_sync.source import GitSource
from chart_sync.store import (
    InMemoryReleaseStore,
    ReleaseState,
    StatusWriter,
    StoreEvent,
    write_status,
)
from chart_sync.task import get_task_service

_LOGGER = logging.getLogger(__name__)


class RunAction:
    """Chart-sync run action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "run",
                help="Reconcile the releases in a configuration file",
                description="""Watches the git repository in the configuration
                    and keeps each release in the cluster in sync with it,
                    or syncs every release a single time with --once.""",
            ),
        )
        args.add_argument(
            "--config",
            type=pathlib.Path,
            required=True,
            help="Path to the chart-sync configuration file",
        )
        args.add_argument(
            "--once",
            type=bool,
            action=BooleanOptionalAction,
            default=False,
            help="Sync every release once and exit",
        )
        args.add_argument(
            "--status-file",
            type=pathlib.Path,
            default=None,
            help="Write release status reports to this YAML file",
        )
        args.add_argument(
            "--kube-context",
            type=str,
            default=None,
            help="Kubernetes context to use",
        )
        args.add_argument(
            "--kubeconfig",
            type=pathlib.Path,
            default=None,
            help="Path to the kubeconfig file",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        config: pathlib.Path,
        once: bool,
        status_file: pathlib.Path | None,
        kube_context: str | None,
        kubeconfig: pathlib.Path | None,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        sync_config = await read_config(config)
        if not sync_config.releases:
            raise InputException(f"No releases configured in {config}")
        if not sync_config.repository:
            raise InputException(f"No repository configured in {config}")

        source = GitSource.open(
            sync_config.repository,
            sync_config.releases,
            ref=sync_config.ref,
            poll_interval=sync_config.poll_interval_seconds,
        )
        cluster = KubectlClient(
            context=kube_context,
            kubeconfig=kubeconfig,
            timeout=sync_config.controller.per_operation_timeout_seconds,
        )
        store = InMemoryReleaseStore()
        manager = ControllerManager(
            [spec.ref for spec in sync_config.releases],
            source,
            cluster,
            store,
            sync_config.controller,
        )

        if once:
            await manager.sync_all()
            reports = manager.reports()
            if status_file:
                await write_status(status_file, reports)
            print(
                yaml.dump(
                    {"releases": [report.to_dict() for report in reports]},
                    sort_keys=False,
                    explicit_start=True,
                ),
                end="",
            )
            if manager.has_failed_releases():
                sys.exit(1)
            return

        if status_file:
            task_service = get_task_service()
            writer = StatusWriter(status_file)

            def publish(release: ReleaseRef, state: ReleaseState) -> None:
                task_service.create_task(writer.write(store.reports()))

            store.add_listener(StoreEvent.STATE_UPDATED, publish)

        await manager.start()
        try:
            await asyncio.Event().wait()
        finally:
            await manager.stop()
