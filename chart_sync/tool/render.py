"""Chart-sync render action."""

from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import logging
import pathlib
from typing import cast

from .release_flags import add_release_flags, build_desired

_LOGGER = logging.getLogger(__name__)


class RenderAction:
    """Chart-sync render action."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "render",
                help="Render a chart into the documents that would be applied",
                description="""Renders the chart templates against the chart
                    defaults, values files and overrides. Documents are printed
                    in the order they are applied.""",
            ),
        )
        add_release_flags(args)
        args.add_argument(
            "--show-secrets",
            type=bool,
            action=BooleanOptionalAction,
            default=False,
            help="Print secret values instead of placeholders",
        )
        args.add_argument(
            "--output-file",
            type=str,
            default="/dev/stdout",
            help="Output file for the results of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        chart: pathlib.Path,
        release_name: str | None,
        namespace: str,
        values: list[pathlib.Path],
        set: list[str],  # pylint: disable=redefined-builtin
        show_secrets: bool,
        output_file: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        _, desired = await build_desired(chart, release_name, namespace, values, set)
        with open(output_file, "w") as file:
            print(desired.yaml(redact=not show_secrets), file=file, end="")
