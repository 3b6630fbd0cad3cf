"""The chart-sync command line tool.

Subcommands render a chart, diff it against live objects, or run the
reconciliation controllers for every release in a configuration file.
"""

import argparse
import asyncio
import logging
import sys
import traceback
from typing import Any

import yaml

from chart_sync.exceptions import SyncException
from . import diff, render, run

_LOGGER = logging.getLogger(__name__)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def _make_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chart-sync",
        description="Keep the releases of a chart in sync with a cluster.",
    )
    parser.add_argument("--log-level", choices=LOG_LEVELS)
    subparsers = parser.add_subparsers(dest="command", help="Command", required=True)
    for action in (render.RenderAction, diff.DiffAction, run.RunAction):
        action.register(subparsers)
    return parser


def _block_str_presenter(dumper: yaml.Dumper, data: str) -> Any:
    """Dump multi-line strings such as embedded config files as literal blocks."""
    style = "|" if "\n" in data else None
    return dumper.represent_scalar("tag:yaml.org,2002:str", data, style=style)


def main() -> None:
    """Chart-sync command line tool main entry point."""
    yaml.add_representer(str, _block_str_presenter)

    args = _make_parser().parse_args()
    if args.log_level:
        logging.basicConfig(level=args.log_level)

    action = args.cls()
    try:
        asyncio.run(action.run(**vars(args)))
    except SyncException as err:
        if args.log_level == "DEBUG":
            traceback.print_exc(file=sys.stderr)
        print("chart-sync error: ", err, file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        _LOGGER.info("Interrupted, stopping")


if __name__ == "__main__":
    main()
