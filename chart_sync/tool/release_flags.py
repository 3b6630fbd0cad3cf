"""Shared command line flags for selecting a chart and its values."""

from argparse import ArgumentParser
import logging
import pathlib

from chart_sync.chart import load_chart
from chart_sync.manifest import DesiredSet, ReleaseRef
from chart_sync.renderer import render
from chart_sync.values import ValueLayer, override_layer, read_layer

_LOGGER = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"


def add_release_flags(args: ArgumentParser) -> None:
    """Add flags for the chart, release identity and values layers."""
    args.add_argument(
        "chart", type=pathlib.Path, help="Path to the chart directory"
    )
    args.add_argument(
        "--release-name",
        type=str,
        default=None,
        help="Name of the release, defaults to the chart name",
    )
    args.add_argument(
        "--namespace",
        "-n",
        type=str,
        default=DEFAULT_NAMESPACE,
        help="Namespace of the release",
    )
    args.add_argument(
        "--values",
        "-f",
        type=pathlib.Path,
        action="append",
        default=[],
        help="Values file layered over the chart defaults, may be repeated",
    )
    args.add_argument(
        "--set",
        type=str,
        action="append",
        default=[],
        help="Override a value with path.to.key=value, may be repeated",
    )


async def build_desired(
    chart: pathlib.Path,
    release_name: str | None,
    namespace: str,
    values: list[pathlib.Path],
    set: list[str],  # pylint: disable=redefined-builtin
) -> tuple[ReleaseRef, DesiredSet]:
    """Load the chart and render it with the layers from the flags."""
    loaded = await load_chart(chart)
    release = ReleaseRef(
        namespace=namespace, name=release_name or loaded.metadata.name
    )
    layers: list[ValueLayer] = [loaded.defaults]
    for values_path in values:
        layers.append(await read_layer(values_path))
    if set:
        layers.append(override_layer(set))
    _LOGGER.debug(
        "Rendering %s with layers %s", release, [layer.name for layer in layers]
    )
    desired = render(
        loaded.templates, layers, release, loaded.metadata.context()
    )
    return release, desired
