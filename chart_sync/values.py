"""Module for working with layered chart values.

Values are supplied as an ordered list of layers (chart defaults, environment
overlays, command line overrides). Later layers take precedence. Maps merge
key by key while scalars and lists replace the whole subtree, matching how
Helm merges values.
"""

import copy
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
import logging
from pathlib import Path
import re
from typing import Any

import aiofiles
import yaml

from .exceptions import InputException

__all__ = [
    "ValueLayer",
    "merge_values",
    "merge_layers",
    "split_path",
    "lookup",
    "override_layer",
    "read_layer",
]

_LOGGER = logging.getLogger(__name__)


class _Missing:
    """Sentinel for a value path that does not resolve."""

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


@dataclass(frozen=True)
class ValueLayer:
    """A named mapping of values at one precedence level."""

    name: str
    """Where the layer came from e.g. a file name or `overrides`."""

    values: dict[str, Any] = field(default_factory=dict)
    """The values in this layer."""


def merge_values(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge two dictionaries, similar to how Helm merges values.

    Maps are merged key-wise, lists and scalars are replaced entirely and a
    `None` override removes the key.
    """
    result = base.copy()
    for key, override_value in override.items():
        if override_value is None:
            result.pop(key, None)
            continue
        base_value = result.get(key)
        if isinstance(base_value, dict) and isinstance(override_value, dict):
            result[key] = merge_values(base_value, override_value)
        else:
            result[key] = override_value
    return result


def merge_layers(layers: Iterable[ValueLayer]) -> dict[str, Any]:
    """Resolve an ordered set of layers into a single values tree."""
    values: dict[str, Any] = {}
    for layer in layers:
        _LOGGER.debug("Merging values layer %s", layer.name)
        values = merge_values(values, copy.deepcopy(layer.values))
    return values


def split_path(path: str) -> list[str]:
    """Split a dotted key path, where `\\.` escapes a literal dot."""
    raw_parts = re.split(r"(?<!\\)\.", path)
    return [re.sub(r"\\(.)", r"\1", raw_part) for raw_part in raw_parts]


def lookup(values: Any, parts: Sequence[str]) -> Any:
    """Return the value at the key path or MISSING if it does not resolve."""
    current = values
    for part in parts:
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def _set_path(values: dict[str, Any], path: str, value: Any) -> None:
    parts = split_path(path)
    if not all(parts):
        raise InputException(f"Invalid value path '{path}'")
    inner_values = values
    for part in parts[:-1]:
        if part not in inner_values:
            inner_values[part] = {}
        elif not isinstance(inner_values[part], dict):
            raise InputException(
                f"Expected '{path}' values to be a dict at '{part}', found {type(inner_values[part]).__name__}"
            )
        inner_values = inner_values[part]
    inner_values[parts[-1]] = value


def override_layer(expressions: Iterable[str], name: str = "overrides") -> ValueLayer:
    """Build a layer from `path.to.key=value` expressions.

    The value is parsed as a YAML scalar so `replicaCount=3` yields an int
    and `ingress.enabled=false` a bool.
    """
    values: dict[str, Any] = {}
    for expression in expressions:
        path, sep, raw = expression.partition("=")
        if not sep or not path:
            raise InputException(
                f"Invalid override '{expression}', expected path=value"
            )
        try:
            value = yaml.load(raw, Loader=yaml.SafeLoader) if raw else ""
        except yaml.YAMLError as err:
            raise InputException(f"Invalid override value '{raw}': {err}") from err
        _set_path(values, path, value)
    return ValueLayer(name=name, values=values)


def parse_layer(name: str, content: str) -> ValueLayer:
    """Parse the YAML content of a values file into a layer."""
    try:
        obj = yaml.load(content, Loader=yaml.SafeLoader)
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse values '{name}': {err}") from err
    # Handle empty YAML file case
    if obj is None:
        obj = {}
    if not isinstance(obj, dict):
        raise InputException(
            f"Expected values '{name}' to be a mapping, found {type(obj).__name__}"
        )
    return ValueLayer(name=name, values=obj)


async def read_layer(path: Path) -> ValueLayer:
    """Read a values file from disk."""
    try:
        async with aiofiles.open(str(path)) as values_file:
            content = await values_file.read()
    except FileNotFoundError as err:
        raise InputException(f"Values file {path} does not exist") from err
    return parse_layer(path.name, content)
