"""Library for loading charts.

A chart is a directory with a `Chart.yaml` describing it, a `values.yaml`
holding the default values layer, and a `templates/` directory of template
files. The same layout is read from a local directory or from the tree of a
git commit.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging
from pathlib import Path, PurePosixPath
from typing import Any

import aiofiles
import yaml

from .exceptions import InputException
from .template import Template, parse_templates
from .values import ValueLayer, parse_layer

__all__ = [
    "Chart",
    "ChartMetadata",
    "parse_chart",
    "load_chart",
]

_LOGGER = logging.getLogger(__name__)

CHART_FILE = "Chart.yaml"
VALUES_FILE = "values.yaml"
TEMPLATES_DIR = "templates"
TEMPLATE_SUFFIXES = (".yaml", ".yml")


@dataclass(frozen=True)
class ChartMetadata:
    """Contents of Chart.yaml."""

    name: str
    version: str | None = None
    app_version: str | None = None

    def context(self) -> dict[str, Any]:
        """Values exposed to templates as `.Chart`."""
        return {
            "Name": self.name,
            "Version": self.version,
            "AppVersion": self.app_version,
        }


@dataclass(frozen=True)
class Chart:
    """A set of templates and their default values."""

    metadata: ChartMetadata
    templates: list[Template] = field(default_factory=list)
    defaults: ValueLayer = field(default_factory=lambda: ValueLayer(VALUES_FILE))


def _parse_metadata(default_name: str, content: str | None) -> ChartMetadata:
    if content is None:
        return ChartMetadata(name=default_name)
    try:
        doc = yaml.load(content, Loader=yaml.SafeLoader) or {}
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse {CHART_FILE}: {err}") from err
    if not isinstance(doc, dict):
        raise InputException(f"Invalid {CHART_FILE}, expected a mapping: {doc}")
    version = doc.get("version")
    app_version = doc.get("appVersion")
    return ChartMetadata(
        name=str(doc.get("name") or default_name),
        version=str(version) if version is not None else None,
        app_version=str(app_version) if app_version is not None else None,
    )


def parse_chart(name: str, files: Mapping[str, str]) -> Chart:
    """Build a chart from a mapping of relative file path to file content."""
    templates: list[Template] = []
    for path in sorted(files):
        parts = PurePosixPath(path).parts
        if len(parts) != 2 or parts[0] != TEMPLATES_DIR:
            continue
        if not path.endswith(TEMPLATE_SUFFIXES):
            continue
        template_name = PurePosixPath(path).stem
        templates.extend(parse_templates(template_name, files[path]))

    if not templates:
        raise InputException(f"Chart {name} has no templates in {TEMPLATES_DIR}/")

    defaults = ValueLayer(VALUES_FILE)
    if (values_content := files.get(VALUES_FILE)) is not None:
        defaults = parse_layer(VALUES_FILE, values_content)

    metadata = _parse_metadata(name, files.get(CHART_FILE))
    _LOGGER.debug("Loaded chart %s with %d templates", metadata.name, len(templates))
    return Chart(metadata=metadata, templates=templates, defaults=defaults)


async def _read(path: Path) -> str:
    async with aiofiles.open(str(path)) as file:
        return await file.read()


async def load_chart(path: Path) -> Chart:
    """Load a chart from a local directory."""
    if not path.is_dir():
        raise InputException(f"Chart path {path} is not a directory")
    files: dict[str, str] = {}
    for name in (CHART_FILE, VALUES_FILE):
        if (path / name).is_file():
            files[name] = await _read(path / name)
    templates_dir = path / TEMPLATES_DIR
    if templates_dir.is_dir():
        for template_path in sorted(templates_dir.iterdir()):
            if template_path.is_file():
                files[f"{TEMPLATES_DIR}/{template_path.name}"] = await _read(
                    template_path
                )
    return parse_chart(path.name, files)
