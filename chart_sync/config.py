"""Configuration objects for chart-sync.

A run is described by a YAML file, for example:

```yaml
repository: https://github.com/example/deploy.git
ref: origin/main
pollIntervalSeconds: 60
controller:
  pruneEnabled: true
  selfHealEnabled: true
releases:
- name: shop
  namespace: shop
  path: charts/shop
  valuesFiles:
  - environments/prod.yaml
  values:
    replicaCount: 3
```
"""

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any

import aiofiles
import yaml
from mashumaro import field_options
from mashumaro.exceptions import InvalidFieldValue, MissingField

from .differ import PrunePolicy
from .exceptions import InputException
from .manifest import BaseModel, ReleaseRef

__all__ = [
    "ControllerConfig",
    "ReleaseSpec",
    "SyncConfig",
    "parse_config",
    "read_config",
]

_LOGGER = logging.getLogger(__name__)


@dataclass
class ControllerConfig(BaseModel):
    """Configuration for a ReleaseController."""

    prune_enabled: bool = field(
        default=False, metadata=field_options(alias="pruneEnabled")
    )
    """Delete owned live objects that are no longer desired."""

    self_heal_enabled: bool = field(
        default=False, metadata=field_options(alias="selfHealEnabled")
    )
    """Correct drift on every resync tick without waiting for a new revision."""

    resync_interval_seconds: int = field(
        default=180, metadata=field_options(alias="resyncIntervalSeconds")
    )
    max_apply_retries: int = field(
        default=3, metadata=field_options(alias="maxApplyRetries")
    )
    per_operation_timeout_seconds: int = field(
        default=30, metadata=field_options(alias="perOperationTimeoutSeconds")
    )
    verify_timeout_seconds: float = field(
        default=120, metadata=field_options(alias="verifyTimeoutSeconds")
    )
    verify_initial_backoff_seconds: float = field(
        default=1.0, metadata=field_options(alias="verifyInitialBackoffSeconds")
    )
    verify_max_backoff_seconds: float = field(
        default=15.0, metadata=field_options(alias="verifyMaxBackoffSeconds")
    )
    max_history: int = field(default=10, metadata=field_options(alias="maxHistory"))

    def __post_init__(self) -> None:
        if self.resync_interval_seconds <= 0:
            raise InputException("resyncIntervalSeconds must be positive")
        if self.max_apply_retries < 0:
            raise InputException("maxApplyRetries must not be negative")
        if self.per_operation_timeout_seconds <= 0:
            raise InputException("perOperationTimeoutSeconds must be positive")
        if self.verify_timeout_seconds < 0:
            raise InputException("verifyTimeoutSeconds must not be negative")
        if self.verify_initial_backoff_seconds <= 0:
            raise InputException("verifyInitialBackoffSeconds must be positive")
        if self.verify_max_backoff_seconds < self.verify_initial_backoff_seconds:
            raise InputException(
                "verifyMaxBackoffSeconds must be at least verifyInitialBackoffSeconds"
            )
        if self.max_history < 1:
            raise InputException("maxHistory must be at least 1")

    @property
    def prune_policy(self) -> PrunePolicy:
        return PrunePolicy(prune=self.prune_enabled)


@dataclass
class ReleaseSpec(BaseModel):
    """A chart in the repository deployed as a release."""

    name: str
    namespace: str
    path: str
    """Path of the chart directory relative to the repository root."""

    values_files: list[str] = field(
        default_factory=list, metadata=field_options(alias="valuesFiles")
    )
    """Values files relative to the repository root, in precedence order."""

    values: dict[str, Any] = field(default_factory=dict)
    """Inline values with the highest precedence."""

    def __post_init__(self) -> None:
        if not self.name or not self.namespace:
            raise InputException("Release requires a name and namespace")
        if not self.path:
            raise InputException(f"Release {self.namespace}/{self.name} requires a path")

    @property
    def ref(self) -> ReleaseRef:
        return ReleaseRef(namespace=self.namespace, name=self.name)


@dataclass
class SyncConfig(BaseModel):
    """Configuration for a chart-sync run."""

    repository: str | None = None
    """Local path or remote url of the git repository."""

    ref: str | None = None
    """Commit, branch or tag to deploy. Defaults to HEAD."""

    poll_interval_seconds: float = field(
        default=60.0, metadata=field_options(alias="pollIntervalSeconds")
    )
    controller: ControllerConfig = field(default_factory=ControllerConfig)
    releases: list[ReleaseSpec] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.poll_interval_seconds <= 0:
            raise InputException("pollIntervalSeconds must be positive")
        seen: set[ReleaseRef] = set()
        for release in self.releases:
            if release.ref in seen:
                raise InputException(f"Duplicate release {release.ref}")
            seen.add(release.ref)


def parse_config(content: str) -> SyncConfig:
    """Parse the YAML content of a configuration file."""
    try:
        doc = yaml.load(content, Loader=yaml.SafeLoader) or {}
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse configuration: {err}") from err
    if not isinstance(doc, dict):
        raise InputException("Configuration must be a mapping")
    try:
        return SyncConfig.from_dict(doc)
    except (MissingField, InvalidFieldValue, TypeError) as err:
        # Validation errors raised while building nested objects are wrapped
        cause: BaseException | None = err
        while cause is not None:
            if isinstance(cause, InputException):
                raise InputException(str(cause)) from err
            cause = cause.__cause__ or cause.__context__
        raise InputException(f"Invalid configuration: {err}") from err


async def read_config(path: Path) -> SyncConfig:
    """Read a configuration file from disk."""
    try:
        async with aiofiles.open(str(path)) as config_file:
            content = await config_file.read()
    except FileNotFoundError as err:
        raise InputException(f"Configuration file {path} does not exist") from err
    _LOGGER.debug("Loaded configuration from %s", path)
    return parse_config(content)
