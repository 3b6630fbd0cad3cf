"""Interface to the versioned store of desired state."""

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Any, TYPE_CHECKING

from chart_sync.manifest import ReleaseRef
from chart_sync.template import Template
from chart_sync.values import ValueLayer


@dataclass(frozen=True)
class SourceRevision:
    """The inputs needed to render one revision of a release."""

    revision: str
    """Identifier of the revision in the source e.g. a commit sha."""

    templates: list[Template] = field(default_factory=list)
    layers: list[ValueLayer] = field(default_factory=list)
    """Value layers from lowest to highest precedence."""

    chart: dict[str, Any] = field(default_factory=dict)
    """Chart metadata exposed to templates as `.Chart`."""


class DesiredStateSource(ABC):
    """A read only source of desired state revisions."""

    @abstractmethod
    async def get_latest(self, release: ReleaseRef) -> SourceRevision:
        """Return the latest revision for the release.

        Raises SourceException if the source can't be read.
        """

    @abstractmethod
    async def watch(self, release: ReleaseRef) -> AsyncGenerator[str, None]:
        """Yield the revision id whenever the release may have changed."""
        if TYPE_CHECKING:
            yield ""
