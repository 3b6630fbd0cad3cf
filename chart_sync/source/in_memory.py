"""Module for a desired state source held in memory."""

import asyncio
from collections import defaultdict
from collections.abc import AsyncGenerator
import logging
from typing import DefaultDict

from chart_sync.exceptions import SourceException
from chart_sync.manifest import ReleaseRef

from .source import DesiredStateSource, SourceRevision

_LOGGER = logging.getLogger(__name__)


class InMemorySource(DesiredStateSource):
    """A source where revisions are published directly, used by tests."""

    def __init__(self) -> None:
        """Initialize InMemorySource."""
        self._revisions: dict[ReleaseRef, SourceRevision] = {}
        self._watchers: DefaultDict[ReleaseRef, list[asyncio.Queue[str]]] = (
            defaultdict(list)
        )
        self._failure: SourceException | None = None

    def publish(self, release: ReleaseRef, revision: SourceRevision) -> None:
        """Make a revision the latest for a release and notify watchers."""
        _LOGGER.debug("Publishing revision %s for %s", revision.revision, release)
        self._revisions[release] = revision
        for queue in list(self._watchers[release]):
            queue.put_nowait(revision.revision)

    def fail(self, error: SourceException | None) -> None:
        """Make get_latest raise the error until cleared with None."""
        self._failure = error

    async def get_latest(self, release: ReleaseRef) -> SourceRevision:
        if self._failure is not None:
            raise self._failure
        if (revision := self._revisions.get(release)) is None:
            raise SourceException(f"No revision published for release {release}")
        return revision

    async def watch(self, release: ReleaseRef) -> AsyncGenerator[str, None]:
        queue: asyncio.Queue[str] = asyncio.Queue()
        self._watchers[release].append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._watchers[release].remove(queue)
