"""Desired state read from a git repository.

Charts and values files are read straight from the tree of the resolved
commit, so the working copy is never checked out or modified.
"""

import asyncio
from collections.abc import AsyncGenerator, Iterable
import logging
from pathlib import Path, PurePosixPath
import tempfile

import git

from chart_sync.chart import parse_chart
from chart_sync.config import ReleaseSpec
from chart_sync.exceptions import InputException, SourceException
from chart_sync.manifest import ReleaseRef
from chart_sync.values import ValueLayer, parse_layer

from .source import DesiredStateSource, SourceRevision

_LOGGER = logging.getLogger(__name__)

DEFAULT_REF = "HEAD"


def _read_blob(tree: git.Tree, path: str) -> str:
    try:
        blob = tree / path
    except KeyError as err:
        raise SourceException(f"File {path} does not exist in repository") from err
    return blob.data_stream.read().decode("utf-8")


def _read_dir(tree: git.Tree, path: str) -> dict[str, str]:
    """Return the files below a directory, keyed by path relative to it."""
    root = PurePosixPath(path.strip("/") or ".")
    if str(root) != ".":
        try:
            tree = tree / str(root)
        except KeyError as err:
            raise SourceException(f"Chart path {path} does not exist in repository") from err
    if not isinstance(tree, git.Tree):
        raise SourceException(f"Chart path {path} is not a directory")
    files: dict[str, str] = {}
    for item in tree.traverse():
        if item.type != "blob":
            continue
        relpath = PurePosixPath(item.path)
        if str(root) != ".":
            relpath = relpath.relative_to(root)
        files[str(relpath)] = item.data_stream.read().decode("utf-8")
    return files


class GitSource(DesiredStateSource):
    """A source that reads releases from commits of a git repository."""

    def __init__(
        self,
        repo: git.Repo,
        releases: Iterable[ReleaseSpec],
        ref: str | None = None,
        poll_interval: float = 60.0,
        fetch: bool = False,
    ) -> None:
        """Initialize GitSource."""
        self._repo = repo
        self._releases = {spec.ref: spec for spec in releases}
        self._ref = ref or DEFAULT_REF
        self._poll_interval = poll_interval
        self._fetch = fetch
        self._lock = asyncio.Lock()

    @classmethod
    def open(
        cls,
        repository: str,
        releases: Iterable[ReleaseSpec],
        ref: str | None = None,
        poll_interval: float = 60.0,
    ) -> "GitSource":
        """Open a local repository or clone a remote one into a temporary directory."""
        path = Path(repository)
        try:
            if path.exists():
                _LOGGER.info("Opening repository %s", path)
                repo = git.Repo(str(path), search_parent_directories=True)
                return cls(repo, releases, ref, poll_interval, fetch=False)
            workdir = tempfile.mkdtemp(prefix="chart-sync-git-")
            _LOGGER.info("Cloning repository %s to %s", repository, workdir)
            repo = git.Repo.clone_from(repository, workdir)
        except git.GitError as err:
            raise SourceException(f"Unable to open repository {repository}: {err}") from err
        return cls(repo, releases, ref, poll_interval, fetch=True)

    def _spec(self, release: ReleaseRef) -> ReleaseSpec:
        if (spec := self._releases.get(release)) is None:
            raise SourceException(f"Release {release} is not configured")
        return spec

    def _commit(self) -> git.Commit:
        if self._fetch:
            for remote in self._repo.remotes:
                _LOGGER.debug("Fetching remote %s", remote.name)
                remote.fetch()
        try:
            return self._repo.commit(self._ref)
        except (git.BadName, ValueError) as err:
            raise SourceException(f"Unable to resolve ref {self._ref}: {err}") from err

    def _load(self, spec: ReleaseSpec) -> SourceRevision:
        commit = self._commit()
        try:
            chart = parse_chart(spec.name, _read_dir(commit.tree, spec.path))
            layers: list[ValueLayer] = [chart.defaults]
            for values_file in spec.values_files:
                layers.append(parse_layer(values_file, _read_blob(commit.tree, values_file)))
        except InputException as err:
            raise SourceException(
                f"Unable to load release {spec.ref} at {commit.hexsha}: {err}"
            ) from err
        if spec.values:
            layers.append(ValueLayer("values", spec.values))
        _LOGGER.debug("Loaded release %s at %s", spec.ref, commit.hexsha)
        return SourceRevision(
            revision=commit.hexsha,
            templates=chart.templates,
            layers=layers,
            chart=chart.metadata.context(),
        )

    async def get_latest(self, release: ReleaseRef) -> SourceRevision:
        spec = self._spec(release)
        async with self._lock:
            try:
                return await asyncio.to_thread(self._load, spec)
            except git.GitError as err:
                raise SourceException(f"Unable to read repository: {err}") from err

    async def revision(self) -> str:
        """Return the commit sha the configured ref resolves to."""
        async with self._lock:
            try:
                commit = await asyncio.to_thread(self._commit)
            except git.GitError as err:
                raise SourceException(f"Unable to read repository: {err}") from err
        return commit.hexsha

    async def watch(self, release: ReleaseRef) -> AsyncGenerator[str, None]:
        self._spec(release)
        last: str | None = None
        while True:
            try:
                current = await self.revision()
            except SourceException as err:
                _LOGGER.warning("Unable to poll repository: %s", err)
            else:
                if current != last:
                    last = current
                    yield current
            await asyncio.sleep(self._poll_interval)
