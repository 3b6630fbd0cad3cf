"""Tests for the git source."""

import asyncio
from pathlib import Path

import git
import pytest

from chart_sync.config import ReleaseSpec
from chart_sync.exceptions import SourceException
from chart_sync.manifest import ReleaseRef
from chart_sync.renderer import render
from chart_sync.source import GitSource

CHART_DIR = Path("tests/testdata/chart")
SPEC = ReleaseSpec(
    name="shop",
    namespace="shop",
    path="charts/shop",
    values_files=["environments/prod.yaml"],
    values={"image": {"tag": "2.5.0"}},
)


def _commit(repo: git.Repo, files: dict[str, str], message: str) -> str:
    root = Path(repo.working_tree_dir or "")
    for name, content in files.items():
        path = root / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    repo.index.add(list(files))
    actor = git.Actor("chart-sync", "chart-sync@example.com")
    return repo.index.commit(message, author=actor, committer=actor).hexsha


@pytest.fixture(name="repo")
def repo_fixture(tmp_path: Path) -> git.Repo:
    """Fixture for a repository holding the test chart."""
    repo = git.Repo.init(tmp_path / "deploy")
    files = {
        f"charts/shop/{path.relative_to(CHART_DIR)}": path.read_text()
        for path in sorted(CHART_DIR.rglob("*.yaml"))
    }
    files["environments/prod.yaml"] = Path("tests/testdata/values-prod.yaml").read_text()
    _commit(repo, files, "Add shop chart")
    return repo


async def test_get_latest(repo: git.Repo) -> None:
    """Test loading a release from the latest commit."""
    source = GitSource(repo, [SPEC])
    revision = await source.get_latest(SPEC.ref)
    assert revision.revision == repo.head.commit.hexsha
    assert [layer.name for layer in revision.layers] == [
        "values.yaml",
        "environments/prod.yaml",
        "values",
    ]
    assert revision.chart == {"Name": "shop", "Version": "1.2.0", "AppVersion": "2.4.1"}

    desired = render(revision.templates, revision.layers, SPEC.ref, revision.chart)
    api = next(doc for doc in desired if doc.kind == "Deployment")
    assert api.content["spec"]["replicas"] == 5
    assert api.content["spec"]["template"]["spec"]["containers"][0]["image"] == (
        "ghcr.io/example/api:2.5.0"
    )
    assert any(doc.kind == "Ingress" for doc in desired)


async def test_new_commit(repo: git.Repo) -> None:
    """Test a new commit is picked up as a new revision."""
    source = GitSource(repo, [SPEC])
    first = await source.revision()
    sha = _commit(repo, {"environments/prod.yaml": "replicaCount: 2\n"}, "Scale down")
    assert sha != first
    assert await source.revision() == sha
    revision = await source.get_latest(SPEC.ref)
    assert revision.revision == sha
    assert revision.layers[1].values == {"replicaCount": 2}


async def test_pinned_ref(repo: git.Repo) -> None:
    """Test a source pinned to a ref ignores later commits."""
    pinned = repo.head.commit.hexsha
    _commit(repo, {"environments/prod.yaml": "replicaCount: 2\n"}, "Scale down")
    source = GitSource(repo, [SPEC], ref=pinned)
    assert (await source.get_latest(SPEC.ref)).revision == pinned


async def test_errors(repo: git.Repo) -> None:
    """Test errors reading releases from the repository."""
    source = GitSource(repo, [SPEC])
    with pytest.raises(SourceException, match="is not configured"):
        await source.get_latest(ReleaseRef("other", "shop"))

    missing_path = ReleaseSpec(name="web", namespace="web", path="charts/web")
    with pytest.raises(SourceException, match="does not exist"):
        await GitSource(repo, [missing_path]).get_latest(missing_path.ref)

    missing_values = ReleaseSpec(
        name="shop", namespace="shop", path="charts/shop", values_files=["missing.yaml"]
    )
    with pytest.raises(SourceException, match="missing.yaml does not exist"):
        await GitSource(repo, [missing_values]).get_latest(missing_values.ref)

    with pytest.raises(SourceException, match="Unable to resolve ref"):
        await GitSource(repo, [SPEC], ref="no-such-branch").get_latest(SPEC.ref)


async def test_open(repo: git.Repo) -> None:
    """Test opening a repository from a local path."""
    source = GitSource.open(str(repo.working_tree_dir), [SPEC])
    assert await source.revision() == repo.head.commit.hexsha


async def test_watch(repo: git.Repo) -> None:
    """Test watching yields the current commit and then new commits."""
    source = GitSource(repo, [SPEC], poll_interval=0.01)
    watcher = source.watch(SPEC.ref)
    assert await asyncio.wait_for(anext(watcher), timeout=5) == repo.head.commit.hexsha
    sha = _commit(repo, {"environments/prod.yaml": "replicaCount: 2\n"}, "Scale down")
    assert await asyncio.wait_for(anext(watcher), timeout=5) == sha
    await watcher.aclose()
