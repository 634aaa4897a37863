"""Shared test fixtures."""

from __future__ import annotations

import random
import threading
from collections.abc import Callable
from pathlib import Path

import pytest
import tomlkit

from cascade_release.bundles import Platform
from cascade_release.collaborators import (
    Collaborators,
    HostedRelease,
    PackageArtifact,
    PyprojectEditor,
)
from cascade_release.config import Credentials, ReleaseSettings
from cascade_release.errors import SourceControlError
from cascade_release.models import BumpKind, ReleaseOptions, ReleaseState
from cascade_release.orchestrator import PublishOrchestrator
from cascade_release.state import StateStore, state_path_for
from cascade_release.workspace import IsolatedWorkspace, WorkspaceManager

# core, util -> tier 0; lib -> tier 1; app -> tier 2
DIAMOND = {
    "core": [],
    "util": [],
    "lib": ["core", "util"],
    "app": ["lib"],
}


def write_workspace(
    root: Path,
    packages: dict[str, list[str]],
    *,
    version: str = "1.0.0",
    root_extra: str = "",
    package_extra: dict[str, str] | None = None,
) -> Path:
    """Write a uv workspace with one package per entry (name -> internal deps)."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "pyproject.toml").write_text(
        f'[tool.uv.workspace]\nmembers = ["packages/*"]\n{root_extra}'
    )
    for name, deps in packages.items():
        package_dir = root / "packages" / name
        package_dir.mkdir(parents=True, exist_ok=True)
        dep_lines = "".join(f'    "{dep}>={version}",\n' for dep in deps)
        extra = (package_extra or {}).get(name, "")
        (package_dir / "pyproject.toml").write_text(
            f'[project]\nname = "{name}"\nversion = "{version}"\n'
            f"dependencies = [\n{dep_lines}]\n{extra}"
        )
    return root


class FakeRegistry:
    """Thread-safe registry double that records publish order."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.calls: list[str] = []
        self.published: list[str] = []
        self.events: list[tuple[str, str]] = []
        self.failures: dict[str, list[BaseException]] = {}
        self.hook: Callable[[PackageArtifact], None] | None = None
        self.active = 0
        self.max_active = 0
        self.timeouts: list[float | None] = []

    def publish(self, artifact: PackageArtifact, timeout: float | None = None) -> None:
        with self.lock:
            self.calls.append(artifact.name)
            self.timeouts.append(timeout)
            self.events.append(("start", artifact.name))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            queued = self.failures.get(artifact.name)
            error = queued.pop(0) if queued else None
        try:
            if self.hook is not None:
                self.hook(artifact)
        finally:
            with self.lock:
                self.active -= 1
                self.events.append(("end", artifact.name))
        if error is not None:
            raise error
        with self.lock:
            self.published.append(artifact.name)


class FakeSourceControl:
    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.commits: list[str] = []
        self.tags: list[str] = []
        # Tags already present before the release: local clone and origin
        self.local_tags: set[str] = set()
        self.remote_tags: set[str] = set()
        self.fail_on: dict[str, BaseException] = {}

    def _check(self, operation: str) -> None:
        if operation in self.fail_on:
            raise self.fail_on[operation]

    def commit(self, message: str) -> str:
        self._check("commit")
        self.commits.append(message)
        self.calls.append(("commit",))
        return f"{len(self.commits):040x}"

    def tag(self, name: str, message: str) -> str:
        self._check("tag")
        if name in self.local_tags:
            raise SourceControlError(f"git tag {name} failed: tag '{name}' already exists")
        self.tags.append(name)
        self.calls.append(("tag", name))
        return f"tag-{name}"

    def push(self) -> None:
        self._check("push")
        self.calls.append(("push",))

    def revert(self, commit: str) -> str:
        self._check("revert")
        self.calls.append(("revert", commit))
        return "f" * 40

    def delete_tag(self, name: str, *, remote: bool) -> None:
        self._check("delete_tag")
        if name in self.tags:
            self.tags.remove(name)
        self.local_tags.discard(name)
        if remote:
            self.remote_tags.discard(name)
        self.calls.append(("delete_tag", name, remote))

    def tag_exists(self, name: str, *, remote: bool) -> bool:
        return name in (self.remote_tags if remote else self.local_tags)

    def next_release_tag(self) -> str:
        return "r1"


class FakeReleaseHost:
    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.flags: dict[str, bool] = {}
        self.fail_on: dict[str, BaseException] = {}

    def create_release(
        self, tag: str, notes: str, *, draft: bool = False, prerelease: bool = False
    ) -> HostedRelease:
        if "create_release" in self.fail_on:
            raise self.fail_on["create_release"]
        self.calls.append(("create_release", tag, notes))
        self.flags = {"draft": draft, "prerelease": prerelease}
        return HostedRelease(id=tag, url=f"https://github.com/acme/ws/releases/tag/{tag}")

    def upload_artifact(self, release_id: str, path: Path) -> None:
        self.calls.append(("upload_artifact", release_id, path.name))

    def delete_release(self, release_id: str) -> None:
        if "delete_release" in self.fail_on:
            raise self.fail_on["delete_release"]
        self.calls.append(("delete_release", release_id))


class FakeBundler:
    def __init__(self, out_dir: Path) -> None:
        self.out_dir = out_dir
        self.built: list[tuple[Platform, str]] = []

    def build(self, platform: Platform, target_triple: str) -> Path:
        self.out_dir.mkdir(parents=True, exist_ok=True)
        artifact = self.out_dir / f"ws-{target_triple}.{platform.value}"
        artifact.write_text("bundle")
        self.built.append((platform, target_triple))
        return artifact


class FakeCollaborators:
    """Stands in for default_collaborators(): shared fakes, real manifest edits."""

    def __init__(self) -> None:
        self.registry = FakeRegistry()
        self.vcs = FakeSourceControl()
        self.host = FakeReleaseHost()
        self.roots: list[Path] = []

    def __call__(
        self, root: Path, settings: ReleaseSettings, credentials: Credentials
    ) -> Collaborators:
        self.roots.append(root)
        return Collaborators(
            editor=PyprojectEditor(root),
            vcs=self.vcs,
            host=self.host,
            registry=self.registry,
            bundler=FakeBundler(root / "dist" / "bundles"),
        )


class Harness:
    """Wires a state store, fakes and an orchestrator around a workspace dir."""

    def __init__(self, root: Path, home: Path) -> None:
        self.root = root
        self.workspaces = WorkspaceManager(root, home=home)
        self.workspace = IsolatedWorkspace(path=root, source_path=root)
        self.registry = FakeRegistry()
        self.vcs = FakeSourceControl()
        self.host = FakeReleaseHost()
        self.bundler = FakeBundler(root / "dist" / "bundles")
        self.collaborators = Collaborators(
            editor=PyprojectEditor(root),
            vcs=self.vcs,
            host=self.host,
            registry=self.registry,
            bundler=self.bundler,
        )
        self.store = StateStore(state_path_for(root), self.workspaces.lock())
        self.settings = ReleaseSettings(base_delay=0.01, max_delay=1.0, jitter=0.0)
        self.credentials = Credentials(registry_token="pypi-token", github_token="gh-token")
        self.delays: list[float] = []

    def start(
        self,
        bump: BumpKind = BumpKind.PATCH,
        *,
        explicit: str | None = None,
        dry_run: bool = False,
        **options: object,
    ) -> ReleaseState:
        opts = ReleaseOptions(**{"keep_temp": True, **options})
        return self.store.initialize(
            ReleaseState.new(
                bump_kind=bump,
                explicit_version=explicit,
                workspace_path=self.root,
                source_path=self.root,
                dry_run=dry_run,
                options=opts,
            )
        )

    def orchestrator(self, **settings: object) -> PublishOrchestrator:
        if settings:
            self.settings = self.settings.model_copy(update=settings)
        return PublishOrchestrator(
            self.store,
            self.workspaces,
            self.workspace,
            self.collaborators,
            self.settings,
            self.credentials,
            wait=self._wait,
            rng=random.Random(0),
            target_triple="x86_64-unknown-linux-gnu",
        )

    def reload(self) -> ReleaseState:
        return StateStore(self.store.path, self.workspaces.lock()).load()

    def _wait(self, delay: float) -> bool:
        self.delays.append(delay)
        return True


@pytest.fixture
def home(tmp_path: Path) -> Path:
    return tmp_path / "home"


@pytest.fixture
def diamond(tmp_path: Path) -> Path:
    return write_workspace(tmp_path / "ws", DIAMOND)


@pytest.fixture
def harness(diamond: Path, home: Path) -> Harness:
    return Harness(diamond, home)


@pytest.fixture
def tmp_pyproject(tmp_path: Path) -> Path:
    """Create a temporary pyproject.toml file."""
    content = """\
[project]
name = "test-package"
version = "1.0.0"
dependencies = [
    "requests>=2.0",
    "internal-dep>=1.0",
]

[project.optional-dependencies]
dev = ["pytest>=8.0", "another-internal>=0.5"]

[dependency-groups]
test = ["pytest>=8.0", "group-internal>=0.1"]
"""
    pyproject = tmp_path / "pyproject.toml"
    pyproject.write_text(content)
    return pyproject


@pytest.fixture
def sample_toml_doc() -> tomlkit.TOMLDocument:
    """Create a sample TOML document."""
    content = """\
[project]
name = "my-package"
version = "2.0.0"
dependencies = ["click>=8.0", "pydantic>=2.0"]
classifiers = ["Private :: Do Not Upload"]

[project.optional-dependencies]
dev = ["pytest>=8.0"]
docs = ["sphinx>=7.0"]

[dependency-groups]
test = ["hypothesis>=6.0"]

[tool.uv.workspace]
members = ["packages/*", "libs/*"]

[tool.uv.sources]
core = { workspace = true }
requests = { git = "https://github.com/psf/requests" }

[tool.cascade-release]
max-concurrency = 2
"""
    return tomlkit.parse(content)


@pytest.fixture
def make_workspace() -> Callable[..., Path]:
    """Factory for uv workspaces: make_workspace(root, {name: [deps]})."""
    return write_workspace


@pytest.fixture
def make_harness(home: Path) -> Callable[[Path], Harness]:
    return lambda root: Harness(root, home)


@pytest.fixture
def fake_collaborators() -> FakeCollaborators:
    return FakeCollaborators()
