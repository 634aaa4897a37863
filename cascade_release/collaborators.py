"""External collaborators: the narrow capabilities the engine drives.

The engine supplies the *what* (bump this package, tag that commit, publish
this artifact); these adapters supply the *how* by shelling out to git, gh
and uv inside the isolated workspace. Protocols describe the capability so
tests and other backends can stand in.
"""

from __future__ import annotations

import re
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel

from .bundles import CommandBundler, Platform
from .config import Credentials, ReleaseSettings
from .deps import rewrite_pyproject
from .errors import (
    CascadeError,
    PublishError,
    RateLimitError,
    RegistryRejectionError,
    ReleaseHostError,
    SourceControlError,
    TransientNetworkError,
)
from .models import PackageDescriptor, RegistryTarget
from .shell import git, run

_TRANSIENT = re.compile(
    r"timed? ?out|connection (reset|refused|aborted)|could not resolve host|"
    r"temporarily unavailable|network is unreachable|\b50[234]\b|remote end hung up",
    re.IGNORECASE,
)
_RATE_LIMIT = re.compile(r"\b429\b|too many requests|rate limit", re.IGNORECASE)
_RETRY_AFTER = re.compile(r"retry[- ]after[:= ]+(\d+)", re.IGNORECASE)
_ALREADY_EXISTS = re.compile(r"already exists|file exists|already been taken", re.IGNORECASE)

PUBLISH_URLS = {
    RegistryTarget.TESTPYPI: "https://test.pypi.org/legacy/",
}


def classify_failure(
    output: str, what: str, fatal: type[CascadeError] = CascadeError
) -> CascadeError:
    """Map a failed command's output to a retryable or fatal error."""
    detail = output.strip().splitlines()[-1] if output.strip() else "no output"
    if _RATE_LIMIT.search(output):
        match = _RETRY_AFTER.search(output)
        return RateLimitError(
            f"{what} was rate limited: {detail}",
            retry_after=float(match.group(1)) if match else None,
        )
    if _TRANSIENT.search(output):
        return TransientNetworkError(f"{what} hit a network error: {detail}")
    return fatal(f"{what} failed: {detail}")


def command_failure(
    exc: subprocess.CalledProcessError, what: str, fatal: type[CascadeError] = CascadeError
) -> CascadeError:
    """Classify a failed command; one killed by a signal (Ctrl-C) can be retried."""
    if exc.returncode < 0:
        return TransientNetworkError(f"{what} was interrupted (signal {-exc.returncode})")
    return classify_failure(f"{exc.stdout or ''}\n{exc.stderr or ''}", what, fatal)


# --- Capabilities --------------------------------------------------------


class PackageArtifact(BaseModel):
    """Everything a registry needs to publish one package version."""

    name: str
    version: str
    path: Path
    registry_target: RegistryTarget
    dist_dir: Path


class HostedRelease(BaseModel):
    id: str
    url: str | None = None


class ManifestEditor(Protocol):
    def snapshot(self, package: PackageDescriptor) -> str: ...

    def bump(
        self, package: PackageDescriptor, new_version: str, dep_versions: dict[str, str]
    ) -> None: ...

    def restore(self, package_path: str, content: str) -> None: ...


class SourceControl(Protocol):
    def commit(self, message: str) -> str: ...

    def tag(self, name: str, message: str) -> str: ...

    def push(self) -> None: ...

    def revert(self, commit: str) -> str: ...

    def delete_tag(self, name: str, *, remote: bool) -> None: ...

    def tag_exists(self, name: str, *, remote: bool) -> bool: ...

    def next_release_tag(self) -> str: ...


class ReleaseHost(Protocol):
    def create_release(
        self, tag: str, notes: str, *, draft: bool = False, prerelease: bool = False
    ) -> HostedRelease: ...

    def upload_artifact(self, release_id: str, path: Path) -> None: ...

    def delete_release(self, release_id: str) -> None: ...


class Registry(Protocol):
    # Implementations must stop the upload (kill the child) once timeout expires
    def publish(self, artifact: PackageArtifact, timeout: float | None = None) -> None: ...


class Bundler(Protocol):
    def build(self, platform: Platform, target_triple: str) -> Path: ...


@dataclass(frozen=True)
class Collaborators:
    editor: ManifestEditor
    vcs: SourceControl
    host: ReleaseHost
    registry: Registry
    bundler: Bundler


# --- Adapters ------------------------------------------------------------


class PyprojectEditor:
    """Format-preserving pyproject.toml edits (tomlkit)."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _manifest(self, package_path: str) -> Path:
        return self.root / package_path / "pyproject.toml"

    def snapshot(self, package: PackageDescriptor) -> str:
        return self._manifest(package.path).read_text()

    def bump(
        self, package: PackageDescriptor, new_version: str, dep_versions: dict[str, str]
    ) -> None:
        rewrite_pyproject(self._manifest(package.path), new_version, dep_versions)

    def restore(self, package_path: str, content: str) -> None:
        self._manifest(package_path).write_text(content)


class GitSourceControl:
    """Commit, tag and push inside the isolated clone."""

    def __init__(self, root: Path, timeout: float | None = None) -> None:
        self.root = root
        self.timeout = timeout

    def _git(self, *args: str, what: str) -> str:
        try:
            return git(*args, cwd=self.root, timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            raise TransientNetworkError(f"{what} timed out") from exc
        except subprocess.CalledProcessError as exc:
            raise command_failure(exc, what, SourceControlError) from exc

    def commit(self, message: str) -> str:
        self._git("commit", "--all", "--quiet", "-m", message, what="git commit")
        return self._git("rev-parse", "HEAD", what="git rev-parse")

    def tag(self, name: str, message: str) -> str:
        self._git("tag", "--annotate", name, "-m", message, what=f"git tag {name}")
        return self._git("rev-parse", f"{name}^{{}}", what="git rev-parse")

    def push(self) -> None:
        # Annotated tags on the pushed commits travel with --follow-tags
        self._git("push", "--follow-tags", "origin", "HEAD", what="git push")

    def revert(self, commit: str) -> str:
        self._git("revert", "--no-edit", commit, what=f"git revert {commit[:12]}")
        return self._git("rev-parse", "HEAD", what="git rev-parse")

    def delete_tag(self, name: str, *, remote: bool) -> None:
        git("tag", "--delete", name, cwd=self.root, check=False)
        if remote:
            self._git(
                "push", "origin", "--delete", f"refs/tags/{name}", what=f"delete tag {name}"
            )

    def tag_exists(self, name: str, *, remote: bool) -> bool:
        if remote:
            refs = self._git(
                "ls-remote", "--tags", "origin", f"refs/tags/{name}", what=f"git ls-remote {name}"
            )
            return bool(refs)
        found = git(
            "rev-parse", "--quiet", "--verify", f"refs/tags/{name}", cwd=self.root, check=False
        )
        return bool(found)

    def next_release_tag(self) -> str:
        """Find the next release tag (r1, r2, r3, ...).

        Looks for existing tags matching the r<N> pattern and returns
        the next sequential number.
        """
        tags = git("tag", "--list", "r*", "--sort=-v:refname", cwd=self.root, check=False)
        for tag in tags.splitlines():
            if tag.startswith("r") and tag[1:].isdigit():
                return f"r{int(tag[1:]) + 1}"
        return "r1"


class GhReleaseHost:
    """GitHub releases through the gh CLI."""

    def __init__(self, root: Path, token: str | None, timeout: float | None = None) -> None:
        self.root = root
        self.env = {"GH_TOKEN": token} if token else {}
        self.timeout = timeout

    def _gh(self, *args: str, what: str) -> str:
        try:
            result = run(
                "gh", *args, cwd=self.root, env=self.env, capture=True, timeout=self.timeout
            )
        except subprocess.TimeoutExpired as exc:
            raise TransientNetworkError(f"{what} timed out") from exc
        except subprocess.CalledProcessError as exc:
            raise command_failure(exc, what, ReleaseHostError) from exc
        return (result.stdout or "").strip()

    def create_release(
        self, tag: str, notes: str, *, draft: bool = False, prerelease: bool = False
    ) -> HostedRelease:
        flags = [flag for flag, on in (("--draft", draft), ("--prerelease", prerelease)) if on]
        url = self._gh(
            "release", "create", tag, "--verify-tag", "--title", f"Release {tag}",
            "--notes", notes, *flags, what=f"create release {tag}",
        )
        return HostedRelease(id=tag, url=url.splitlines()[-1] if url else None)

    def upload_artifact(self, release_id: str, path: Path) -> None:
        if path.is_dir():
            # .app bundles are directories; releases take files
            path = Path(shutil.make_archive(str(path), "zip", path.parent, path.name))
        self._gh(
            "release", "upload", release_id, str(path), "--clobber",
            what=f"upload {path.name}",
        )

    def delete_release(self, release_id: str) -> None:
        self._gh("release", "delete", release_id, "--yes", what=f"delete release {release_id}")


class UvRegistry:
    """Build with `uv build`, publish with `uv publish`.

    ``timeout`` bounds a whole attempt, build included. subprocess kills the
    child when it expires, so an abandoned upload never keeps running behind
    the retry.
    """

    def __init__(self, token: str | None, timeout: float | None = None) -> None:
        self.env = {"UV_PUBLISH_TOKEN": token} if token else {}
        self.timeout = timeout

    def publish(self, artifact: PackageArtifact, timeout: float | None = None) -> None:
        limit = timeout if timeout is not None else self.timeout
        deadline = None if limit is None else time.monotonic() + limit

        def remaining() -> float | None:
            return None if deadline is None else max(deadline - time.monotonic(), 0.001)

        if not any(artifact.dist_dir.glob("*")):
            try:
                run(
                    "uv", "build", str(artifact.path), "--out-dir", str(artifact.dist_dir),
                    capture=True, timeout=remaining(),
                )
            except subprocess.TimeoutExpired as exc:
                shutil.rmtree(artifact.dist_dir, ignore_errors=True)
                raise TransientNetworkError(f"building {artifact.name} timed out") from exc
            except subprocess.CalledProcessError as exc:
                # A half-written dist would be uploaded as is on the next attempt
                shutil.rmtree(artifact.dist_dir, ignore_errors=True)
                if exc.returncode < 0:
                    raise command_failure(exc, f"building {artifact.name}") from exc
                raise PublishError(
                    f"building {artifact.name} failed: {(exc.stderr or '').strip()}"
                ) from exc

        args = ["uv", "publish"]
        if artifact.registry_target in PUBLISH_URLS:
            args += ["--publish-url", PUBLISH_URLS[artifact.registry_target]]
        args.append(str(artifact.dist_dir / "*"))
        what = f"publishing {artifact.name} {artifact.version}"
        try:
            run(*args, env=self.env, capture=True, timeout=remaining())
        except subprocess.TimeoutExpired as exc:
            raise TransientNetworkError(f"{what} timed out after {limit:g}s") from exc
        except subprocess.CalledProcessError as exc:
            output = f"{exc.stdout or ''}\n{exc.stderr or ''}"
            if _ALREADY_EXISTS.search(output):
                raise RegistryRejectionError(
                    f"{artifact.name} {artifact.version} is already published",
                    already_published=True,
                ) from exc
            raise command_failure(exc, what, RegistryRejectionError) from exc


def default_collaborators(
    root: Path, settings: ReleaseSettings, credentials: Credentials
) -> Collaborators:
    """The git/gh/uv-backed collaborators, all rooted in ``root``."""
    return Collaborators(
        editor=PyprojectEditor(root),
        vcs=GitSourceControl(root, timeout=settings.publish_timeout),
        host=GhReleaseHost(root, credentials.github_token, timeout=settings.publish_timeout),
        registry=UvRegistry(credentials.registry_token, timeout=settings.publish_timeout),
        bundler=CommandBundler(
            settings.bundles,
            root=root,
            out_dir=root / "dist" / "bundles",
            env=credentials.bundle_env(),
        ),
    )
