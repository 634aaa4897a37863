"""Isolated workspaces: disposable clones that every release step runs in.

The user's working tree is only ever read (HEAD commit, origin URL, the
clone itself). A pointer to the active clone lives in a home-scoped
directory, outside both the source and the clone, so a restarted process can
find it even when the state file is unreadable.
"""

from __future__ import annotations

import hashlib
import json
import os
import re
import shutil
import subprocess
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError as PydanticError

from .errors import NoActiveReleaseError, SourceControlError, WorkspaceLostError
from .files import atomic_write_text
from .models import utcnow
from .shell import git
from .state import STATE_DIR, ReleaseLock

HOME_ENV = "CASCADE_RELEASE_HOME"
CLONE_PREFIX = "cascade-release-"


def state_home() -> Path:
    """Home-scoped directory for pointers and locks."""
    configured = os.environ.get(HOME_ENV)
    return Path(configured) if configured else Path.home() / ".cascade-release"


class IsolatedWorkspace(BaseModel):
    path: Path
    created_at: datetime = Field(default_factory=utcnow)
    source_commit: str | None = None
    source_path: Path


class WorkspaceManager:
    """Owns the lifecycle of the isolated clone for one source workspace."""

    def __init__(self, source: Path, home: Path | None = None) -> None:
        self.source = source.resolve()
        digest = hashlib.sha1(str(self.source).encode()).hexdigest()[:10]
        slug = re.sub(r"[^A-Za-z0-9._-]", "_", self.source.name) or "root"
        self.tracking_dir = (home or state_home()) / "workspaces" / f"{slug}-{digest}"

    @property
    def pointer_path(self) -> Path:
        return self.tracking_dir / "active.json"

    @property
    def last_pointer_path(self) -> Path:
        return self.tracking_dir / "last.json"

    def lock(self) -> ReleaseLock:
        return ReleaseLock(self.tracking_dir / "release.lock")

    def acquire(self) -> IsolatedWorkspace:
        """Clone the source into a fresh temp directory and record it.

        Raises:
            SourceControlError: If the source is not a git repository or the
                clone fails.
        """
        workspace = self._clone()
        atomic_write_text(self.pointer_path, workspace.model_dump_json(indent=2))
        return workspace

    @contextmanager
    def scratch(self) -> Iterator[IsolatedWorkspace]:
        """A throwaway clone that is never recorded as the active workspace."""
        workspace = self._clone()
        try:
            yield workspace
        finally:
            shutil.rmtree(workspace.path, ignore_errors=True)

    def _clone(self) -> IsolatedWorkspace:
        try:
            source_commit = git("rev-parse", "HEAD", cwd=self.source)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise SourceControlError(f"{self.source} is not a git repository") from exc
        origin = git("remote", "get-url", "origin", cwd=self.source, check=False)

        path = Path(tempfile.mkdtemp(prefix=CLONE_PREFIX))
        try:
            # Checks out the source's current branch at source_commit
            git("clone", "--quiet", "--no-hardlinks", str(self.source), str(path))
            if origin:
                # Push to where the source pushes, never into the source itself
                git("remote", "set-url", "origin", origin, cwd=path)
            else:
                git("remote", "remove", "origin", cwd=path, check=False)
            _exclude_state_dir(path)
        except (subprocess.CalledProcessError, OSError) as exc:
            shutil.rmtree(path, ignore_errors=True)
            stderr = getattr(exc, "stderr", "") or str(exc)
            raise SourceControlError(f"Cloning {self.source} failed: {stderr}") from exc

        return IsolatedWorkspace(
            path=path, source_commit=source_commit, source_path=self.source
        )

    def locate(self) -> IsolatedWorkspace:
        """Find the active isolated workspace.

        Raises:
            NoActiveReleaseError: If no release is tracked for this source.
            WorkspaceLostError: If the pointer is unreadable or the clone is gone.
        """
        return self._read_pointer(self.pointer_path)

    def locate_last(self) -> IsolatedWorkspace:
        """Find the workspace of the last release completed with --keep-temp."""
        return self._read_pointer(self.last_pointer_path)

    def release(self, workspace: IsolatedWorkspace, keep: bool = False) -> None:
        """Remove the clone unless ``keep``; always clear the pointer."""
        if keep:
            atomic_write_text(self.last_pointer_path, workspace.model_dump_json(indent=2))
        else:
            shutil.rmtree(workspace.path, ignore_errors=True)
            self._forget_last(workspace)
        self.pointer_path.unlink(missing_ok=True)

    def forget(self) -> None:
        """Drop the pointers without touching any directory."""
        self.pointer_path.unlink(missing_ok=True)
        self.last_pointer_path.unlink(missing_ok=True)

    def _forget_last(self, workspace: IsolatedWorkspace) -> None:
        try:
            last = self._read_pointer(self.last_pointer_path)
        except (NoActiveReleaseError, WorkspaceLostError):
            return
        if last.path == workspace.path:
            self.last_pointer_path.unlink(missing_ok=True)

    def _read_pointer(self, pointer: Path) -> IsolatedWorkspace:
        try:
            raw = pointer.read_text()
        except FileNotFoundError:
            raise NoActiveReleaseError(
                f"No release in progress for {self.source}"
            ) from None
        except OSError as exc:
            raise WorkspaceLostError(f"Cannot read {pointer}: {exc}") from exc
        try:
            workspace = IsolatedWorkspace.model_validate_json(raw)
        except (PydanticError, json.JSONDecodeError) as exc:
            raise WorkspaceLostError(f"Workspace pointer {pointer} is corrupt") from exc
        if not workspace.path.is_dir():
            raise WorkspaceLostError(
                f"Isolated workspace {workspace.path} no longer exists"
            )
        return workspace


def _exclude_state_dir(clone: Path) -> None:
    """Keep the state directory out of `git commit -a` and `git status`."""
    exclude = clone / ".git" / "info" / "exclude"
    exclude.parent.mkdir(parents=True, exist_ok=True)
    with exclude.open("a") as fh:
        fh.write(f"\n/{STATE_DIR}/\n")
