"""Durable release state and the one-release-at-a-time lock.

The state document is the sole source of truth for a release attempt. Every
transition goes through StateStore.commit(), which persists the whole new
document atomically (temp file + rename) before the in-memory copy changes.
Resume is "load state, recompute the plan, skip terminal work".
"""

from __future__ import annotations

import copy
import errno
import json
import os
import threading
from collections.abc import Callable
from pathlib import Path

from pydantic import ValidationError as PydanticError

from .errors import (
    AlreadyInProgressError,
    NoActiveReleaseError,
    StateCorruptionError,
    StatePersistError,
)
from .files import atomic_write_text
from .models import STATE_FORMAT_VERSION, ReleaseState, utcnow

STATE_DIR = ".cascade-release"
STATE_FILE = "state.json"


def state_path_for(workspace: Path) -> Path:
    """Location of the state file inside an isolated workspace."""
    return workspace / STATE_DIR / STATE_FILE


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


class ReleaseLock:
    """Exclusive lock file, created only if absent.

    The file holds JSON {pid, release_id, acquired_at} so contention errors
    can say who holds it, and resume can take over from a dead process.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._owned = False

    @property
    def owned(self) -> bool:
        return self._owned

    def holder(self) -> dict | None:
        """Contents of the lock file, or None if there is no lock."""
        try:
            return json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            return {}

    def acquire(self, release_id: str) -> None:
        """Create the lock; fail if any release already holds it.

        Raises:
            AlreadyInProgressError: If the lock file exists.
        """
        if self._owned:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise AlreadyInProgressError(self._busy_message()) from None
        with os.fdopen(fd, "w") as handle:
            handle.write(self._payload(release_id))
            handle.flush()
            os.fsync(handle.fileno())
        self._owned = True

    def claim(self, release_id: str) -> None:
        """Take the lock for resuming ``release_id``.

        Succeeds when the lock is free, already belongs to this release, or
        belongs to a process that no longer exists.

        Raises:
            AlreadyInProgressError: If a live process holds it.
        """
        if self._owned:
            return
        holder = self.holder()
        if holder is None:
            self.acquire(release_id)
            return
        pid = int(holder.get("pid", -1) or -1)
        if pid != os.getpid() and _pid_alive(pid):
            raise AlreadyInProgressError(self._busy_message(holder))
        atomic_write_text(self.path, self._payload(release_id))
        self._owned = True

    def release(self) -> None:
        """Remove the lock file. Safe to call when not held."""
        self.path.unlink(missing_ok=True)
        self._owned = False

    def _payload(self, release_id: str) -> str:
        return json.dumps(
            {
                "pid": os.getpid(),
                "release_id": release_id,
                "acquired_at": utcnow().isoformat(),
            }
        )

    def _busy_message(self, holder: dict | None = None) -> str:
        holder = self.holder() if holder is None else holder
        if not holder:
            return f"A release is already in progress (lock: {self.path})"
        return (
            f"Release {holder.get('release_id', '?')} is already in progress "
            f"(pid {holder.get('pid', '?')}, since {holder.get('acquired_at', '?')})"
        )


class StateStore:
    """Loads and commits the state document of one release."""

    def __init__(self, path: Path, lock: ReleaseLock) -> None:
        self.path = path
        self.lock = lock
        self._state: ReleaseState | None = None
        self._mutex = threading.Lock()

    @property
    def state(self) -> ReleaseState:
        if self._state is None:
            raise NoActiveReleaseError("No release state loaded")
        return self._state

    def initialize(self, state: ReleaseState) -> ReleaseState:
        """Take the lock and persist the first version of a release's state.

        Raises:
            AlreadyInProgressError: If another release holds the lock.
            StatePersistError: If the document cannot be written.
        """
        self.lock.acquire(state.release_id)
        if self.path.exists():
            raise AlreadyInProgressError(
                f"A release state already exists at {self.path}"
            )
        with self._mutex:
            self._write(state)
            self._state = state
        return state

    def load(self) -> ReleaseState:
        """Read the state document.

        Raises:
            NoActiveReleaseError: If there is no state file.
            StateCorruptionError: If it cannot be parsed or has an
                unknown format version.
        """
        try:
            raw = self.path.read_text()
        except FileNotFoundError:
            raise NoActiveReleaseError(f"No release state at {self.path}") from None
        except OSError as exc:
            raise StateCorruptionError(f"Cannot read {self.path}: {exc}") from exc

        try:
            version = json.loads(raw).get("format_version")
        except (ValueError, AttributeError) as exc:
            raise StateCorruptionError(f"State file {self.path} is not valid JSON") from exc
        if version != STATE_FORMAT_VERSION:
            raise StateCorruptionError(
                f"State file {self.path} has format {version!r}, "
                f"expected {STATE_FORMAT_VERSION}"
            )
        try:
            state = ReleaseState.model_validate_json(raw)
        except PydanticError as exc:
            raise StateCorruptionError(f"State file {self.path} is malformed:\n{exc}") from exc

        with self._mutex:
            self._state = state
        return state

    def commit(self, mutator: Callable[[ReleaseState], None]) -> ReleaseState:
        """Apply a transition and persist the entire new state atomically.

        The mutator edits a copy. Only after the copy is durably on disk does
        it replace the in-memory state, so a failed write leaves both the file
        and the in-memory state exactly as they were.

        Raises:
            StatePersistError: If the new state could not be written.
        """
        with self._mutex:
            current = self.state
            candidate = copy.deepcopy(current)
            mutator(candidate)
            candidate.save_version = current.save_version + 1
            candidate.updated_at = utcnow()
            self._write(candidate)
            self._state = candidate
            return candidate

    def _write(self, state: ReleaseState) -> None:
        try:
            atomic_write_text(self.path, state.model_dump_json(indent=2) + "\n")
        except OSError as exc:
            detail = errno.errorcode.get(exc.errno or 0, str(exc))
            raise StatePersistError(
                f"Could not persist release state to {self.path} ({detail}): {exc}"
            ) from exc
