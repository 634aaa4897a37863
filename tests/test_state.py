"""Tests for cascade_release.state."""

from __future__ import annotations

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from cascade_release.errors import (
    AlreadyInProgressError,
    NoActiveReleaseError,
    PhaseTransitionError,
    StateCorruptionError,
    StatePersistError,
)
from cascade_release.models import BumpKind, PublishStatus, ReleasePhase, ReleaseState
from cascade_release.state import ReleaseLock, StateStore, state_path_for


def _state(tmp_path: Path) -> ReleaseState:
    return ReleaseState.new(
        bump_kind=BumpKind.PATCH, workspace_path=tmp_path, source_path=tmp_path
    )


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    return StateStore(state_path_for(tmp_path / "ws"), ReleaseLock(tmp_path / "release.lock"))


class TestReleaseLock:
    def test_acquire_writes_holder(self, tmp_path: Path) -> None:
        lock = ReleaseLock(tmp_path / "locks" / "release.lock")
        lock.acquire("release-1")

        holder = lock.holder()
        assert holder["pid"] == os.getpid()
        assert holder["release_id"] == "release-1"
        assert lock.owned

    def test_second_acquire_fails(self, tmp_path: Path) -> None:
        ReleaseLock(tmp_path / "release.lock").acquire("release-1")

        with pytest.raises(AlreadyInProgressError, match="release-1"):
            ReleaseLock(tmp_path / "release.lock").acquire("release-2")

    def test_release_removes_file(self, tmp_path: Path) -> None:
        lock = ReleaseLock(tmp_path / "release.lock")
        lock.acquire("release-1")
        lock.release()

        assert lock.holder() is None
        assert not lock.owned

    def test_claim_takes_over_from_dead_process(self, tmp_path: Path) -> None:
        path = tmp_path / "release.lock"
        path.write_text(json.dumps({"pid": 4242, "release_id": "release-1"}))

        with patch("cascade_release.state._pid_alive", return_value=False):
            ReleaseLock(path).claim("release-1")

        assert json.loads(path.read_text())["pid"] == os.getpid()

    def test_claim_refuses_live_holder(self, tmp_path: Path) -> None:
        path = tmp_path / "release.lock"
        path.write_text(json.dumps({"pid": 4242, "release_id": "release-1"}))

        with patch("cascade_release.state._pid_alive", return_value=True):
            with pytest.raises(AlreadyInProgressError):
                ReleaseLock(path).claim("release-1")


class TestStateStore:
    def test_initialize_persists_and_locks(self, store: StateStore, tmp_path: Path) -> None:
        state = store.initialize(_state(tmp_path))

        assert store.path.exists()
        assert store.lock.owned
        assert StateStore(store.path, store.lock).load() == state

    def test_initialize_refuses_existing_state(self, store: StateStore, tmp_path: Path) -> None:
        store.initialize(_state(tmp_path))
        store.lock.release()

        with pytest.raises(AlreadyInProgressError):
            store.initialize(_state(tmp_path))

    def test_initialize_fails_when_locked(self, store: StateStore, tmp_path: Path) -> None:
        ReleaseLock(store.lock.path).acquire("release-other")

        with pytest.raises(AlreadyInProgressError):
            store.initialize(_state(tmp_path))
        assert not store.path.exists()

    def test_commit_persists_whole_state(self, store: StateStore, tmp_path: Path) -> None:
        store.initialize(_state(tmp_path))

        def transition(s: ReleaseState) -> None:
            s.advance(ReleasePhase.VERSION_UPDATE)
            s.set_status("core", PublishStatus.PENDING)

        store.commit(transition)

        loaded = StateStore(store.path, store.lock).load()
        assert loaded.current_phase is ReleasePhase.VERSION_UPDATE
        assert loaded.per_package_status["core"].status is PublishStatus.PENDING
        assert loaded.save_version == 1

    def test_failed_write_changes_nothing(self, store: StateStore, tmp_path: Path) -> None:
        """A commit that cannot persist leaves disk and memory untouched."""
        store.initialize(_state(tmp_path))
        on_disk = store.path.read_text()

        def transition(s: ReleaseState) -> None:
            s.advance(ReleasePhase.PUBLISHING)
            s.set_status("core", PublishStatus.PUBLISHED)

        with patch(
            "cascade_release.state.atomic_write_text", side_effect=OSError(28, "No space left")
        ):
            with pytest.raises(StatePersistError):
                store.commit(transition)

        assert store.state.current_phase is ReleasePhase.VALIDATION
        assert store.state.per_package_status == {}
        assert store.state.save_version == 0
        assert store.path.read_text() == on_disk

    def test_mutator_error_changes_nothing(self, store: StateStore, tmp_path: Path) -> None:
        store.initialize(_state(tmp_path))
        store.commit(lambda s: s.advance(ReleasePhase.PUBLISHING))

        with pytest.raises(PhaseTransitionError):
            store.commit(lambda s: s.advance(ReleasePhase.VALIDATION))

        assert store.state.current_phase is ReleasePhase.PUBLISHING

    def test_load_missing(self, store: StateStore) -> None:
        with pytest.raises(NoActiveReleaseError):
            store.load()

    def test_load_invalid_json(self, store: StateStore) -> None:
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json")

        with pytest.raises(StateCorruptionError):
            store.load()

    def test_load_unknown_format_version(self, store: StateStore, tmp_path: Path) -> None:
        store.initialize(_state(tmp_path))
        data = json.loads(store.path.read_text())
        data["format_version"] = 99
        store.path.write_text(json.dumps(data))

        with pytest.raises(StateCorruptionError, match="99"):
            store.load()

    def test_load_schema_mismatch(self, store: StateStore, tmp_path: Path) -> None:
        store.initialize(_state(tmp_path))
        data = json.loads(store.path.read_text())
        data["current_phase"] = "exploding"
        store.path.write_text(json.dumps(data))

        with pytest.raises(StateCorruptionError):
            store.load()
