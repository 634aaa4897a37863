"""Tests for cascade_release.rollback."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from cascade_release.errors import (
    RegistryRejectionError,
    ReleaseHostError,
    RollbackIncompleteError,
    RollbackRefusedError,
    SourceControlError,
)
from cascade_release.models import PublishStatus, ReleasePhase
from cascade_release.rollback import RollbackEngine


def _engine(harness) -> RollbackEngine:
    return RollbackEngine(
        harness.store, harness.workspaces, harness.workspace, harness.collaborators
    )


class TestRollbackMidGitOperations:
    def test_deletes_tags_and_reverts_commit(self, harness) -> None:
        harness.vcs.fail_on["push"] = SourceControlError("git push failed")
        harness.start()
        outcome = harness.orchestrator().run()
        assert outcome.phase is ReleasePhase.GIT_OPERATIONS
        commit = harness.store.state.git.commit
        del harness.vcs.fail_on["push"]

        report = _engine(harness).rollback()

        assert report.rolled_back
        assert harness.vcs.tags == []
        deleted = [call for call in harness.vcs.calls if call[0] == "delete_tag"]
        # Newest first, never on the remote since nothing was pushed
        assert deleted[0] == ("delete_tag", "r1", False)
        assert len(deleted) == 5
        assert ("revert", commit) in harness.vcs.calls
        assert ("push",) not in harness.vcs.calls
        # Nothing from later phases existed, so nothing else was touched
        assert harness.host.calls == []
        assert harness.registry.calls == []
        assert report.not_unpublished == []
        assert harness.store.state.current_phase is ReleasePhase.ROLLED_BACK

    def test_restores_manifests_when_nothing_was_committed(self, harness) -> None:
        harness.vcs.fail_on["commit"] = SourceControlError("git commit failed")
        harness.start()
        harness.orchestrator().run()
        editor = harness.collaborators.editor

        with patch.object(editor, "restore", wraps=editor.restore) as restore:
            report = _engine(harness).rollback()

        assert report.rolled_back
        assert restore.call_count == 4
        assert ("revert",) not in [call[:1] for call in harness.vcs.calls]

    def test_releases_workspace_and_lock(self, harness) -> None:
        harness.vcs.fail_on["push"] = SourceControlError("git push failed")
        harness.start()
        harness.orchestrator().run()
        del harness.vcs.fail_on["push"]

        _engine(harness).rollback()

        assert not harness.root.exists()
        assert not harness.store.lock.path.exists()


class TestRollbackCompleted:
    def test_refused_without_force(self, harness) -> None:
        harness.start()
        assert harness.orchestrator().run().completed

        with pytest.raises(RollbackRefusedError):
            _engine(harness).rollback()
        assert harness.vcs.tags != []

    def test_force_reports_packages_not_unpublished(self, harness) -> None:
        harness.start()
        harness.orchestrator().run()
        commit = harness.store.state.git.commit

        report = _engine(harness).rollback(force=True)

        assert report.rolled_back
        assert report.not_unpublished == ["app", "core", "lib", "util"]
        assert ("delete_release", "r1") in harness.host.calls
        assert ("delete_tag", "r1", True) in harness.vcs.calls
        assert ("revert", commit) in harness.vcs.calls
        # The revert is pushed after the release commit was
        assert harness.vcs.calls[-1] == ("push",)
        assert harness.registry.calls.count("core") == 1


class TestRollbackPublishing:
    def test_abandons_outstanding_packages(self, harness) -> None:
        harness.registry.failures["core"] = [RegistryRejectionError("400 bad request")]
        harness.start()
        harness.orchestrator().run()
        published_before = harness.store.state.packages_with(PublishStatus.PUBLISHED)

        report = _engine(harness).rollback()

        assert "app" in report.abandoned
        assert "lib" in report.abandoned
        assert report.not_unpublished == published_before
        assert harness.store.state.per_package_status["app"].reason == "abandoned by rollback"


class TestRollbackFailures:
    def test_failed_undo_keeps_workspace_for_retry(self, harness) -> None:
        harness.registry.failures["core"] = [RegistryRejectionError("400 bad request")]
        harness.host.fail_on["delete_release"] = ReleaseHostError("gh: HTTP 500")
        harness.start()
        harness.orchestrator().run()

        with pytest.raises(RollbackIncompleteError, match="delete GitHub release r1"):
            _engine(harness).rollback()

        state = harness.reload()
        assert harness.root.exists()
        assert state.current_phase is ReleasePhase.FAILED
        # Finished steps are recorded and not repeated
        assert state.git.tags == []
        assert state.git.reverted

        del harness.host.fail_on["delete_release"]
        harness.vcs.calls.clear()
        report = _engine(harness).rollback()

        assert report.rolled_back
        assert report.undone == ["delete GitHub release r1"]
        assert harness.vcs.calls == []

    def test_force_finishes_despite_errors(self, harness) -> None:
        harness.registry.failures["core"] = [RegistryRejectionError("400 bad request")]
        harness.host.fail_on["delete_release"] = ReleaseHostError("gh: HTTP 500")
        harness.start()
        harness.orchestrator().run()

        report = _engine(harness).rollback(force=True)

        assert report.rolled_back
        assert len(report.errors) == 1
        assert not harness.root.exists()


class TestRollbackPlan:
    def test_lists_steps_in_undo_order(self, harness) -> None:
        harness.registry.failures["core"] = [RegistryRejectionError("400 bad request")]
        harness.start()
        harness.orchestrator().run()

        plan = _engine(harness).plan()

        assert plan[0].startswith("abandon publishing of")
        assert any(line.startswith("delete GitHub release r1") for line in plan)
        assert any(line.startswith("delete tag r1") for line in plan)
        assert any(line.startswith("revert commit") for line in plan)
        assert plan[-1].startswith("remove isolated workspace")
        # Planning changes nothing
        assert harness.store.state.current_phase is ReleasePhase.FAILED
