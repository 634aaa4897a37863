"""Rollback: undo whatever a release managed to do, newest first.

Each undo step is committed as soon as it succeeds, so a rollback that
stops half-way can simply be run again. Registries are append-only: a
package that reached one stays there and is reported as not unpublished.
"""

from __future__ import annotations

from collections.abc import Callable

from pydantic import BaseModel, Field

from .collaborators import Collaborators
from .errors import CascadeError, RollbackIncompleteError, RollbackRefusedError
from .models import PublishStatus, ReleasePhase, ReleaseState
from .shell import say, step, warn
from .state import StateStore
from .workspace import IsolatedWorkspace, WorkspaceManager


class RollbackReport(BaseModel):
    """What a rollback did, and what it could not undo."""

    undone: list[str] = Field(default_factory=list)
    abandoned: list[str] = Field(default_factory=list)
    not_unpublished: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    rolled_back: bool = False


class RollbackEngine:
    def __init__(
        self,
        store: StateStore,
        workspaces: WorkspaceManager,
        workspace: IsolatedWorkspace,
        collaborators: Collaborators,
    ) -> None:
        self.store = store
        self.workspaces = workspaces
        self.workspace = workspace
        self.collab = collaborators

    @property
    def state(self) -> ReleaseState:
        return self.store.state

    def plan(self) -> list[str]:
        """The undo steps a rollback would run, in order."""
        state = self.state
        steps: list[str] = []
        outstanding = state.packages_with(PublishStatus.PENDING, PublishStatus.IN_PROGRESS)
        if outstanding:
            steps.append(f"abandon publishing of {', '.join(outstanding)}")
        published = state.packages_with(PublishStatus.PUBLISHED)
        if published:
            steps.append(f"leave on the registry (not unpublished): {', '.join(published)}")
        if state.github.release_id:
            steps.append(f"delete GitHub release {state.github.release_id}")
        where = " locally and on origin" if state.git.pushed else ""
        for tag in reversed(state.git.tags):
            steps.append(f"delete tag {tag}{where}")
        if state.git.commit and not state.git.reverted:
            push = " and push the revert" if state.git.pushed else ""
            steps.append(f"revert commit {state.git.commit[:12]}{push}")
        elif not state.git.commit and state.manifest_backups:
            steps.append(f"restore {len(state.manifest_backups)} manifest(s)")
        steps.append(f"remove isolated workspace {self.workspace.path}")
        return steps

    def rollback(self, force: bool = False) -> RollbackReport:
        """Undo the release in reverse phase order.

        Args:
            force: Roll back a completed release, and finish even when some
                undo steps fail.

        Raises:
            RollbackRefusedError: If the release completed and not ``force``.
            RollbackIncompleteError: If an undo step failed and not ``force``;
                the workspace and lock are kept so the rollback can be rerun.
        """
        state = self.state
        if state.current_phase is ReleasePhase.ROLLED_BACK:
            # Interrupted after the final commit; only cleanup is left
            self._finish()
            return RollbackReport(rolled_back=True)
        if state.current_phase is ReleasePhase.COMPLETED and not force:
            raise RollbackRefusedError(
                f"Release {state.release_id} completed and is publicly visible"
            )

        step(f"Rolling back {state.release_id}")
        report = RollbackReport()
        self._abandon_publishing(report)
        if state.github.release_id:
            self._undo(f"delete GitHub release {state.github.release_id}", self._delete_release, report)
        for tag in reversed(list(self.state.git.tags)):
            self._undo(f"delete tag {tag}", lambda tag=tag: self._delete_tag(tag), report)
        if self.state.git.commit and not self.state.git.reverted:
            self._undo(f"revert commit {self.state.git.commit[:12]}", self._revert, report)
        elif not self.state.git.commit and self.state.manifest_backups:
            self._undo("restore manifests", self._restore_manifests, report)

        if report.errors and not force:
            raise RollbackIncompleteError(report.errors)

        self.store.commit(lambda s: s.advance(ReleasePhase.ROLLED_BACK))
        self._finish()
        report.rolled_back = True
        return report

    def _finish(self) -> None:
        self.workspaces.release(self.workspace, keep=False)
        self.store.lock.release()

    # --- steps --------------------------------------------------------------

    def _abandon_publishing(self, report: RollbackReport) -> None:
        outstanding = self.state.packages_with(PublishStatus.PENDING, PublishStatus.IN_PROGRESS)
        if outstanding:

            def abandon(s: ReleaseState) -> None:
                for name in outstanding:
                    s.set_status(name, PublishStatus.SKIPPED, reason="abandoned by rollback")

            self.store.commit(abandon)
            report.abandoned = outstanding
            say(f"Abandoned: {', '.join(outstanding)}")

        report.not_unpublished = self.state.packages_with(PublishStatus.PUBLISHED)
        for name in report.not_unpublished:
            version = self.state.new_version(name) or "?"
            warn(f"{name} {version} is on the registry and was not unpublished")

    def _delete_release(self) -> None:
        self.collab.host.delete_release(self.state.github.release_id)

        def forget(s: ReleaseState) -> None:
            s.github.release_id = None
            s.github.url = None
            s.github.uploaded_artifacts = []

        self.store.commit(forget)

    def _delete_tag(self, tag: str) -> None:
        self.collab.vcs.delete_tag(tag, remote=self.state.git.pushed)
        self.store.commit(lambda s: s.git.tags.remove(tag))

    def _revert(self) -> None:
        git = self.state.git
        if git.revert_commit is None:
            sha = self.collab.vcs.revert(git.commit)
            self.store.commit(lambda s: setattr(s.git, "revert_commit", sha))
        if git.pushed:
            self.collab.vcs.push()
        self.store.commit(lambda s: setattr(s.git, "reverted", True))

    def _restore_manifests(self) -> None:
        for path, content in self.state.manifest_backups.items():
            self.collab.editor.restore(path, content)
        self.store.commit(lambda s: setattr(s, "manifest_backups", {}))

    def _undo(self, description: str, action: Callable[[], None], report: RollbackReport) -> None:
        try:
            action()
        except (CascadeError, OSError) as exc:
            report.errors.append(f"{description}: {exc}")
            warn(f"Could not {description}: {exc}")
            return
        report.undone.append(description)
        say(f"✓ {description}")
