"""Data models for cascade-release.

These Pydantic models represent the core data structures used throughout
the release engine. ReleaseState is the persisted aggregate root of a
release attempt; it is serialized to JSON by the state store.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from .errors import PhaseTransitionError

STATE_FORMAT_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RegistryTarget(str, Enum):
    """Where a package is published."""

    PYPI = "pypi"
    TESTPYPI = "testpypi"
    NONE = "none"


class PackageDescriptor(BaseModel):
    """Metadata for a single package in the workspace.

    Attributes:
        name: Canonical (PEP 503) package name, unique in the workspace.
        version: Current version string from pyproject.toml.
        path: Relative path from workspace root to the package directory.
        internal_deps: Names of workspace packages this one depends on.
              External deps are not tracked here since they play no part
              in publish ordering.
        registry_target: Registry the package is published to.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    path: str
    internal_deps: frozenset[str] = Field(default_factory=frozenset)
    registry_target: RegistryTarget = RegistryTarget.PYPI


class VersionBump(BaseModel):
    """Records a version change for a package.

    Attributes:
        old: The version before bumping.
        new: The version after bumping.
    """

    old: str
    new: str


class BumpKind(str, Enum):
    PATCH = "patch"
    MINOR = "minor"
    MAJOR = "major"
    EXPLICIT = "explicit"


class FailurePolicy(str, Enum):
    """What the publishing phase does after a package fails fatally."""

    ABORT = "abort"
    CONTINUE = "continue"


class ReleasePhase(str, Enum):
    VALIDATION = "validation"
    VERSION_UPDATE = "version_update"
    GIT_OPERATIONS = "git_operations"
    GITHUB_RELEASE = "github_release"
    PUBLISHING = "publishing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def rank(self) -> int:
        """Position in the fixed phase order; terminal outcomes rank last."""
        return _PHASE_RANK[self]

    @property
    def label(self) -> str:
        return self.value.replace("_", " ").title().replace("Github", "GitHub")


PHASE_ORDER: tuple[ReleasePhase, ...] = (
    ReleasePhase.VALIDATION,
    ReleasePhase.VERSION_UPDATE,
    ReleasePhase.GIT_OPERATIONS,
    ReleasePhase.GITHUB_RELEASE,
    ReleasePhase.PUBLISHING,
    ReleasePhase.COMPLETED,
)

_PHASE_RANK = {phase: i for i, phase in enumerate(PHASE_ORDER)} | {
    ReleasePhase.FAILED: len(PHASE_ORDER),
    ReleasePhase.ROLLED_BACK: len(PHASE_ORDER) + 1,
}


def next_phase(phase: ReleasePhase) -> ReleasePhase:
    """The phase that follows ``phase`` in the fixed order."""
    index = PHASE_ORDER.index(phase)
    return PHASE_ORDER[min(index + 1, len(PHASE_ORDER) - 1)]


class PublishStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PUBLISHED = "published"
    FAILED = "failed"
    SKIPPED = "skipped"


class PackageStatus(BaseModel):
    """Publish status of one package.

    Attributes:
        status: Where the package is in its publish lifecycle.
        reason: Why it failed or was skipped.
        retryable: Failed with a transient error (another run may retry it).
        blocked_by: Internal dependency whose failure caused the skip.
    """

    status: PublishStatus = PublishStatus.PENDING
    reason: str | None = None
    retryable: bool = False
    blocked_by: str | None = None

    @property
    def terminal(self) -> bool:
        return self.status in (
            PublishStatus.PUBLISHED,
            PublishStatus.FAILED,
            PublishStatus.SKIPPED,
        )


def new_release_id(bump_kind: BumpKind, now: datetime | None = None) -> str:
    now = now or utcnow()
    return f"release-{now:%Y%m%d-%H%M%S}-{bump_kind.value}"


class ReleaseOptions(BaseModel):
    push: bool = True
    github_release: bool = True
    bundles: bool = True
    keep_temp: bool = False
    failure_policy: FailurePolicy = FailurePolicy.ABORT
    github_draft: bool = False
    # Text of --release-notes, kept so a resumed run uses the same notes
    release_notes: str | None = None


class GitRecord(BaseModel):
    """Git side effects of the release, recorded as they happen."""

    commit: str | None = None
    tags: list[str] = Field(default_factory=list)
    release_tag: str | None = None
    pushed: bool = False
    revert_commit: str | None = None
    reverted: bool = False


class GitHubRecord(BaseModel):
    release_id: str | None = None
    url: str | None = None
    uploaded_artifacts: list[str] = Field(default_factory=list)


class ReleaseState(BaseModel):
    """The durable, single source of truth for an in-progress release."""

    format_version: int = STATE_FORMAT_VERSION
    save_version: int = 0
    release_id: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    bump_kind: BumpKind
    explicit_version: str | None = None
    dry_run: bool = False
    options: ReleaseOptions = Field(default_factory=ReleaseOptions)
    current_phase: ReleasePhase = ReleasePhase.VALIDATION
    failed_phase: ReleasePhase | None = None
    failure_reason: str | None = None
    per_package_status: dict[str, PackageStatus] = Field(default_factory=dict)
    retry_counts: dict[str, int] = Field(default_factory=dict)
    bumps: dict[str, VersionBump] = Field(default_factory=dict)
    manifest_backups: dict[str, str] = Field(default_factory=dict)
    git: GitRecord = Field(default_factory=GitRecord)
    github: GitHubRecord = Field(default_factory=GitHubRecord)
    workspace_path: str
    source_path: str
    source_commit: str | None = None

    @classmethod
    def new(
        cls,
        *,
        bump_kind: BumpKind,
        workspace_path: Path,
        release_id: str | None = None,
        source_path: Path,
        source_commit: str | None = None,
        explicit_version: str | None = None,
        dry_run: bool = False,
        options: ReleaseOptions | None = None,
    ) -> ReleaseState:
        now = utcnow()
        return cls(
            release_id=release_id or new_release_id(bump_kind, now),
            created_at=now,
            updated_at=now,
            bump_kind=bump_kind,
            explicit_version=explicit_version,
            dry_run=dry_run,
            options=options or ReleaseOptions(),
            workspace_path=str(workspace_path),
            source_path=str(source_path),
            source_commit=source_commit,
        )

    # --- transitions (applied inside StateStore.commit) ---

    def advance(self, phase: ReleasePhase) -> None:
        """Move to ``phase``; only forward moves through PHASE_ORDER."""
        if phase in (ReleasePhase.FAILED, ReleasePhase.ROLLED_BACK):
            self.current_phase = phase
            return
        if self.current_phase in (ReleasePhase.FAILED, ReleasePhase.ROLLED_BACK):
            raise PhaseTransitionError(
                f"Cannot move a {self.current_phase.value} release to {phase.value}"
            )
        if phase.rank < self.current_phase.rank:
            raise PhaseTransitionError(
                f"Phase cannot go back from {self.current_phase.value} to {phase.value}"
            )
        self.current_phase = phase

    def fail(self, phase: ReleasePhase, reason: str) -> None:
        self.failed_phase = phase
        self.failure_reason = reason
        self.current_phase = ReleasePhase.FAILED

    def reopen(self) -> None:
        """Return a failed release to the phase it failed in."""
        if self.current_phase is not ReleasePhase.FAILED or self.failed_phase is None:
            raise PhaseTransitionError("Only a failed release can be reopened")
        self.current_phase = self.failed_phase
        self.failure_reason = None

    def set_status(
        self,
        name: str,
        status: PublishStatus,
        *,
        reason: str | None = None,
        retryable: bool = False,
        blocked_by: str | None = None,
    ) -> None:
        self.per_package_status[name] = PackageStatus(
            status=status, reason=reason, retryable=retryable, blocked_by=blocked_by
        )

    # --- queries ---

    @property
    def reached_phase(self) -> ReleasePhase:
        """The furthest phase the release got to (looks through Failed)."""
        if self.current_phase is ReleasePhase.FAILED and self.failed_phase:
            return self.failed_phase
        return self.current_phase

    def packages_with(self, *statuses: PublishStatus) -> list[str]:
        return sorted(
            name
            for name, entry in self.per_package_status.items()
            if entry.status in statuses
        )

    def new_version(self, name: str) -> str | None:
        bump = self.bumps.get(name)
        return bump.new if bump else None
