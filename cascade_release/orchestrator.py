"""Release pipeline: validate → bump → commit/tag → GitHub release → publish.

The orchestrator drives a release through a fixed phase order. Each phase
is a method that acts on the isolated workspace through the collaborators
and commits every meaningful step to the state store, so a crash at any
point loses no completed work and `resume` simply runs again from the
persisted phase.

Publishing walks the dependency graph tier by tier. Packages within a tier
publish concurrently on a bounded thread pool; the next tier starts only
when every package of the current one has a terminal status, which is what
guarantees a dependency reaches the registry before its dependents.
"""

from __future__ import annotations

import random
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import TypeVar

from .bundles import Platform, configured_platforms, default_target_triple
from .collaborators import Collaborators, PackageArtifact
from .config import GITHUB_TOKEN_VARS, REGISTRY_TOKEN_VAR, Credentials, ReleaseSettings
from .errors import (
    CascadeError,
    CredentialMissingError,
    ExitCode,
    PhaseTransitionError,
    PublishError,
    PublishPhaseError,
    RegistryRejectionError,
    ReleaseInterrupted,
    StateCorruptionError,
    StatePersistError,
    ValidationError,
)
from .graph import DependencyGraph
from .manifest import discover_packages
from .models import (
    FailurePolicy,
    PackageDescriptor,
    PublishStatus,
    RegistryTarget,
    ReleasePhase,
    ReleaseState,
    VersionBump,
    next_phase,
)
from .retry import RetryCancelled, RetryPolicy, call_with_retry, is_retryable
from .shell import say, step, warn
from .state import StateStore
from .versions import bump_version, parse_version
from .workspace import IsolatedWorkspace, WorkspaceManager

T = TypeVar("T")

# Errors that must reach the caller instead of failing the phase
_PROPAGATE = (StateCorruptionError, StatePersistError, ReleaseInterrupted, PhaseTransitionError)


@dataclass
class ReleaseOutcome:
    """Result of one orchestrator run."""

    completed: bool
    phase: ReleasePhase
    reason: str | None = None
    failed_packages: list[str] = field(default_factory=list)
    published: list[str] = field(default_factory=list)
    error: CascadeError | None = None

    @property
    def exit_code(self) -> ExitCode:
        if self.completed:
            return ExitCode.OK
        if isinstance(self.error, ValidationError):
            return ExitCode.VALIDATION
        return ExitCode.PARTIAL_RELEASE


class PublishOrchestrator:
    """Runs (or resumes) the release whose state is loaded in ``store``.

    Args:
        store: State store with the release state loaded and the lock held.
        workspaces: Manager that owns the isolated workspace.
        workspace: The isolated workspace every step runs in.
        collaborators: Adapters for manifests, git, the release host,
            the registry and the bundler.
        settings: Concurrency, retry and timeout tunables.
        credentials: Secrets from the environment.
        wait: Sleeps for a backoff delay; returns False when cancelled.
            Defaults to waiting on the cancel event.
        rng: Random source for backoff jitter.
        target_triple: Target for bundle builds (defaults to this host).
    """

    def __init__(
        self,
        store: StateStore,
        workspaces: WorkspaceManager,
        workspace: IsolatedWorkspace,
        collaborators: Collaborators,
        settings: ReleaseSettings,
        credentials: Credentials,
        *,
        wait: Callable[[float], bool] | None = None,
        rng: random.Random | None = None,
        target_triple: str | None = None,
    ) -> None:
        self.store = store
        self.workspaces = workspaces
        self.workspace = workspace
        self.root = workspace.path
        self.collab = collaborators
        self.settings = settings
        self.credentials = credentials
        self.policy = RetryPolicy(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            jitter=settings.jitter,
        )
        self.target_triple = target_triple or default_target_triple()
        self._wait = wait or (lambda delay: not self._cancel.wait(delay))
        self._rng = rng
        self._cancel = threading.Event()
        self._abort = threading.Event()
        self._graph: DependencyGraph | None = None
        self._handlers: dict[ReleasePhase, Callable[[], None]] = {
            ReleasePhase.VALIDATION: self._validate,
            ReleasePhase.VERSION_UPDATE: self._update_versions,
            ReleasePhase.GIT_OPERATIONS: self._git_operations,
            ReleasePhase.GITHUB_RELEASE: self._github_release,
            ReleasePhase.PUBLISHING: self._publish,
        }

    @property
    def state(self) -> ReleaseState:
        return self.store.state

    def cancel(self) -> None:
        """Stop scheduling work; in-flight attempts finish and commit."""
        self._cancel.set()

    def run(self) -> ReleaseOutcome:
        """Advance through the remaining phases.

        Returns:
            A completed outcome, or a failed one naming the phase and reason
            (the failure is committed so the release can be resumed).

        Raises:
            ReleaseInterrupted: On KeyboardInterrupt or cancel(); the current
                phase is left as is, not marked failed.
            StateCorruptionError: If the workspace no longer matches the state.
            StatePersistError: If a transition could not be saved.
        """
        if self.state.current_phase is ReleasePhase.ROLLED_BACK:
            raise PhaseTransitionError(f"Release {self.state.release_id} was rolled back")
        if self.state.current_phase is ReleasePhase.FAILED:
            reason = self.state.failure_reason
            self.store.commit(lambda s: s.reopen())
            say(f"Resuming at {self.state.current_phase.label} (last error: {reason})")

        phase = self.state.current_phase
        try:
            while phase is not ReleasePhase.COMPLETED:
                step(phase.label)
                try:
                    self._handlers[phase]()
                except _PROPAGATE:
                    raise
                except CascadeError as exc:
                    return self._fail(phase, exc)
                if self._cancel.is_set():
                    raise ReleaseInterrupted(f"Interrupted during {phase.label}")
                upcoming = next_phase(phase)
                self.store.commit(lambda s: s.advance(upcoming))
                phase = upcoming
        except KeyboardInterrupt as exc:
            self._cancel.set()
            raise ReleaseInterrupted(f"Interrupted during {phase.label}") from exc
        return self._complete()

    # --- plan -------------------------------------------------------------

    def graph(self) -> DependencyGraph:
        """The publish plan, re-derived from the manifests in the workspace."""
        if self._graph is None:
            packages = discover_packages(self.root)
            known = set(self.state.per_package_status)
            if known and known != set(packages):
                added = ", ".join(sorted(set(packages) - known)) or "none"
                removed = ", ".join(sorted(known - set(packages))) or "none"
                raise StateCorruptionError(
                    "Workspace packages changed since the release started "
                    f"(added: {added}; removed: {removed})"
                )
            self._graph = DependencyGraph.build(packages)
        return self._graph

    def _creates_github_release(self) -> bool:
        options = self.state.options
        return options.push and options.github_release and not self.state.dry_run

    def _bundle_platforms(self) -> list[Platform]:
        if not self.state.options.bundles:
            return []
        return configured_platforms(self.settings.bundles)

    def _missing_credentials(self, graph: DependencyGraph) -> list[str]:
        if self.state.dry_run:
            return []
        missing: list[str] = []
        publishes = any(
            p.registry_target is not RegistryTarget.NONE for p in graph.packages.values()
        )
        if publishes and not self.credentials.registry_token:
            missing.append(REGISTRY_TOKEN_VAR)
        if self._creates_github_release():
            if not self.credentials.github_token:
                missing.append(" or ".join(GITHUB_TOKEN_VARS))
            if any(p.needs_signing for p in self._bundle_platforms()):
                missing.extend(self.credentials.missing_signing())
        return missing

    # --- phases -----------------------------------------------------------

    def _validate(self) -> None:
        graph = self.graph()
        graph.validate()
        missing = self._missing_credentials(graph)
        if missing:
            raise CredentialMissingError(missing)

        if not self.state.per_package_status:

            def initialize(s: ReleaseState) -> None:
                for name in graph.order():
                    if graph.packages[name].registry_target is RegistryTarget.NONE:
                        s.set_status(name, PublishStatus.SKIPPED, reason="no registry target")
                    else:
                        s.set_status(name, PublishStatus.PENDING)

            self.store.commit(initialize)

        for index, tier in enumerate(graph.tiers()):
            say(f"tier {index}: {', '.join(tier)}")

    def _update_versions(self) -> None:
        graph = self.graph()
        editor = self.collab.editor

        # Bumps and backups are recorded before the first edit, so a resumed
        # run re-applies the same versions instead of bumping twice
        if not self.state.bumps:
            bumps: dict[str, VersionBump] = {}
            for name in graph.order():
                current = graph.packages[name].version
                try:
                    new = bump_version(
                        current, self.state.bump_kind, self.state.explicit_version
                    )
                except ValueError as exc:
                    raise ValidationError(f"{name}: {exc}") from exc
                bumps[name] = VersionBump(old=current, new=new)
            backups = {
                graph.packages[name].path: editor.snapshot(graph.packages[name])
                for name in graph.order()
            }

            def record(s: ReleaseState) -> None:
                s.bumps = bumps
                s.manifest_backups = backups

            self.store.commit(record)

        new_versions = {name: bump.new for name, bump in self.state.bumps.items()}
        for name in graph.order():
            package = graph.packages[name]
            deps = {dep: new_versions[dep] for dep in package.internal_deps}
            editor.bump(package, new_versions[name], deps)
            bump = self.state.bumps[name]
            say(f"{name}: {bump.old} → {bump.new}")

    def _package_tags(self) -> list[str]:
        return [f"{name}/v{bump.new}" for name, bump in self.state.bumps.items()]

    def _commit_message(self, release_tag: str) -> str:
        summary = "\n".join(
            f"  {name}: {bump.old} → {bump.new}" for name, bump in self.state.bumps.items()
        )
        return f"chore: release {release_tag}\n\n{summary}"

    def _git_operations(self) -> None:
        vcs = self.collab.vcs
        if self.state.dry_run:
            say("[dry-run] would commit the version bumps")
            say(f"[dry-run] would tag: {', '.join(self._package_tags())}")
            if self.state.options.push:
                say("[dry-run] would push to origin")
            return

        if self.state.git.release_tag is None:
            release_tag = vcs.next_release_tag()
            self.store.commit(lambda s: setattr(s.git, "release_tag", release_tag))
        release_tag = self.state.git.release_tag

        if self.state.git.commit is None:
            sha = vcs.commit(self._commit_message(release_tag))
            self.store.commit(lambda s: setattr(s.git, "commit", sha))
            say(f"Committed {sha[:12]}")

        self._clear_runway()
        for tag in [*self._package_tags(), release_tag]:
            if tag in self.state.git.tags:
                continue
            vcs.tag(tag, f"Release {tag}")
            self.store.commit(lambda s, tag=tag: s.git.tags.append(tag))
            say(f"Tagged {tag}")

        if self.state.options.push and not self.state.git.pushed:
            self._retry(vcs.push)
            self.store.commit(lambda s: setattr(s.git, "pushed", True))
            say("Pushed to origin")

    def _clear_runway(self) -> None:
        """Delete package tags an earlier failed attempt left for these versions.

        Only tags this release has not recorded are touched. The remote is
        checked too unless the release stays local.
        """
        vcs = self.collab.vcs
        check_remote = self.state.options.push and not self.state.git.pushed
        for tag in self._package_tags():
            if tag in self.state.git.tags:
                continue
            on_remote = check_remote and self._retry(lambda: vcs.tag_exists(tag, remote=True))
            if not (on_remote or vcs.tag_exists(tag, remote=False)):
                continue
            warn(f"Found tag {tag} left by a failed release; deleting it")
            self._retry(lambda: vcs.delete_tag(tag, remote=on_remote))

    def _is_prerelease(self) -> bool:
        """0.x releases are marked as prereleases on GitHub."""
        versions = [parse_version(bump.new) for bump in self.state.bumps.values()]
        return bool(versions) and all(v.major == 0 for v in versions)

    def _release_notes(self) -> str:
        if self.state.options.release_notes:
            return self.state.options.release_notes
        lines = ["**Released:**"]
        for name, bump in self.state.bumps.items():
            lines.append(f"- {name} {bump.new}")
        return "\n".join(lines)

    def _github_release(self) -> None:
        if not self._creates_github_release():
            if self.state.dry_run and self.state.options.github_release:
                say("[dry-run] would create a GitHub release")
            else:
                say("Skipped")
            return
        host = self.collab.host

        if self.state.github.release_id is None:
            tag = self.state.git.release_tag
            hosted = self._retry(
                lambda: host.create_release(
                    tag,
                    self._release_notes(),
                    draft=self.state.options.github_draft,
                    prerelease=self._is_prerelease(),
                )
            )

            def record(s: ReleaseState) -> None:
                s.github.release_id = hosted.id
                s.github.url = hosted.url

            self.store.commit(record)
            say(f"Created release {hosted.url or hosted.id}")
        release_id = self.state.github.release_id

        for platform in self._bundle_platforms():
            uploaded = self.state.github.uploaded_artifacts
            if any(fnmatch(name, platform.artifact_glob) for name in uploaded):
                continue
            artifact = self.collab.bundler.build(platform, self.target_triple)
            self._retry(lambda: host.upload_artifact(release_id, artifact))
            self.store.commit(
                lambda s, name=artifact.name: s.github.uploaded_artifacts.append(name)
            )
            say(f"Uploaded {artifact.name}")

    def _publish(self) -> None:
        graph = self.graph()
        if self.state.dry_run:
            for index, tier in enumerate(graph.tiers()):
                say(f"[dry-run] tier {index}: would publish {', '.join(tier)}")

            def skip_all(s: ReleaseState) -> None:
                for name in graph.order():
                    if not s.per_package_status[name].terminal:
                        s.set_status(name, PublishStatus.SKIPPED, reason="dry run")

            self.store.commit(skip_all)
            return

        resumed_in_flight = set(self.state.packages_with(PublishStatus.IN_PROGRESS))
        retry = [
            name
            for name in graph.order()
            if self.state.per_package_status[name].status
            in (PublishStatus.FAILED, PublishStatus.SKIPPED)
            and self._needs_publish(name)
        ]
        if retry:

            def reset(s: ReleaseState) -> None:
                for name in retry:
                    s.set_status(name, PublishStatus.PENDING)

            self.store.commit(reset)

        for index, tier in enumerate(graph.tiers()):
            if self._abort.is_set():
                break
            todo = [name for name in tier if self._ready(name)]
            if not todo:
                say(f"Tier {index}: nothing to publish")
                continue
            self._run_tier(index, todo, resumed_in_flight)
            if self._cancel.is_set():
                raise ReleaseInterrupted(f"Interrupted after tier {index}")

        failed = self.state.packages_with(PublishStatus.FAILED)
        outstanding = self.state.packages_with(PublishStatus.PENDING, PublishStatus.IN_PROGRESS)
        if failed or outstanding:
            message = f"{len(failed)} package(s) failed to publish: {', '.join(failed)}"
            if outstanding:
                message += f" ({len(outstanding)} not attempted)"
            raise PublishPhaseError(message, failed)

    # --- publishing internals ---------------------------------------------

    def _needs_publish(self, name: str) -> bool:
        """Whether a run starting now should (re)attempt ``name``."""
        entry = self.state.per_package_status[name]
        if entry.status in (PublishStatus.PENDING, PublishStatus.IN_PROGRESS):
            return True
        if entry.status is PublishStatus.SKIPPED:
            return entry.blocked_by is not None
        if entry.status is PublishStatus.FAILED:
            used = self.state.retry_counts.get(name, 0)
            return entry.retryable and used < self.policy.max_attempts
        return False

    def _ready(self, name: str) -> bool:
        """Pending and unblocked; a blocked package is committed as skipped."""
        entry = self.state.per_package_status[name]
        if entry.status not in (PublishStatus.PENDING, PublishStatus.IN_PROGRESS):
            return False
        blocker = self._blocker(name)
        if blocker is None:
            return True
        self.store.commit(
            lambda s: s.set_status(
                name,
                PublishStatus.SKIPPED,
                reason=f"dependency {blocker} was not published",
                blocked_by=blocker,
            )
        )
        warn(f"{name} skipped: dependency {blocker} was not published")
        return False

    def _blocker(self, name: str) -> str | None:
        for dep in sorted(self.graph().packages[name].internal_deps):
            entry = self.state.per_package_status[dep]
            if entry.status is PublishStatus.PUBLISHED:
                continue
            if entry.status is PublishStatus.SKIPPED and entry.blocked_by is None:
                continue
            return dep
        return None

    def _run_tier(self, index: int, names: list[str], resumed_in_flight: set[str]) -> None:
        say(f"Tier {index}: {', '.join(names)}")
        pool = ThreadPoolExecutor(
            max_workers=min(self.settings.max_concurrency, len(names)),
            thread_name_prefix=f"publish-tier{index}",
        )
        futures = [
            pool.submit(self._publish_package, name, name in resumed_in_flight)
            for name in names
        ]
        try:
            for future in as_completed(futures):
                future.result()
        except BaseException:
            self._cancel.set()
            pool.shutdown(wait=True, cancel_futures=True)
            raise
        pool.shutdown(wait=True)

    def _artifact(self, package: PackageDescriptor) -> PackageArtifact:
        return PackageArtifact(
            name=package.name,
            version=self.state.new_version(package.name) or package.version,
            path=self.root / package.path,
            registry_target=package.registry_target,
            dist_dir=self.root / "dist" / package.name,
        )

    def _publish_package(self, name: str, was_in_flight: bool) -> None:
        if self._cancel.is_set() or self._abort.is_set():
            return
        artifact = self._artifact(self.graph().packages[name])
        self.store.commit(lambda s: s.set_status(name, PublishStatus.IN_PROGRESS))
        # A crashed, timed-out or dropped upload may still have reached the registry
        may_have_landed = was_in_flight

        def on_failure(attempt: int, exc: BaseException, delay: float | None) -> None:
            nonlocal may_have_landed
            may_have_landed = may_have_landed or is_retryable(exc)
            self.store.commit(lambda s: s.retry_counts.__setitem__(name, attempt))
            if delay is not None:
                say(f"{name}: attempt {attempt} failed ({exc}); retrying in {delay:.1f}s")

        try:
            call_with_retry(
                lambda: self.collab.registry.publish(
                    artifact, timeout=self.settings.publish_timeout
                ),
                self.policy,
                attempts_used=self.state.retry_counts.get(name, 0),
                on_failure=on_failure,
                wait=self._wait,
                rng=self._rng,
            )
        except RetryCancelled:
            self._requeue(name)
            return
        except RegistryRejectionError as exc:
            if exc.already_published and may_have_landed:
                found = "at resume" if was_in_flight else "after an unfinished attempt"
                self.store.commit(
                    lambda s: s.set_status(
                        name, PublishStatus.PUBLISHED, reason=f"found on registry {found}"
                    )
                )
                say(f"{name} {artifact.version} already published")
                return
            self._record_failure(name, exc)
            return
        except (PublishError, OSError) as exc:
            self._record_failure(name, exc)
            return

        self.store.commit(lambda s: s.set_status(name, PublishStatus.PUBLISHED))
        say(f"✓ {name} {artifact.version}")

    def _requeue(self, name: str) -> None:
        self.store.commit(
            lambda s: s.set_status(name, PublishStatus.PENDING, reason="interrupted")
        )

    def _record_failure(self, name: str, exc: BaseException) -> None:
        if self._cancel.is_set():
            # Ctrl-C reaches the uv child too; its death says nothing about the package
            self._requeue(name)
            return
        retryable = is_retryable(exc)
        self.store.commit(
            lambda s: s.set_status(
                name, PublishStatus.FAILED, reason=str(exc), retryable=retryable
            )
        )
        warn(f"{name} failed: {exc}")
        if self.state.options.failure_policy is FailurePolicy.ABORT:
            self._abort.set()

    # --- helpers ----------------------------------------------------------

    def _retry(self, operation: Callable[[], T]) -> T:
        """Retry a git or release-host call that hit a transient error."""
        try:
            return call_with_retry(operation, self.policy, wait=self._wait, rng=self._rng)
        except RetryCancelled as exc:
            raise ReleaseInterrupted("Interrupted while waiting to retry") from exc

    def _fail(self, phase: ReleasePhase, exc: CascadeError) -> ReleaseOutcome:
        reason = str(exc)
        self.store.commit(lambda s: s.fail(phase, reason))
        warn(f"{phase.label} failed: {reason}")
        return ReleaseOutcome(
            completed=False,
            phase=phase,
            reason=reason,
            failed_packages=exc.failed if isinstance(exc, PublishPhaseError) else [],
            published=self.state.packages_with(PublishStatus.PUBLISHED),
            error=exc,
        )

    def _complete(self) -> ReleaseOutcome:
        published = self.state.packages_with(PublishStatus.PUBLISHED)
        keep = self.state.options.keep_temp
        self.workspaces.release(self.workspace, keep=keep)
        self.store.lock.release()
        step("Release complete")
        if published:
            say(f"Published: {', '.join(published)}")
        if keep:
            say(f"Isolated workspace kept at {self.workspace.path}")
        return ReleaseOutcome(completed=True, phase=ReleasePhase.COMPLETED, published=published)
