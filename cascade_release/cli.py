"""CLI entry point for cascade-release."""

from __future__ import annotations

import functools
import json
import shutil
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from .bundles import Platform, configured_platforms, default_target_triple
from .collaborators import GhReleaseHost, default_collaborators
from .config import GITHUB_TOKEN_VARS, REGISTRY_TOKEN_VAR, Credentials, load_settings
from .errors import (
    CascadeError,
    CredentialMissingError,
    ExitCode,
    NoActiveReleaseError,
    ReleaseFailedError,
    SourceControlError,
    ValidationError,
    WorkspaceLostError,
)
from .graph import DependencyGraph
from .manifest import discover_packages
from .models import (
    BumpKind,
    FailurePolicy,
    PublishStatus,
    ReleaseOptions,
    ReleasePhase,
    ReleaseState,
    new_release_id,
)
from .orchestrator import PublishOrchestrator, ReleaseOutcome
from .rollback import RollbackEngine
from .shell import git, say, step, warn
from .state import ReleaseLock, StateStore, state_path_for
from .versions import bump_version, parse_bump
from .workspace import IsolatedWorkspace, WorkspaceManager

F = TypeVar("F", bound=Callable[..., Any])

_STATUS_MARKS = {
    PublishStatus.PENDING: "·",
    PublishStatus.IN_PROGRESS: "…",
    PublishStatus.PUBLISHED: "✓",
    PublishStatus.FAILED: "✗",
    PublishStatus.SKIPPED: "-",
}


class Session:
    """Per-invocation context: the source workspace and any loaded release."""

    def __init__(self, source: Path) -> None:
        self.source = source.resolve()
        self.workspaces = WorkspaceManager(self.source)
        self.store: StateStore | None = None

    def open(self, workspace: IsolatedWorkspace, lock: ReleaseLock | None = None) -> StateStore:
        self.store = StateStore(state_path_for(workspace.path), lock or self.workspaces.lock())
        return self.store

    def open_active(self, *, include_kept: bool = False) -> tuple[IsolatedWorkspace, StateStore]:
        """Locate the active release (or the last kept one) and load its state."""
        try:
            workspace = self.workspaces.locate()
        except NoActiveReleaseError:
            if not include_kept:
                raise
            workspace = self.workspaces.locate_last()
        store = self.open(workspace)
        store.load()
        return workspace, store

    def loaded_state(self) -> ReleaseState | None:
        if self.store is None:
            return None
        try:
            return self.store.state
        except NoActiveReleaseError:
            return None


def reports_errors(func: F) -> F:
    """Turn engine errors into a status snapshot, a hint and an exit code."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except CascadeError as exc:
            session = click.get_current_context().find_object(Session)
            _exit_with(exc, session.loaded_state() if session else None)

    return wrapper  # type: ignore[return-value]


def _exit_with(exc: CascadeError, state: ReleaseState | None) -> None:
    click.echo(f"\nError: {exc}", err=True)
    if state is not None:
        click.echo("", err=True)
        _echo_status(state, err=True)
    if exc.hint:
        click.echo(f"\nHint: {exc.hint}", err=True)
    click.get_current_context().exit(int(exc.exit_code))


def _echo_status(state: ReleaseState, err: bool = False) -> None:
    echo = functools.partial(click.echo, err=err)
    flags = " (dry run)" if state.dry_run else ""
    echo(f"Release {state.release_id}{flags}")
    if state.current_phase is ReleasePhase.FAILED and state.failed_phase:
        echo(f"  Phase:   Failed in {state.failed_phase.label}")
        echo(f"  Reason:  {state.failure_reason}")
    else:
        echo(f"  Phase:   {state.current_phase.label}")
    echo(f"  Updated: {state.updated_at:%Y-%m-%d %H:%M:%S} UTC")
    if state.git.commit:
        pushed = ", pushed" if state.git.pushed else ""
        echo(f"  Commit:  {state.git.commit[:12]}{pushed}")
    if state.git.tags:
        echo(f"  Tags:    {', '.join(state.git.tags)}")
    if state.github.release_id:
        echo(f"  GitHub:  {state.github.url or state.github.release_id}")
    if not state.per_package_status:
        return

    echo("  Packages:")
    width = max(len(name) for name in state.per_package_status)
    for name, entry in state.per_package_status.items():
        bump = state.bumps.get(name)
        version = f"{bump.old} → {bump.new}" if bump else ""
        line = f"    {_STATUS_MARKS[entry.status]} {name:<{width}}  {version:<20} {entry.status.value}"
        if entry.reason:
            line += f" ({entry.reason})"
        attempts = state.retry_counts.get(name)
        if attempts:
            line += f" [{attempts} attempt(s)]"
        echo(line)


def _finish(outcome: ReleaseOutcome) -> None:
    if outcome.completed:
        click.echo(f"\n✓ Release complete ({len(outcome.published)} package(s) published)")
        return
    if outcome.exit_code is ExitCode.VALIDATION and outcome.error is not None:
        raise outcome.error
    raise ReleaseFailedError(f"{outcome.phase.label} failed: {outcome.reason}")


def _parse_bump(bump: str) -> tuple[BumpKind, str | None]:
    try:
        return parse_bump(bump)
    except ValueError:
        raise ValidationError(
            f"Invalid bump {bump!r}: expected patch, minor, major or a version like 1.4.0"
        ) from None


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


def _orchestrator(workspace: IsolatedWorkspace, store: StateStore, session: Session) -> PublishOrchestrator:
    settings = load_settings(workspace.path)
    credentials = Credentials.from_env()
    return PublishOrchestrator(
        store,
        session.workspaces,
        workspace,
        default_collaborators(workspace.path, settings, credentials),
        settings,
        credentials,
    )


@click.group()
@click.version_option(package_name="cascade-release")
@click.option(
    "--source",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    show_default=True,
    help="Workspace root to release.",
)
@click.pass_context
def cli(ctx: click.Context, source: Path) -> None:
    """Release every package of a uv workspace, in dependency order."""
    ctx.obj = Session(source)


@cli.command()
@click.argument("bump")
@click.option("--dry-run", is_flag=True, help="Bump versions in the isolated clone only.")
@click.option("--no-push", is_flag=True, help="Do not push (implies --no-github-release).")
@click.option("--no-github-release", is_flag=True, help="Skip the GitHub release.")
@click.option("--no-bundles", is_flag=True, help="Do not build or upload bundles.")
@click.option("--keep-temp", is_flag=True, help="Keep the isolated clone afterwards.")
@click.option(
    "--policy",
    type=click.Choice([p.value for p in FailurePolicy]),
    default=None,
    help="On a fatal publish error: abort the phase, or continue independent packages.",
)
@click.option("--github-draft", is_flag=True, help="Create the GitHub release as a draft.")
@click.option(
    "--release-notes",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="File with the GitHub release notes [default: generated from the bumps].",
)
@click.pass_obj
@reports_errors
def release(
    session: Session,
    bump: str,
    dry_run: bool,
    no_push: bool,
    no_github_release: bool,
    no_bundles: bool,
    keep_temp: bool,
    policy: str | None,
    github_draft: bool,
    release_notes: Path | None,
) -> None:
    """Release all packages: BUMP is patch, minor, major or a version."""
    kind, explicit = _parse_bump(bump)
    settings = load_settings(session.source)
    notes = release_notes.read_text(encoding="utf-8") if release_notes else None
    if notes is not None and not notes.strip():
        raise ValidationError(f"Release notes file {release_notes} is empty")

    release_id = new_release_id(kind)
    lock = session.workspaces.lock()
    # Nothing is written before the lock is held
    lock.acquire(release_id)
    workspace: IsolatedWorkspace | None = None
    try:
        step(f"Preparing isolated workspace for {release_id}")
        workspace = session.workspaces.acquire()
        say(f"{workspace.path} at {(workspace.source_commit or '?')[:12]}")
        options = ReleaseOptions(
            push=not no_push,
            github_release=not (no_github_release or no_push),
            bundles=not no_bundles,
            keep_temp=keep_temp,
            failure_policy=FailurePolicy(policy) if policy else settings.failure_policy,
            github_draft=github_draft,
            release_notes=notes,
        )
        store = session.open(workspace, lock)
        store.initialize(
            ReleaseState.new(
                release_id=release_id,
                bump_kind=kind,
                explicit_version=explicit,
                dry_run=dry_run,
                options=options,
                workspace_path=workspace.path,
                source_path=session.source,
                source_commit=workspace.source_commit,
            )
        )
    except BaseException:
        # No state was written: leave nothing behind
        if workspace is not None:
            session.workspaces.release(workspace, keep=False)
        lock.release()
        raise

    outcome = _orchestrator(workspace, store, session).run()
    _finish(outcome)


@cli.command()
@click.pass_obj
@reports_errors
def resume(session: Session) -> None:
    """Continue the interrupted or failed release from where it stopped."""
    workspace, store = session.open_active()
    store.lock.claim(store.state.release_id)
    say(f"Resuming {store.state.release_id} at {store.state.reached_phase.label}")
    outcome = _orchestrator(workspace, store, session).run()
    _finish(outcome)


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the state document as JSON.")
@click.pass_obj
@reports_errors
def status(session: Session, as_json: bool) -> None:
    """Show the active release and per-package publish status."""
    try:
        _, store = session.open_active()
    except NoActiveReleaseError:
        if as_json:
            click.echo(json.dumps({"release": None, "lock": None}))
        else:
            click.echo("No release in progress.")
        return
    holder = store.lock.holder()
    if as_json:
        payload = {"release": store.state.model_dump(mode="json"), "lock": holder}
        click.echo(json.dumps(payload, indent=2))
        return
    _echo_status(store.state)
    if holder:
        click.echo(f"  Lock:    pid {holder.get('pid', '?')} since {holder.get('acquired_at', '?')}")


@cli.command()
@click.option(
    "--force",
    is_flag=True,
    help="Roll back a completed release kept with --keep-temp; finish despite errors.",
)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation.")
@click.pass_obj
@reports_errors
def rollback(session: Session, force: bool, yes: bool) -> None:
    """Undo the active release (tags, commit, GitHub release).

    A completed release removes its clone and state unless it ran with
    --keep-temp, so only a release kept that way can be rolled back with
    --force afterwards.
    """
    try:
        workspace, store = session.open_active(include_kept=True)
    except NoActiveReleaseError as exc:
        raise NoActiveReleaseError(
            f"{exc}; nothing to roll back",
            hint="Completed releases are only kept for rollback when run with --keep-temp.",
        ) from None
    store.lock.claim(store.state.release_id)
    engine = RollbackEngine(
        store,
        session.workspaces,
        workspace,
        default_collaborators(workspace.path, load_settings(workspace.path), Credentials.from_env()),
    )

    click.echo(f"Rollback plan for {store.state.release_id}:")
    for line in engine.plan():
        click.echo(f"  - {line}")
    if not yes:
        click.confirm("Proceed?", abort=True)

    report = engine.rollback(force=force)
    click.echo()
    if report.not_unpublished:
        click.echo("Not unpublished (registries are append-only):")
        for name in report.not_unpublished:
            click.echo(f"  {name}")
    if report.errors:
        click.echo("Finished with errors (--force):")
        for error in report.errors:
            click.echo(f"  ✗ {error}")
    click.echo("✓ Rolled back")


@cli.command()
@click.pass_obj
@reports_errors
def cleanup(session: Session) -> None:
    """Discard the active release: its clone, pointers and lock."""
    lock = session.workspaces.lock()
    holder = lock.holder()
    pointers = (session.workspaces.pointer_path, session.workspaces.last_pointer_path)
    if holder is None and not any(p.exists() for p in pointers):
        click.echo("Nothing to clean up.")
        return
    # Refuses while a live process holds the lock
    lock.claim((holder or {}).get("release_id", "cleanup"))

    for locate in (session.workspaces.locate, session.workspaces.locate_last):
        try:
            workspace = locate()
        except (NoActiveReleaseError, WorkspaceLostError):
            continue
        store = StateStore(state_path_for(workspace.path), lock)
        try:
            state = store.load()
        except CascadeError:
            state = None
        if state is not None and (state.git.pushed or state.packages_with(PublishStatus.PUBLISHED)):
            warn(
                f"{state.release_id} already pushed or published; remote changes "
                "are left as they are"
            )
        session.workspaces.release(workspace, keep=False)
        click.echo(f"Removed {workspace.path}")

    session.workspaces.forget()
    lock.release()
    click.echo("✓ Cleaned up")


def _credential_warnings() -> list[str]:
    credentials = Credentials.from_env()
    warnings = []
    if not credentials.registry_token:
        warnings.append(f"{REGISTRY_TOKEN_VAR} is not set (needed to publish)")
    if not credentials.github_token:
        warnings.append(f"{' / '.join(GITHUB_TOKEN_VARS)} not set (needed for the GitHub release)")
    return warnings


def _echo_json_error(exc: CascadeError) -> None:
    click.echo(json.dumps({"valid": False, "error": str(exc), "hint": exc.hint}, indent=2))
    click.get_current_context().exit(int(exc.exit_code))


@cli.command()
@click.option("--verbose", "-v", is_flag=True, help="Show every package's details.")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.pass_obj
@reports_errors
def validate(session: Session, verbose: bool, as_json: bool) -> None:
    """Check manifests, the dependency graph and settings. Changes nothing."""
    try:
        packages = discover_packages(session.source)
        graph = DependencyGraph.build(packages)
        settings = load_settings(session.source)
    except CascadeError as exc:
        if not as_json:
            raise
        _echo_json_error(exc)
        return

    if as_json:
        report = {
            "valid": True,
            "packages": [
                {
                    "name": name,
                    "version": graph.packages[name].version,
                    "path": graph.packages[name].path,
                    "tier": graph.tier_of(name),
                    "internal_deps": sorted(graph.packages[name].internal_deps),
                    "registry": graph.packages[name].registry_target.value,
                }
                for name in graph.order()
            ],
            "tiers": graph.tiers(),
            "settings": settings.model_dump(mode="json", by_alias=True),
            "warnings": _credential_warnings(),
        }
        click.echo(json.dumps(report, indent=2))
        return

    click.echo(f"✓ {len(graph)} packages, {len(graph.tiers())} tiers, no cycles")
    for index, tier in enumerate(graph.tiers()):
        click.echo(f"  tier {index}: {', '.join(tier)}")

    if verbose:
        click.echo("\nPackages:")
        for name in graph.order():
            info = graph.packages[name]
            deps = ", ".join(sorted(info.internal_deps)) or "-"
            click.echo(f"  {name} {info.version}")
            click.echo(f"    path:     {info.path}")
            click.echo(f"    deps:     {deps}")
            click.echo(f"    registry: {info.registry_target.value}")
        click.echo("\nSettings:")
        for key, value in settings.model_dump(by_alias=True).items():
            click.echo(f"  {key} = {value}")

    for warning in _credential_warnings():
        warn(warning)


@cli.command()
@click.argument("bump")
@click.option("--detailed", "-d", is_flag=True, help="Also list the manifests and publish order.")
@click.option("--json", "as_json", is_flag=True, help="Print the preview as JSON.")
@click.pass_obj
@reports_errors
def preview(session: Session, bump: str, detailed: bool, as_json: bool) -> None:
    """Show the versions BUMP would produce. Changes nothing."""
    kind, explicit = _parse_bump(bump)
    graph = DependencyGraph.build(discover_packages(session.source))

    rows: list[dict[str, Any]] = []
    for name in graph.order():
        info = graph.packages[name]
        try:
            new = bump_version(info.version, kind, explicit)
        except ValueError as exc:
            raise ValidationError(f"Cannot bump {name}: {exc}") from exc
        rows.append(
            {
                "name": name,
                "current": info.version,
                "new": new,
                "manifest": (Path(info.path) / "pyproject.toml").as_posix(),
                "tier": graph.tier_of(name),
                "dependents": sorted(graph.dependents(name)),
            }
        )

    if as_json:
        click.echo(json.dumps({"bump": bump, "packages": rows, "tiers": graph.tiers()}, indent=2))
        return

    click.echo(f"Version bump ({bump}):")
    width = max((len(row["name"]) for row in rows), default=0)
    for row in rows:
        click.echo(f"  {row['name']:<{width}}  {row['current']} → {row['new']}")
    if not detailed:
        return

    click.echo(f"\nFiles to modify ({len(rows)}):")
    for row in rows:
        click.echo(f"  • {row['manifest']}")

    tiers = graph.tiers()
    click.echo(
        f"\nPublish order: {_plural(len(rows), 'package')} in {_plural(len(tiers), 'tier')}"
    )
    by_name = {row["name"]: row for row in rows}
    for index, tier in enumerate(tiers):
        click.echo(f"  Tier {index} ({_plural(len(tier), 'package')}):")
        for name in tier:
            dependents = len(by_name[name]["dependents"])
            click.echo(f"    • {name} ({_plural(dependents, 'dependent')})")


@cli.command()
@click.option(
    "--platform",
    "platforms",
    multiple=True,
    help="Bundle format (deb, rpm, appimage, app, dmg, msi, exe). Repeatable.",
)
@click.option("--build/--no-build", default=True, show_default=True, help="Build the bundles.")
@click.option("--upload", is_flag=True, help="Upload bundles to the latest GitHub release.")
@click.option("--target", default=None, help="Target triple (defaults to this host).")
@click.option(
    "--out-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Where bundles are collected [default: <source>/dist/bundles].",
)
@click.pass_obj
@reports_errors
def bundle(
    session: Session,
    platforms: tuple[str, ...],
    build: bool,
    upload: bool,
    target: str | None,
    out_dir: Path | None,
) -> None:
    """Build platform bundles, and optionally attach them to a release."""
    settings = load_settings(session.source)
    credentials = Credentials.from_env()
    selected = (
        [Platform.parse(p) for p in platforms]
        if platforms
        else configured_platforms(settings.bundles)
    )
    if not selected:
        raise ValidationError(
            "No bundle platforms configured for this host",
            hint="Add commands under [tool.cascade-release.bundles].",
        )
    out_dir = (out_dir or session.source / "dist" / "bundles").resolve()
    target = target or default_target_triple()

    missing: list[str] = []
    if build and any(p.needs_signing for p in selected):
        missing.extend(credentials.missing_signing())
    if upload and not credentials.github_token:
        missing.append(" or ".join(GITHUB_TOKEN_VARS))
    if missing:
        raise CredentialMissingError(missing)

    artifacts: list[Path] = []
    if build:
        # Build from a clean clone so the working tree stays untouched
        with session.workspaces.scratch() as workspace:
            collab = default_collaborators(workspace.path, settings, credentials)
            for platform in selected:
                step(f"Building {platform.value} for {target}")
                artifact = collab.bundler.build(platform, target)
                out_dir.mkdir(parents=True, exist_ok=True)
                destination = out_dir / artifact.name
                if destination.is_dir():
                    shutil.rmtree(destination)
                destination.unlink(missing_ok=True)
                shutil.move(str(artifact), destination)
                artifacts.append(destination)
                say(str(destination))
    else:
        for platform in selected:
            found = sorted(out_dir.glob(platform.artifact_glob))
            if not found:
                raise ValidationError(f"No {platform.value} bundle in {out_dir}")
            artifacts.append(found[-1])

    if upload:
        tags = git("tag", "--list", "r*", "--sort=-v:refname", cwd=session.source, check=False)
        tag = next((t for t in tags.splitlines() if t[1:].isdigit()), None)
        if tag is None:
            raise SourceControlError("No release tag (r<N>) found to upload to")
        step(f"Uploading to release {tag}")
        host = GhReleaseHost(session.source, credentials.github_token)
        for artifact in artifacts:
            host.upload_artifact(tag, artifact)
            say(f"✓ {artifact.name}")

