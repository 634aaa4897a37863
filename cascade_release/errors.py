"""Error taxonomy for the release engine.

Every error the engine raises on purpose derives from CascadeError, which
carries the process exit code the CLI should use and an optional
remediation hint shown to the user.
"""

from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes, distinct per failure family for scripting."""

    OK = 0
    ERROR = 1
    VALIDATION = 3
    LOCKED = 4
    PARTIAL_RELEASE = 5
    STATE_CORRUPT = 6
    WORKSPACE_LOST = 7
    INTERRUPTED = 130


class CascadeError(Exception):
    """Base class for all engine errors."""

    exit_code: ExitCode = ExitCode.ERROR
    hint: str | None = None

    def __init__(self, message: str, *, hint: str | None = None) -> None:
        super().__init__(message)
        if hint is not None:
            self.hint = hint


# --- Validation failures -------------------------------------------------


class ValidationError(CascadeError):
    exit_code = ExitCode.VALIDATION
    hint = "Fix the workspace, then run `cascade-release validate`."


class ManifestParseError(ValidationError):
    """A pyproject.toml could not be read or is missing required data."""


class GraphCycleError(ValidationError):
    """The internal dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        path = " → ".join([*cycle, cycle[0]]) if cycle else "<empty>"
        super().__init__(f"Dependency cycle detected: {path}")


class UnknownDependencyError(ValidationError):
    """A package declares an internal dependency that is not in the workspace."""

    def __init__(self, package: str, dependency: str) -> None:
        self.package = package
        self.dependency = dependency
        super().__init__(
            f"{package} depends on workspace package {dependency!r}, "
            "which is not a workspace member"
        )


class CredentialMissingError(ValidationError):
    """A credential needed by a requested phase is not set."""

    hint = "Export the listed environment variables, then `cascade-release resume`."

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__("Missing credentials: " + ", ".join(missing))


# --- Lock, state and workspace ------------------------------------------


class AlreadyInProgressError(CascadeError):
    exit_code = ExitCode.LOCKED
    hint = (
        "Another release holds the lock. Run `cascade-release resume` to "
        "continue it, `cascade-release rollback` to undo it, or "
        "`cascade-release cleanup` to discard it."
    )


class NoActiveReleaseError(CascadeError):
    hint = "Start one with `cascade-release release patch|minor|major`."


class WorkspaceLostError(CascadeError):
    exit_code = ExitCode.WORKSPACE_LOST
    hint = (
        "The isolated workspace is gone. Run `cascade-release cleanup` and "
        "start a fresh release."
    )


class StateCorruptionError(CascadeError):
    exit_code = ExitCode.STATE_CORRUPT
    hint = (
        "Automated resume and rollback are disabled. Inspect the state file "
        "by hand, then `cascade-release cleanup`."
    )


class StatePersistError(CascadeError):
    """Writing the state document failed; the transition was not applied."""


class PhaseTransitionError(CascadeError):
    """A phase change would move the release backwards."""


# --- Per-package publish errors -----------------------------------------


class PublishError(CascadeError):
    """Base class for errors from a single publish attempt."""

    retryable = False


class TransientNetworkError(PublishError):
    """Timeouts, connection resets, 5xx responses. Retried with backoff."""

    retryable = True


class RateLimitError(TransientNetworkError):
    """The registry asked us to slow down."""

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class RegistryRejectionError(PublishError):
    """The registry refused the upload. Never retried."""

    def __init__(self, message: str, *, already_published: bool = False) -> None:
        super().__init__(message)
        self.already_published = already_published


# --- Collaborator failures ----------------------------------------------


class SourceControlError(CascadeError):
    pass


class ReleaseHostError(CascadeError):
    pass


class BundleError(CascadeError):
    pass


# --- Orchestration and rollback -----------------------------------------


class PublishPhaseError(CascadeError):
    """One or more packages failed to publish."""

    def __init__(self, message: str, failed: list[str]) -> None:
        super().__init__(message)
        self.failed = failed


class ReleaseFailedError(CascadeError):
    exit_code = ExitCode.PARTIAL_RELEASE
    hint = (
        "Run `cascade-release resume` after fixing the cause, or "
        "`cascade-release rollback` to undo the completed phases."
    )


class ReleaseInterrupted(CascadeError):
    exit_code = ExitCode.INTERRUPTED
    hint = "Progress is saved. Run `cascade-release resume` to continue."


class RollbackRefusedError(CascadeError):
    hint = "The release is public. Pass --force to roll it back anyway."


class RollbackIncompleteError(CascadeError):
    hint = (
        "Some undo steps failed; completed steps are recorded. Fix the cause "
        "and rerun `cascade-release rollback`, or pass --force."
    )

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Rollback incomplete:\n" + "\n".join(f"  - {e}" for e in errors))
