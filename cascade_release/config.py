"""Release settings and credentials.

Settings come from the root pyproject.toml ([tool.cascade-release]) with a
few environment overrides for tuning on CI; credentials come only from the
environment.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticError

from .errors import ManifestParseError
from .models import FailurePolicy
from .toml import get_tool_table, load_pyproject

REGISTRY_TOKEN_VAR = "UV_PUBLISH_TOKEN"
GITHUB_TOKEN_VARS = ("GH_TOKEN", "GITHUB_TOKEN")
SIGNING_VARS = ("APPLE_CERTIFICATE", "APPLE_CERTIFICATE_PASSWORD", "APPLE_TEAM_ID")
NOTARIZATION_VARS = ("APPLE_API_KEY", "APPLE_API_ISSUER", "APPLE_API_KEY_CONTENT")


class ReleaseSettings(BaseModel):
    """Tunables for a release, read from [tool.cascade-release]."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    max_concurrency: int = Field(default=4, ge=1, le=16, alias="max-concurrency")
    max_attempts: int = Field(default=3, ge=1, le=10, alias="max-attempts")
    base_delay: float = Field(default=1.0, ge=0, alias="base-delay")
    max_delay: float = Field(default=60.0, ge=0, alias="max-delay")
    jitter: float = Field(default=0.5, ge=0, lt=1, alias="jitter")
    publish_timeout: float = Field(default=600.0, gt=0, le=3600, alias="publish-timeout")
    failure_policy: FailurePolicy = Field(
        default=FailurePolicy.ABORT, alias="failure-policy"
    )
    bundles: dict[str, str] = Field(default_factory=dict)


def _clamped_int(env: Mapping[str, str], name: str, low: int, high: int) -> int | None:
    raw = env.get(name, "").strip()
    if not raw.isdigit():
        return None
    return max(low, min(int(raw), high))


def load_settings(root: Path, env: Mapping[str, str] | None = None) -> ReleaseSettings:
    """Read settings for the workspace at ``root``.

    Environment overrides (values are clamped to their allowed range):
    - CASCADE_RELEASE_CONCURRENCY: publish workers per tier (1-16)
    - CASCADE_RELEASE_RETRIES: attempts per package (1-10)
    - CASCADE_RELEASE_TIMEOUT: seconds per publish attempt (1-3600)

    Raises:
        ManifestParseError: If the table has invalid values.
    """
    env = os.environ if env is None else env
    table = get_tool_table(load_pyproject(root / "pyproject.toml"))
    try:
        settings = ReleaseSettings.model_validate(table)
    except PydanticError as exc:
        raise ManifestParseError(f"Invalid [tool.cascade-release] settings:\n{exc}") from exc

    overrides: dict[str, object] = {}
    if (workers := _clamped_int(env, "CASCADE_RELEASE_CONCURRENCY", 1, 16)) is not None:
        overrides["max_concurrency"] = workers
    if (attempts := _clamped_int(env, "CASCADE_RELEASE_RETRIES", 1, 10)) is not None:
        overrides["max_attempts"] = attempts
    if (timeout := _clamped_int(env, "CASCADE_RELEASE_TIMEOUT", 1, 3600)) is not None:
        overrides["publish_timeout"] = float(timeout)
    return settings.model_copy(update=overrides)


class Credentials(BaseModel):
    """Secrets read from the environment. Never persisted."""

    registry_token: str | None = None
    github_token: str | None = None
    signing: dict[str, str] = Field(default_factory=dict)
    notarization: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Credentials:
        env = os.environ if env is None else env
        github = next((env[v] for v in GITHUB_TOKEN_VARS if env.get(v)), None)
        return cls(
            registry_token=env.get(REGISTRY_TOKEN_VAR) or None,
            github_token=github,
            signing={v: env[v] for v in SIGNING_VARS if env.get(v)},
            notarization={v: env[v] for v in NOTARIZATION_VARS if env.get(v)},
        )

    def missing_signing(self) -> list[str]:
        """Signing variables still unset, plus a half-set notarization triple."""
        missing = [v for v in SIGNING_VARS if v not in self.signing]
        if self.notarization and len(self.notarization) != len(NOTARIZATION_VARS):
            missing.extend(v for v in NOTARIZATION_VARS if v not in self.notarization)
        return missing

    def bundle_env(self) -> dict[str, str]:
        """Variables forwarded to bundle commands for code signing."""
        return {**self.signing, **self.notarization}
