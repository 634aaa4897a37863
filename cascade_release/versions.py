"""Version parsing and bumping utilities.

Handles conversion between version strings and semver objects, with
special handling for incomplete version strings (e.g., "1.0" → "1.0.0").
"""

from __future__ import annotations

import semver

from .models import BumpKind


def parse_version(version_str: str) -> semver.Version:
    """Parse a version string into a semver.Version object.

    Handles incomplete versions by padding with zeros:
    - "1" → "1.0.0"
    - "1.2" → "1.2.0"
    - "1.2.3" → "1.2.3"

    Only the first 3 components are used (major.minor.patch).
    Prerelease/build metadata is not supported.

    Raises:
        ValueError: If the string is not a version.
    """
    parts = version_str.strip().split(".")
    # Pad with zeros to ensure we have at least 3 parts
    while len(parts) < 3:
        parts.append("0")
    return semver.Version.parse(".".join(parts[:3]))


def bump_version(
    version_str: str, kind: BumpKind, explicit: str | None = None
) -> str:
    """Compute the next version of a package.

    Examples:
        bump_version("1.2.3", BumpKind.PATCH) → "1.2.4"
        bump_version("1.2.3", BumpKind.MINOR) → "1.3.0"
        bump_version("1.2", BumpKind.MAJOR) → "2.0.0"
        bump_version("1.2.3", BumpKind.EXPLICIT, "4.0.0") → "4.0.0"

    Raises:
        ValueError: For an explicit bump without a version, or an explicit
            version that does not move the package forward.
    """
    current = parse_version(version_str)
    if kind is BumpKind.PATCH:
        return str(current.bump_patch())
    if kind is BumpKind.MINOR:
        return str(current.bump_minor())
    if kind is BumpKind.MAJOR:
        return str(current.bump_major())

    if not explicit:
        raise ValueError("An explicit bump needs a target version")
    target = parse_version(explicit)
    if target <= current:
        raise ValueError(f"{explicit} is not newer than {version_str}")
    return str(target)


def parse_bump(value: str) -> tuple[BumpKind, str | None]:
    """Interpret the CLI bump argument: a bump kind or an explicit version."""
    lowered = value.strip().lower()
    if lowered in {BumpKind.PATCH.value, BumpKind.MINOR.value, BumpKind.MAJOR.value}:
        return BumpKind(lowered), None
    # Validates the string, raising ValueError if it is neither
    return BumpKind.EXPLICIT, str(parse_version(lowered.removeprefix("v")))
