"""Dependency handling utilities.

Provides functions for parsing PEP 508 dependency strings and rewriting
pyproject.toml files so internal workspace dependencies follow the versions
being released.
"""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any, cast

from packaging.requirements import Requirement
from packaging.utils import canonicalize_name

from .toml import load_pyproject, save_pyproject

# Operators whose meaning survives swapping in a new version
_KEPT_OPERATORS = {"==", ">=", "~=", "==="}


def dep_canonical_name(dep_str: str) -> str:
    """Extract the canonical package name from a PEP 508 dependency string.

    Handles version specifiers, extras, and normalizes the name per PEP 503
    (lowercase, hyphens instead of underscores).

    Examples:
        "requests>=2.0" → "requests"
        "My_Package[extra]~=1.0" → "my-package"
    """
    return canonicalize_name(Requirement(dep_str).name)


def pin_dep(dep_str: str, version: str) -> str:
    """Pin a PEP 508 dependency to an exact version.

    Preserves any extras and environment markers specified in the original
    dependency string, but replaces the version specifier with an exact pin.

    Examples:
        pin_dep("requests>=2.0", "2.31.0") → "requests==2.31.0"
        pin_dep("pkg[extra1,extra2]~=1.0", "1.5.0") → "pkg[extra1,extra2]==1.5.0"
    """
    return _format(Requirement(dep_str), "==", version)


def match_dep(dep_str: str, version: str) -> str:
    """Move a dependency constraint to a new version, keeping its operator.

    A single ``==``, ``>=``, ``~=`` or ``===`` specifier keeps its operator;
    anything else (no specifier, ranges, exclusions) becomes an exact pin.

    Examples:
        match_dep("core>=1.0", "1.1.0") → "core>=1.1.0"
        match_dep("core~=1.0", "2.0.0") → "core~=2.0.0"
        match_dep("core>=1,<2", "2.0.0") → "core==2.0.0"
    """
    req = Requirement(dep_str)
    specs = list(req.specifier)
    if len(specs) == 1 and specs[0].operator in _KEPT_OPERATORS:
        return _format(req, specs[0].operator, version)
    return pin_dep(dep_str, version)


def _format(req: Requirement, operator: str, version: str) -> str:
    # Sort extras alphabetically for consistent output
    extras = f"[{','.join(sorted(req.extras))}]" if req.extras else ""
    marker = f"; {req.marker}" if req.marker else ""
    return f"{req.name}{extras}{operator}{version}{marker}"


def rewrite_pyproject(
    pyproject_path: Path,
    new_version: str,
    internal_dep_versions: dict[str, str],
) -> None:
    """Set [project].version and move internal dependency constraints.

    Constraints are rewritten wherever a package can declare them:
    [project].dependencies, every [project].optional-dependencies group and
    every [dependency-groups] group. tomlkit keeps comments and layout.

    Args:
        pyproject_path: Path to the pyproject.toml file.
        new_version: New version string to set.
        internal_dep_versions: Map of package name → version for internal deps.
    """
    doc = load_pyproject(pyproject_path)
    # Cast needed because tomlkit types are complex unions
    project = cast(dict[str, Any], doc["project"])
    project["version"] = new_version

    if internal_dep_versions:
        for deps in _dependency_lists(project, doc.get("dependency-groups")):
            _update_dep_list(deps, internal_dep_versions)

    save_pyproject(pyproject_path, doc)


def _dependency_lists(project: dict[str, Any], dep_groups: Any) -> Iterator[list]:
    deps = project.get("dependencies")
    if isinstance(deps, list):
        yield deps
    for table in (project.get("optional-dependencies"), dep_groups):
        if isinstance(table, dict):
            yield from (group for group in table.values() if isinstance(group, list))


def _update_dep_list(deps: list, versions: dict[str, str]) -> None:
    # Include tables in dependency-groups are not strings
    for i, dep_str in enumerate(deps):
        if not isinstance(dep_str, str):
            continue
        name = dep_canonical_name(str(dep_str))
        if name in versions:
            deps[i] = match_dep(str(dep_str), versions[name])
