"""Workspace discovery: read every member's pyproject.toml into descriptors."""

from __future__ import annotations

import glob
from pathlib import Path

from packaging.requirements import InvalidRequirement

from .deps import dep_canonical_name
from .errors import ManifestParseError
from .models import PackageDescriptor, RegistryTarget
from .toml import (
    get_all_dependency_strings,
    get_classifiers,
    get_project_name,
    get_project_version,
    get_tool_table,
    get_workspace_member_globs,
    get_workspace_sources,
    load_pyproject,
)
from .versions import parse_version

PRIVATE_CLASSIFIER = "Private :: Do Not Upload"


def discover_packages(root: Path) -> dict[str, PackageDescriptor]:
    """Scan the workspace at ``root`` and describe every package.

    Reads [tool.uv.workspace].members from root pyproject.toml to find
    package directories, then extracts name, version, internal deps and
    registry target from each package's pyproject.toml. Nothing is written.

    Returns:
        Map of package name to PackageDescriptor.

    Raises:
        ManifestParseError: For unreadable manifests, missing members,
            duplicate names or unparseable versions.
    """
    root = root.resolve()
    root_doc = load_pyproject(root / "pyproject.toml")
    member_globs = get_workspace_member_globs(root_doc)

    # Expand globs to find all package directories
    member_dirs: list[Path] = []
    for pattern in member_globs:
        for match in sorted(glob.glob(str(root / pattern))):
            p = Path(match)
            if (p / "pyproject.toml").exists() and p not in member_dirs:
                member_dirs.append(p)

    if not member_dirs:
        raise ManifestParseError("No packages found matching workspace members")

    # First pass: collect basic info from each package
    docs = {}
    for d in member_dirs:
        doc = load_pyproject(d / "pyproject.toml")
        name = get_project_name(doc, d.name)
        if name in docs:
            raise ManifestParseError(
                f"Duplicate package name {name!r} ({docs[name][0]} and {d})"
            )
        docs[name] = (d, doc)

    # Second pass: identify which deps are internal (within workspace)
    workspace_names = set(docs)
    packages: dict[str, PackageDescriptor] = {}
    for name, (d, doc) in docs.items():
        manifest = d / "pyproject.toml"
        version = get_project_version(doc)
        try:
            parse_version(version)
        except ValueError as exc:
            raise ManifestParseError(f"{manifest}: invalid version {version!r}") from exc

        internal: set[str] = set(get_workspace_sources(doc))
        for dep_str in get_all_dependency_strings(doc):
            try:
                dep_name = dep_canonical_name(dep_str)
            except InvalidRequirement as exc:
                raise ManifestParseError(
                    f"{manifest}: invalid dependency {dep_str!r}"
                ) from exc
            # Only track internal deps, ignore external packages
            if dep_name in workspace_names:
                internal.add(dep_name)
        internal.discard(name)

        packages[name] = PackageDescriptor(
            name=name,
            version=version,
            path=str(d.relative_to(root)),
            internal_deps=frozenset(internal),
            registry_target=_registry_target(doc, manifest),
        )

    return packages


def _registry_target(doc, manifest: Path) -> RegistryTarget:
    configured = get_tool_table(doc).get("registry")
    if configured is not None:
        try:
            return RegistryTarget(str(configured).lower())
        except ValueError as exc:
            choices = ", ".join(t.value for t in RegistryTarget)
            raise ManifestParseError(
                f"{manifest}: registry must be one of {choices}, got {configured!r}"
            ) from exc
    if PRIVATE_CLASSIFIER in get_classifiers(doc):
        return RegistryTarget.NONE
    return RegistryTarget.PYPI
