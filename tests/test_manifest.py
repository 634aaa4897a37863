"""Tests for cascade_release.manifest."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from cascade_release.errors import ManifestParseError
from cascade_release.manifest import discover_packages
from cascade_release.models import RegistryTarget


class TestDiscoverPackages:
    def test_finds_members_and_internal_deps(self, diamond: Path) -> None:
        packages = discover_packages(diamond)

        assert sorted(packages) == ["app", "core", "lib", "util"]
        assert packages["lib"].internal_deps == frozenset({"core", "util"})
        assert packages["core"].internal_deps == frozenset()
        assert packages["app"].path == "packages/app"
        assert packages["app"].version == "1.0.0"

    def test_ignores_external_deps(
        self, tmp_path: Path, make_workspace: Callable[..., Path]
    ) -> None:
        root = make_workspace(
            tmp_path / "ws",
            {"core": []},
            package_extra={"core": '[project.optional-dependencies]\nhttp = ["requests>=2"]\n'},
        )

        assert discover_packages(root)["core"].internal_deps == frozenset()

    def test_workspace_source_is_internal(
        self, tmp_path: Path, make_workspace: Callable[..., Path]
    ) -> None:
        root = make_workspace(
            tmp_path / "ws",
            {"core": [], "cli": []},
            package_extra={"cli": "[tool.uv.sources]\ncore = { workspace = true }\n"},
        )

        assert discover_packages(root)["cli"].internal_deps == frozenset({"core"})

    def test_normalizes_names(
        self, tmp_path: Path, make_workspace: Callable[..., Path]
    ) -> None:
        root = make_workspace(tmp_path / "ws", {"My_Core": [], "app": ["my-core"]})

        packages = discover_packages(root)
        assert "my-core" in packages
        assert packages["app"].internal_deps == frozenset({"my-core"})

    def test_private_classifier_is_not_published(
        self, tmp_path: Path, make_workspace: Callable[..., Path]
    ) -> None:
        root = make_workspace(
            tmp_path / "ws",
            {"core": [], "tools": []},
            package_extra={"tools": 'classifiers = ["Private :: Do Not Upload"]\n'},
        )

        packages = discover_packages(root)
        assert packages["tools"].registry_target is RegistryTarget.NONE
        assert packages["core"].registry_target is RegistryTarget.PYPI

    def test_registry_from_tool_table(
        self, tmp_path: Path, make_workspace: Callable[..., Path]
    ) -> None:
        root = make_workspace(
            tmp_path / "ws",
            {"core": []},
            package_extra={"core": '[tool.cascade-release]\nregistry = "TestPyPI"\n'},
        )

        assert discover_packages(root)["core"].registry_target is RegistryTarget.TESTPYPI

    def test_unknown_registry(
        self, tmp_path: Path, make_workspace: Callable[..., Path]
    ) -> None:
        root = make_workspace(
            tmp_path / "ws",
            {"core": []},
            package_extra={"core": '[tool.cascade-release]\nregistry = "artifactory"\n'},
        )

        with pytest.raises(ManifestParseError, match="registry must be one of"):
            discover_packages(root)

    def test_duplicate_names(self, tmp_path: Path, make_workspace: Callable[..., Path]) -> None:
        root = make_workspace(tmp_path / "ws", {"core": [], "core-copy": []})
        (root / "packages" / "core-copy" / "pyproject.toml").write_text(
            '[project]\nname = "Core"\nversion = "2.0.0"\n'
        )

        with pytest.raises(ManifestParseError, match="Duplicate package name 'core'"):
            discover_packages(root)

    def test_invalid_version(self, tmp_path: Path, make_workspace: Callable[..., Path]) -> None:
        root = make_workspace(tmp_path / "ws", {"core": []}, version="latest")

        with pytest.raises(ManifestParseError, match="invalid version 'latest'"):
            discover_packages(root)

    def test_no_members(self, tmp_path: Path) -> None:
        root = tmp_path / "ws"
        root.mkdir()
        (root / "pyproject.toml").write_text('[tool.uv.workspace]\nmembers = ["packages/*"]\n')

        with pytest.raises(ManifestParseError, match="No packages found"):
            discover_packages(root)

    def test_nothing_is_written(self, diamond: Path) -> None:
        before = {p: p.read_text() for p in diamond.rglob("pyproject.toml")}
        discover_packages(diamond)
        assert {p: p.read_text() for p in diamond.rglob("pyproject.toml")} == before
