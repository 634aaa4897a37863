"""Tests for cascade_release.bundles."""

from __future__ import annotations

import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from cascade_release.bundles import CommandBundler, Platform, configured_platforms
from cascade_release.errors import BundleError, ValidationError


class TestPlatform:
    def test_parse(self) -> None:
        assert Platform.parse(" DMG ") is Platform.DMG

    def test_parse_unknown(self) -> None:
        with pytest.raises(ValidationError, match="Unknown bundle platform 'snap'"):
            Platform.parse("snap")

    def test_signing(self) -> None:
        assert Platform.DMG.needs_signing
        assert Platform.APP.needs_signing
        assert not Platform.DEB.needs_signing


class TestConfiguredPlatforms:
    COMMANDS = {"dmg": "make dmg", "deb": "make deb", "msi": "make msi", "rpm": "make rpm"}

    def test_linux_host(self) -> None:
        assert configured_platforms(self.COMMANDS, host="linux") == [Platform.DEB, Platform.RPM]

    def test_macos_host(self) -> None:
        assert configured_platforms(self.COMMANDS, host="darwin") == [Platform.DMG]

    def test_windows_host(self) -> None:
        assert configured_platforms(self.COMMANDS, host="win32") == [Platform.MSI]

    def test_nothing_configured(self) -> None:
        assert configured_platforms({}, host="linux") == []


class TestCommandBundler:
    def _bundler(self, tmp_path: Path, **env: str) -> CommandBundler:
        return CommandBundler(
            {"deb": "make deb TARGET={target} OUT={out_dir}"},
            root=tmp_path,
            out_dir=tmp_path / "dist" / "bundles",
            env=env,
        )

    def test_runs_command_and_returns_artifact(self, tmp_path: Path) -> None:
        bundler = self._bundler(tmp_path, APPLE_TEAM_ID="T1")

        def fake_run(*args: str, **kwargs: object) -> None:
            (bundler.out_dir / "ws_1.0.0_amd64.deb").write_text("deb")

        with patch("cascade_release.bundles.run", side_effect=fake_run) as run:
            artifact = bundler.build(Platform.DEB, "x86_64-unknown-linux-gnu")

        assert artifact.name == "ws_1.0.0_amd64.deb"
        run.assert_called_once_with(
            "make",
            "deb",
            "TARGET=x86_64-unknown-linux-gnu",
            f"OUT={bundler.out_dir}",
            cwd=tmp_path,
            env={"APPLE_TEAM_ID": "T1"},
        )

    def test_unconfigured_platform(self, tmp_path: Path) -> None:
        with pytest.raises(BundleError, match="No bundle command configured for rpm"):
            self._bundler(tmp_path).build(Platform.RPM, "x86_64-unknown-linux-gnu")

    def test_command_failure(self, tmp_path: Path) -> None:
        error = subprocess.CalledProcessError(2, ["make"])
        with patch("cascade_release.bundles.run", side_effect=error):
            with pytest.raises(BundleError, match="deb bundle failed"):
                self._bundler(tmp_path).build(Platform.DEB, "x86_64-unknown-linux-gnu")

    def test_no_artifact_produced(self, tmp_path: Path) -> None:
        with patch("cascade_release.bundles.run"):
            with pytest.raises(BundleError, match="produced no"):
                self._bundler(tmp_path).build(Platform.DEB, "x86_64-unknown-linux-gnu")
