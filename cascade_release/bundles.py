"""Platform bundles: a closed set of package formats behind one build() call.

Constructing a .deb or .dmg is the job of a user-configured command (from
[tool.cascade-release.bundles]); this module only knows which formats
exist, where they can be built, and how to find the artifact afterwards.
"""

from __future__ import annotations

import platform as host_platform
import shlex
import subprocess
import sys
from collections.abc import Mapping
from enum import Enum
from pathlib import Path

from .errors import BundleError, ValidationError
from .shell import run


class Platform(str, Enum):
    DEB = "deb"
    RPM = "rpm"
    APPIMAGE = "appimage"
    APP = "app"
    DMG = "dmg"
    MSI = "msi"
    EXE = "exe"

    @property
    def artifact_glob(self) -> str:
        return _ARTIFACT_GLOBS[self]

    @property
    def host_os(self) -> str:
        """sys.platform prefix of the OS that can build this format."""
        return _HOST_OS[self]

    @property
    def needs_signing(self) -> bool:
        return self in (Platform.APP, Platform.DMG)

    @classmethod
    def parse(cls, value: str) -> Platform:
        try:
            return cls(value.strip().lower())
        except ValueError:
            choices = ", ".join(p.value for p in cls)
            raise ValidationError(
                f"Unknown bundle platform {value!r} (choose from {choices})"
            ) from None


_ARTIFACT_GLOBS = {
    Platform.DEB: "*.deb",
    Platform.RPM: "*.rpm",
    Platform.APPIMAGE: "*.AppImage",
    Platform.APP: "*.app",
    Platform.DMG: "*.dmg",
    Platform.MSI: "*.msi",
    Platform.EXE: "*.exe",
}

_HOST_OS = {
    Platform.DEB: "linux",
    Platform.RPM: "linux",
    Platform.APPIMAGE: "linux",
    Platform.APP: "darwin",
    Platform.DMG: "darwin",
    Platform.MSI: "win32",
    Platform.EXE: "win32",
}


def configured_platforms(
    commands: Mapping[str, str], *, host: str | None = None
) -> list[Platform]:
    """Configured platforms buildable on this host, in enum order."""
    host = host or sys.platform
    wanted = {Platform.parse(name) for name in commands}
    return [p for p in Platform if p in wanted and host.startswith(p.host_os)]


def default_target_triple() -> str:
    """Rust-style target triple for the running host."""
    machine = host_platform.machine().lower()
    arch = {"amd64": "x86_64", "arm64": "aarch64"}.get(machine, machine)
    if sys.platform.startswith("darwin"):
        return f"{arch}-apple-darwin"
    if sys.platform.startswith("win"):
        return f"{arch}-pc-windows-msvc"
    return f"{arch}-unknown-linux-gnu"


class CommandBundler:
    """Builds bundles by running the configured command for each platform.

    Command templates may use {target}, {out_dir} and {root}. The artifact
    is the newest file in out_dir matching the platform's glob.
    """

    def __init__(
        self,
        commands: Mapping[str, str],
        root: Path,
        out_dir: Path,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.commands = {Platform.parse(k): v for k, v in commands.items()}
        self.root = root
        self.out_dir = out_dir
        self.env = dict(env or {})

    def build(self, platform: Platform, target_triple: str) -> Path:
        template = self.commands.get(platform)
        if template is None:
            raise BundleError(f"No bundle command configured for {platform.value}")

        self.out_dir.mkdir(parents=True, exist_ok=True)
        command = template.format(
            target=target_triple, out_dir=str(self.out_dir), root=str(self.root)
        )
        try:
            run(*shlex.split(command), cwd=self.root, env=self.env)
        except (subprocess.CalledProcessError, OSError) as exc:
            raise BundleError(f"{platform.value} bundle failed: {exc}") from exc

        candidates = sorted(
            self.out_dir.glob(platform.artifact_glob), key=lambda p: p.stat().st_mtime
        )
        if not candidates:
            raise BundleError(
                f"{platform.value} bundle command produced no {platform.artifact_glob} "
                f"in {self.out_dir}"
            )
        return candidates[-1]
