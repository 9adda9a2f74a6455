"""Boundary to the declarative OS installer."""

from __future__ import annotations

import os
import tempfile
from importlib import resources
from pathlib import Path
from typing import Protocol

from .errors import ConfigError
from .tools import run_tool

PKG_SOURCE = "https://static.redox-os.org/pkg"

BOOTLOADER_MANIFEST = f"""\
[packages]
bootloader = {{}}

[[files]]
path = "/etc/pkg.d/50_redox"
data = "{PKG_SOURCE}"
"""


class Installer(Protocol):
    def install(self, manifest: str, destination: Path, *, live: bool = False) -> None:
        """Populate ``destination`` with the packages named by ``manifest``."""


class RedoxInstallerTool:
    """Installer backed by the ``redox_installer`` executable."""

    def __init__(self, binary: str = "redox_installer"):
        self.binary = binary

    def install(self, manifest: str, destination: Path, *, live: bool = False) -> None:
        fd, name = tempfile.mkstemp(prefix="guestexec-", suffix=".toml")
        config_path = Path(name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(manifest)
            args: list[str | Path] = [self.binary, "--config", config_path]
            if live:
                args.append("--live")
            args.append(destination)
            run_tool("install", args)
        finally:
            config_path.unlink(missing_ok=True)


def load_manifest(name: str) -> str:
    """Return the bundled installer manifest ``name`` (``base`` or ``gui``)."""
    resource = resources.files("guestexec.manifests").joinpath(f"{name}.toml")
    if not resource.is_file():
        raise ConfigError(f"no bundled installer manifest named {name!r}")
    return resource.read_text(encoding="utf-8")
