"""Cache location helpers for guestexec."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path

APP_DIR_ENV = "GUESTEXEC_HOME"
APP_DIR_NAME = "guestexec"
PARTIAL_SUFFIX = ".partial"


def get_app_dir(app_dir: str | Path | None = None) -> Path:
    """Return guestexec app data directory.

    Priority order:
    1) explicit ``app_dir`` argument
    2) ``GUESTEXEC_HOME`` environment variable
    3) platform default app data directory
    """
    if app_dir is not None:
        return Path(app_dir).expanduser().resolve()

    override = os.environ.get(APP_DIR_ENV)
    if override:
        return Path(override).expanduser().resolve()

    if sys.platform == "darwin":
        return (Path.home() / "Library" / "Application Support" / APP_DIR_NAME).resolve()

    xdg_data_home = os.environ.get("XDG_DATA_HOME")
    if xdg_data_home:
        return (Path(xdg_data_home).expanduser() / APP_DIR_NAME).resolve()
    return (Path.home() / ".local" / "share" / APP_DIR_NAME).resolve()


def partial_path(path: Path) -> Path:
    return path.with_name(path.name + PARTIAL_SUFFIX)


@dataclass(frozen=True)
class CacheLocation:
    """Directory holding the cached bootloader and base images of one target."""

    root: Path

    @classmethod
    def default(cls, target: str, app_dir: str | Path | None = None) -> "CacheLocation":
        return cls(get_app_dir(app_dir) / target)

    def ensure(self) -> "CacheLocation":
        self.root.mkdir(parents=True, exist_ok=True)
        return self

    def bootloader_path(self, *, uefi: bool) -> Path:
        return self.root / ("bootloader.efi" if uefi else "bootloader.bin")

    def base_path(self, name: str, *, archived: bool) -> Path:
        return self.root / f"{name}.{'tar' if archived else 'bin'}"

    def archive_path(self, name: str) -> Path:
        return self.root / f"{name}.tar"

    def manifest_path(self, image: Path) -> Path:
        """Return where the manifest ``image`` was built from is recorded."""
        return image.with_name(image.name + ".toml")

    def work_dir(self, name: str) -> Path:
        return self.root / f"{name}{PARTIAL_SUFFIX}"
