"""Runtime preflight checks."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

from .config import HarnessConfig
from .errors import ToolMissingError
from .qemu import architecture_for
from .runtime_paths import CacheLocation

INSTALLER_EXECUTABLE = "redox_installer"
FUSE_EXECUTABLES = ("redoxfs", "redoxfs-mkfs", "fusermount")
ARCHIVE_EXECUTABLES = ("tar", "redoxfs-ar")


def required_executables(config: HarnessConfig) -> tuple[str, ...]:
    """Return the host executables a run with ``config`` invokes."""
    qemu = config.qemu_binary or architecture_for(config.target).qemu_binary
    backend = FUSE_EXECUTABLES if config.use_fuse else ARCHIVE_EXECUTABLES
    return (qemu, INSTALLER_EXECUTABLE, *backend)


@dataclass(frozen=True)
class RuntimeCheckResult:
    cache_dir: Path
    executables: dict[str, str | None]

    @property
    def missing_executables(self) -> list[str]:
        return [name for name, resolved in self.executables.items() if resolved is None]

    @property
    def ok(self) -> bool:
        return not self.missing_executables


def check_runtime(config: HarnessConfig, cache: CacheLocation | None = None) -> RuntimeCheckResult:
    """Check that runtime prerequisites exist."""
    cache = CacheLocation.default(config.target) if cache is None else cache
    return RuntimeCheckResult(
        cache_dir=cache.root,
        executables={name: shutil.which(name) for name in required_executables(config)},
    )


def assert_runtime_ready(config: HarnessConfig, cache: CacheLocation | None = None) -> None:
    """Raise ToolMissingError when runtime prerequisites are missing."""
    result = check_runtime(config, cache)
    if result.ok:
        return

    lines = ["guestexec runtime is not ready.", "", "Missing executables:"]
    for name in result.missing_executables:
        lines.append(f"- {name}")
    lines.append("")
    if not config.use_fuse:
        lines.append("FUSE is disabled; set GUESTEXEC_USE_FUSE=1 to use mountable images.")
    lines.append("Install the missing tools and make sure they are on PATH.")
    raise ToolMissingError("\n".join(lines))
