"""Run configuration and the guest configuration file written from it."""

from __future__ import annotations

import logging
import os
import posixpath
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from .errors import ConfigError, ProtocolError

logger = logging.getLogger(__name__)

DEFAULT_GUEST_ROOT = "/root"
GUEST_CONFIG_PATH = "etc/guestexecd"
INIT_HOOK_PATH = "usr/lib/init.d/29_guestexec"
INIT_HOOK = "guestexecd\n"


@dataclass(frozen=True)
class FolderMapping:
    """A host directory and the absolute guest path it appears at."""

    host: Path
    guest: str = DEFAULT_GUEST_ROOT

    @classmethod
    def parse(cls, text: str) -> "FolderMapping":
        """Parse ``host_directory[:/guest/absolute/path]``."""
        head, sep, tail = text.rpartition(":")
        if sep and tail.startswith("/"):
            host, guest = head, tail
        else:
            host, guest = text, DEFAULT_GUEST_ROOT
        if not host:
            raise ConfigError(f"folder mapping {text!r} has no host path")
        return cls(Path(host), guest)

    def validate(self) -> None:
        if not PurePosixPath(self.guest).is_absolute():
            raise ConfigError(f"guest path must be absolute, got: {self.guest!r}")
        if ".." in PurePosixPath(self.guest).parts:
            raise ConfigError(f"guest path must not contain '..', got: {self.guest!r}")

    def canonical_host(self) -> Path:
        try:
            return self.host.resolve(strict=True)
        except OSError as exc:
            raise ConfigError(f"unable to canonicalize {self.host}: {exc}") from exc

    def guest_relative(self) -> Path:
        """The guest path relative to the guest filesystem root."""
        return Path(*PurePosixPath(self.guest).parts[1:])


@dataclass
class RunConfiguration:
    arguments: list[str]
    folders: list[FolderMapping] = field(default_factory=list)
    artifacts: list[FolderMapping] = field(default_factory=list)

    def validate(self) -> None:
        if not self.arguments or not self.arguments[0]:
            raise ConfigError("no command given to run in the guest")
        if any("\n" in arg for arg in self.arguments):
            raise ConfigError("arguments must not contain newlines")

        for mappings, label in ((self.folders, "folder"), (self.artifacts, "artifact")):
            guests: set[str] = set()
            for mapping in mappings:
                mapping.validate()
                guest = posixpath.normpath(mapping.guest)
                if guest in guests:
                    raise ConfigError(f"{label} mount point {mapping.guest!r} is used twice")
                guests.add(guest)

        sources: set[Path] = set()
        for mapping in [*self.folders, *self.artifacts]:
            source = Path(os.path.abspath(mapping.host))
            if source in sources:
                raise ConfigError(f"folder {mapping.host} is mapped more than once")
            sources.add(source)

    def guest_config(self) -> str:
        return render_guest_config(self.arguments, self.folders)


def _utf8_path(path: Path) -> str:
    try:
        return os.fsencode(path).decode("utf-8")
    except UnicodeDecodeError:
        raise ProtocolError(f"folder path {path!r} is not valid UTF-8") from None


_PATH_PREFIXES = ("/", "./", "../")


def _names_path(argument: str) -> bool:
    return argument.startswith(_PATH_PREFIXES) or argument in {".", ".."}


def rewrite_argument(argument: str, folders: Sequence[FolderMapping]) -> str:
    """Rewrite a host path under a copied-in folder to its guest path.

    Only absolute arguments and arguments starting with ``./`` or ``../`` are
    treated as paths; anything else (sed expressions, URLs) passes through.
    """
    if not folders or not _names_path(argument):
        return argument

    absolute = Path(os.path.abspath(argument))
    candidates = []
    for mapping in folders:
        canonical = mapping.canonical_host()
        _utf8_path(canonical)
        candidates.append((canonical, mapping))
        literal = Path(os.path.abspath(mapping.host))
        if literal != canonical:
            candidates.append((literal, mapping))
    candidates.sort(key=lambda item: len(item[0].parts), reverse=True)

    for host, mapping in candidates:
        try:
            relative = absolute.relative_to(host)
        except ValueError:
            continue
        replacement = posixpath.join(mapping.guest, relative.as_posix()) if relative.parts else mapping.guest
        logger.info("replacing '%s' with '%s' in arguments", argument, replacement)
        return replacement
    return argument


def render_guest_config(arguments: Sequence[str], folders: Sequence[FolderMapping] = ()) -> str:
    """Return the guest configuration text: one argument per line."""
    return "".join(f"{rewrite_argument(arg, folders)}\n" for arg in arguments)


def write_guest_config(root: Path, run_config: RunConfiguration) -> Path:
    """Write the guest configuration and init hook below ``root``."""
    config_path = root / GUEST_CONFIG_PATH
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(run_config.guest_config(), encoding="utf-8")

    hook_path = root / INIT_HOOK_PATH
    if not hook_path.is_file():
        hook_path.parent.mkdir(parents=True, exist_ok=True)
        hook_path.write_text(INIT_HOOK, encoding="utf-8")
    return config_path
