"""Harness configuration read from arguments and the environment."""

from __future__ import annotations

import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigError

SUPPORTED_TARGETS = (
    "x86_64-unknown-redox",
    "aarch64-unknown-redox",
    "i686-unknown-redox",
)

QEMU_BINARY_ENV = "GUESTEXEC_QEMU_BINARY"
QEMU_ARGS_ENV = "GUESTEXEC_QEMU_ARGS"
USE_FUSE_ENV = "GUESTEXEC_USE_FUSE"
TARGET_ENV = "TARGET"

_DEFAULT_MOUNT_TIMEOUT_S = 30.0


def resolve_target(value: str | None) -> str:
    """Return ``value`` when it is a supported target, else the default target."""
    if value in SUPPORTED_TARGETS:
        return value  # type: ignore[return-value]
    return SUPPORTED_TARGETS[0]


def parse_bool_env(environ: Mapping[str, str], name: str) -> bool | None:
    value = environ.get(name)
    if value is None:
        return None
    if value in {"true", "1"}:
        return True
    if value in {"false", "0"}:
        return False
    raise ConfigError(f"invalid value {value!r} for {name}; expected true, false, 1 or 0")


@dataclass
class HarnessConfig:
    target: str = SUPPORTED_TARGETS[0]
    qemu_binary: str | None = None
    qemu_args: list[str] | None = None
    use_fuse: bool = False
    kvm: bool = False
    gui: bool = False
    live: bool = False
    update: bool = False
    disk_size: int | None = None
    mount_timeout_s: float = _DEFAULT_MOUNT_TIMEOUT_S

    @property
    def arch(self) -> str:
        return self.target.split("-", 1)[0]

    @property
    def base_name(self) -> str:
        return "gui" if self.gui else "base"

    def validate(self) -> None:
        if self.target not in SUPPORTED_TARGETS:
            raise ConfigError(
                f"`target` must be one of {', '.join(SUPPORTED_TARGETS)}, got: {self.target!r}"
            )
        if self.qemu_args is not None and any(not isinstance(arg, str) for arg in self.qemu_args):
            raise ConfigError("`qemu_args` entries must be strings.")
        if self.disk_size is not None and self.disk_size <= 0:
            raise ConfigError(f"`disk_size` must be positive, got: {self.disk_size}")
        if self.mount_timeout_s <= 0:
            raise ConfigError(f"`mount_timeout_s` must be positive, got: {self.mount_timeout_s}")

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        gui: bool = False,
        update: bool = False,
    ) -> "HarnessConfig":
        env = os.environ if environ is None else environ
        use_fuse = parse_bool_env(env, USE_FUSE_ENV)
        if use_fuse is None:
            use_fuse = Path("/dev/fuse").exists()

        raw_args = env.get(QEMU_ARGS_ENV)
        try:
            qemu_args = shlex.split(raw_args) if raw_args else None
        except ValueError as exc:
            raise ConfigError(f"could not parse {QEMU_ARGS_ENV}: {exc}") from exc

        config = cls(
            target=resolve_target(env.get(TARGET_ENV)),
            qemu_binary=env.get(QEMU_BINARY_ENV) or None,
            qemu_args=qemu_args,
            use_fuse=use_fuse,
            kvm=Path("/dev/kvm").exists(),
            gui=gui,
            update=update,
        )
        config.validate()
        return config
