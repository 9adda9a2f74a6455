"""Emulator command line and process handling."""

from __future__ import annotations

import enum
import logging
import platform
import subprocess
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from .errors import ConfigError, SubprocessError

logger = logging.getLogger(__name__)

# isa-debug-exit reports (value << 1) | 1, so the guest writes 51 // 2 and 53 // 2.
SUCCESS_STATUS = 51
FAILURE_STATUS = 53

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_INDETERMINATE = 2
EXIT_HARNESS_ERROR = 3

_GIB = 1024 * 1024 * 1024
_MIB = 1024 * 1024

_UEFI_FIRMWARE_CANDIDATES = {
    "aarch64": (
        "/usr/share/AAVMF/AAVMF_CODE.fd",
        "/usr/share/qemu-efi-aarch64/QEMU_EFI.fd",
        "/usr/share/edk2/aarch64/QEMU_EFI.fd",
        "/usr/share/qemu/edk2-aarch64-code.fd",
    ),
}


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class ExecutionResult:
    outcome: Outcome
    status: int | None
    log: str = ""

    @classmethod
    def from_status(cls, status: int | None, log: str = "") -> "ExecutionResult":
        if status == SUCCESS_STATUS:
            return cls(Outcome.SUCCESS, status, log)
        if status == FAILURE_STATUS:
            return cls(Outcome.FAILURE, status, log)
        return cls(Outcome.INDETERMINATE, status, log)

    @property
    def code(self) -> int:
        if self.outcome is Outcome.SUCCESS:
            return EXIT_SUCCESS
        if self.outcome is Outcome.FAILURE:
            return EXIT_FAILURE
        return EXIT_INDETERMINATE

    @property
    def banner(self) -> str:
        if self.outcome is Outcome.INDETERMINATE:
            return f"## guestexec (failure, qemu exit status {self.status}) ##"
        return f"## guestexec ({self.outcome.value}) ##"


@dataclass(frozen=True)
class Architecture:
    name: str
    qemu_binary: str
    uefi: bool
    disk_size: int
    live_disk_size: int
    host_machines: tuple[str, ...]

    def can_accelerate(self, host_machine: str | None = None) -> bool:
        machine = (host_machine or platform.machine()).lower()
        return machine in self.host_machines

    def default_args(
        self,
        *,
        image: Path,
        log_path: Path,
        kvm: bool = False,
        gui: bool = False,
        firmware: Path | None = None,
    ) -> list[str]:
        chardev = f"file,id=log,path={log_path}"
        if self.name == "aarch64":
            args = [
                "-cpu", "max",
                "-machine", "virt",
                "-m", "2048",
                "-smp", "4",
                "-serial", "mon:stdio",
                "-chardev", chardev,
                "-netdev", "user,id=net0",
                "-device", "virtio-serial-pci",
                "-device", "virtconsole,chardev=log",
                "-device", "virtio-net-pci,netdev=net0",
                "-device", "virtio-blk-pci,drive=disk0",
                "-drive", f"file={image},format=raw,if=none,id=disk0",
            ]
            if firmware is not None:
                args.extend(["-bios", str(firmware)])
        else:
            args = [
                "-cpu", "max",
                "-machine", "q35",
                "-m", "2048",
                "-smp", "4",
                "-serial", "mon:stdio",
                "-chardev", chardev,
                "-netdev", "user,id=net0",
                "-device", "isa-debugcon,chardev=log",
                "-device", "isa-debug-exit",
                "-device", "e1000,netdev=net0",
                "-drive", f"file={image},format=raw",
            ]
        if kvm and self.can_accelerate():
            args.extend(["-accel", "kvm"])
        if not gui:
            args.append("-nographic")
            if self.name != "aarch64":
                args.extend(["-vga", "none"])
        return args


ARCHITECTURES = {
    "x86_64": Architecture(
        name="x86_64",
        qemu_binary="qemu-system-x86_64",
        uefi=False,
        disk_size=3 * _GIB,
        live_disk_size=512 * _MIB,
        host_machines=("x86_64", "amd64"),
    ),
    "i686": Architecture(
        name="i686",
        qemu_binary="qemu-system-i386",
        uefi=False,
        disk_size=3 * _GIB,
        live_disk_size=512 * _MIB,
        host_machines=("x86_64", "amd64", "i686", "i386"),
    ),
    "aarch64": Architecture(
        name="aarch64",
        qemu_binary="qemu-system-aarch64",
        uefi=True,
        disk_size=3 * _GIB,
        live_disk_size=512 * _MIB,
        host_machines=("aarch64", "arm64"),
    ),
}


def architecture_for(target: str) -> Architecture:
    arch = target.split("-", 1)[0]
    try:
        return ARCHITECTURES[arch]
    except KeyError:
        raise ConfigError(f"unsupported target architecture {arch!r}") from None


def find_uefi_firmware(arch: str) -> Path | None:
    for candidate in _UEFI_FIRMWARE_CANDIDATES.get(arch, ()):
        path = Path(candidate)
        if path.is_file():
            return path
    return None


def is_flag(token: str) -> bool:
    return token.startswith("-")


def merge_args(defaults: Sequence[str], overrides: Sequence[str] | None = None) -> list[str]:
    """Return ``defaults`` with every flag named in ``overrides`` replaced.

    A default flag takes the next token as its value unless that token is
    missing or is itself a flag. ``overrides`` is appended verbatim.
    """
    if overrides is None:
        return list(defaults)

    overridden = {token for token in overrides if is_flag(token)}
    merged: list[str] = []
    index = 0
    while index < len(defaults):
        flag = defaults[index]
        if not is_flag(flag):
            raise ValueError(f"default arguments must alternate flags and values, got {flag!r}")
        single = index + 1 >= len(defaults) or is_flag(defaults[index + 1])
        if flag not in overridden:
            merged.append(flag)
            if not single:
                merged.append(defaults[index + 1])
        index += 1 if single else 2

    merged.extend(overrides)
    return merged


class VmLauncher:
    """Boot an image under the emulator and decode its exit status."""

    def __init__(self, qemu_binary: str):
        self.qemu_binary = qemu_binary

    def launch(self, args: Sequence[str], log_path: Path) -> ExecutionResult:
        command = [self.qemu_binary, *args]
        logger.debug("launching: %s", " ".join(command))
        try:
            completed = subprocess.run(command, check=False)
        except OSError as exc:
            raise SubprocessError("emulator", command, None) from exc

        log = ""
        if log_path.exists():
            log = log_path.read_text(encoding="utf-8", errors="replace")
        return ExecutionResult.from_status(completed.returncode, log)


def emit_result(
    result: ExecutionResult,
    *,
    output: Path | None = None,
    stream: TextIO | None = None,
    err: TextIO | None = None,
) -> None:
    """Print the result banner and hand the captured log to ``output`` or ``stream``."""
    err = sys.stderr if err is None else err
    print("", file=err)
    print(result.banner, file=err)
    if output is not None:
        output.write_text(result.log, encoding="utf-8")
        return
    (sys.stdout if stream is None else stream).write(result.log)
