"""Boundary to the target filesystem library.

The on-disk format (B-tree, allocator, transactions) lives in an external
library. This module names the primitives guestexec needs from it, provides a
binding to the ``redoxfs`` command-line tools, and implements mounting with a
bounded wait.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
from collections.abc import Iterable, Iterator
from concurrent.futures import Future
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .errors import FilesystemError, HarnessError, MountTimeout
from .tools import run_tool

logger = logging.getLogger(__name__)

BLOCK_SIZE = 4096
BOOTLOADER_SIZE = 2 * 1024 * 1024

_MOUNT_POLL_INTERVAL_S = 0.001


@dataclass(frozen=True)
class FreeExtent:
    """A run of ``count`` free blocks starting at block ``index``."""

    index: int
    count: int

    @property
    def end(self) -> int:
        return self.index + self.count


class Transaction(Protocol):
    header_size: int

    def free_extents(self) -> Iterable[FreeExtent]:
        """Yield every free extent recorded in the allocation log."""

    def allocate_at(self, index: int) -> bool:
        """Mark block ``index`` allocated; return False if it was not free."""

    def deallocate(self, index: int, count: int) -> None: ...

    def commit(self, *, squash: bool) -> None: ...


class FileSystem(Protocol):
    block_size: int
    reserved_blocks: int

    def disk_size(self) -> int:
        """Return the length in bytes of the backing file."""

    def set_disk_size(self, size: int) -> None: ...

    def transaction(self) -> AbstractContextManager[Transaction]: ...

    def close(self) -> None: ...


class FilesystemLibrary(Protocol):
    supports_allocator: bool

    def create(self, disk: Path, size: int, bootloader: bytes) -> None: ...

    def open(self, disk: Path) -> FileSystem: ...

    def serve(self, disk: Path, directory: Path) -> None:
        """Mount ``disk`` at ``directory``; may block for the lifetime of the mount."""

    def mounted(self, directory: Path) -> bool: ...

    def unmount(self, directory: Path) -> None: ...

    def archive(self, disk: Path, folder: Path, bootloader: bytes, free_space: int) -> None:
        """Pack ``folder`` into a new image at ``disk`` sized ``free_space`` bytes."""


def pad_bootloader(data: bytes, size: int = BOOTLOADER_SIZE) -> bytes:
    if len(data) > size:
        raise FilesystemError(f"bootloader is {len(data)} bytes, larger than the {size} byte region")
    return data + b"\0" * (size - len(data))


def create_sparse(path: Path, size: int) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as handle:
        handle.truncate(size)


class RedoxFsTools:
    """Filesystem library backed by the ``redoxfs`` command-line tools."""

    supports_allocator = False

    def create(self, disk: Path, size: int, bootloader: bytes) -> None:
        create_sparse(disk, size)
        with _bootloader_file(disk, bootloader) as bootloader_path:
            run_tool("mkfs", ["redoxfs-mkfs", disk, bootloader_path])
        with disk.open("r+b") as handle:
            handle.truncate(size)

    def open(self, disk: Path) -> FileSystem:
        raise FilesystemError(f"redoxfs command-line tools do not expose the allocator of {disk}")

    def serve(self, disk: Path, directory: Path) -> None:
        run_tool("mount", ["redoxfs", disk, directory])

    def mounted(self, directory: Path) -> bool:
        return os.path.ismount(directory)

    def unmount(self, directory: Path) -> None:
        run_tool("unmount", ["fusermount", "-u", directory])

    def archive(self, disk: Path, folder: Path, bootloader: bytes, free_space: int) -> None:
        create_sparse(disk, free_space)
        with _bootloader_file(disk, bootloader) as bootloader_path:
            run_tool("archive", ["redoxfs-ar", disk, folder, bootloader_path])


@contextmanager
def _bootloader_file(disk: Path, bootloader: bytes) -> Iterator[Path]:
    data = pad_bootloader(bootloader)
    fd, name = tempfile.mkstemp(prefix=".bootloader-", dir=disk.parent)
    path = Path(name)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        yield path
    finally:
        path.unlink(missing_ok=True)


class Mount:
    """A filesystem image mounted at a directory until :meth:`unmount`."""

    def __init__(
        self,
        library: FilesystemLibrary,
        disk: Path,
        directory: Path,
        *,
        timeout_s: float = 30.0,
    ):
        self.library = library
        self.disk = Path(disk)
        self.directory = Path(directory).resolve()
        self.timeout_s = timeout_s
        self._future: Future[None] | None = None

    def __enter__(self) -> "Mount":
        self.mount()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unmount()
        return None

    def mount(self) -> None:
        if self.library.mounted(self.directory):
            raise FilesystemError(f"{self.directory} was already mounted")

        future: Future[None] = Future()

        def serve() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                self.library.serve(self.disk, self.directory)
            except BaseException as exc:
                future.set_exception(exc)
            else:
                future.set_result(None)

        # Daemon thread: a hung helper must not keep the interpreter alive.
        threading.Thread(target=serve, name="guestexec-mount", daemon=True).start()
        self._future = future

        deadline = time.monotonic() + self.timeout_s
        while not self.library.mounted(self.directory):
            if future.done():
                error = future.exception()
                if isinstance(error, HarnessError):
                    raise error
                if error is not None:
                    raise FilesystemError(f"mounting {self.disk} failed: {error}") from error
            if time.monotonic() >= deadline:
                future.cancel()
                raise MountTimeout(
                    f"{self.disk} was not mounted at {self.directory} within {self.timeout_s:g}s"
                )
            time.sleep(_MOUNT_POLL_INTERVAL_S)

        logger.debug("mounted %s at %s", self.disk, self.directory)

    def unmount(self) -> None:
        if not self.library.mounted(self.directory):
            return
        self.library.unmount(self.directory)
        if self.library.mounted(self.directory):
            raise FilesystemError(f"{self.directory} was still mounted")
        logger.debug("unmounted %s", self.directory)
