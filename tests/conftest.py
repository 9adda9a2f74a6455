from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from guestexec.filesystem import BLOCK_SIZE, FreeExtent, create_sparse
from guestexec.installer import BOOTLOADER_MANIFEST
from guestexec.qemu import ExecutionResult

FAKE_RESERVED_BLOCKS = 2


@dataclass
class FakeImageState:
    header_size: int
    free: set[int]
    bootloader: bytes = b""


class FakeTransaction:
    def __init__(self, state: FakeImageState):
        self._state = state
        self.header_size = state.header_size
        self.free = set(state.free)
        self.commits: list[bool] = []

    def free_extents(self):
        run_start = None
        previous = None
        for block in sorted(self.free):
            if run_start is None:
                run_start = previous = block
            elif block == previous + 1:
                previous = block
            else:
                yield FreeExtent(run_start, previous - run_start + 1)
                run_start = previous = block
        if run_start is not None:
            yield FreeExtent(run_start, previous - run_start + 1)

    def allocate_at(self, index: int) -> bool:
        if index not in self.free:
            return False
        self.free.remove(index)
        return True

    def deallocate(self, index: int, count: int) -> None:
        self.free.update(range(index, index + count))

    def commit(self, *, squash: bool) -> None:
        self.commits.append(squash)
        blocks = self.header_size // BLOCK_SIZE
        self._state.header_size = self.header_size
        self._state.free = {block for block in self.free if block < blocks}


class FakeFileSystem:
    block_size = BLOCK_SIZE
    reserved_blocks = FAKE_RESERVED_BLOCKS

    def __init__(self, disk: Path, state: FakeImageState):
        self.disk = disk
        self.state = state
        self.closed = False

    def disk_size(self) -> int:
        return self.disk.stat().st_size

    def set_disk_size(self, size: int) -> None:
        with self.disk.open("r+b") as handle:
            handle.truncate(size)

    @contextmanager
    def transaction(self):
        yield FakeTransaction(self.state)

    def close(self) -> None:
        self.closed = True


@dataclass
class FakeFilesystemLibrary:
    """In-memory allocator state keyed by image path; mounts are plain directories."""

    supports_allocator: bool = True
    images: dict[Path, FakeImageState] = field(default_factory=dict)
    mounts: set[Path] = field(default_factory=set)
    served: list[tuple[Path, Path]] = field(default_factory=list)
    archived: list[tuple[Path, Path, int, int]] = field(default_factory=list)
    opened: list[FakeFileSystem] = field(default_factory=list)

    def _new_state(self, size: int, used: int = 1) -> FakeImageState:
        blocks = size // BLOCK_SIZE - FAKE_RESERVED_BLOCKS
        return FakeImageState(header_size=blocks * BLOCK_SIZE, free=set(range(used, blocks)))

    def state(self, disk: Path) -> FakeImageState:
        disk = Path(disk)
        if disk not in self.images:
            self.images[disk] = self._new_state(disk.stat().st_size)
        return self.images[disk]

    def use(self, disk: Path, *blocks: int) -> None:
        self.state(disk).free.difference_update(blocks)

    def create(self, disk: Path, size: int, bootloader: bytes) -> None:
        create_sparse(disk, size)
        state = self._new_state(size)
        state.bootloader = bootloader
        self.images[Path(disk)] = state

    def open(self, disk: Path) -> FakeFileSystem:
        fs = FakeFileSystem(Path(disk), self.state(disk))
        self.opened.append(fs)
        return fs

    def serve(self, disk: Path, directory: Path) -> None:
        self.served.append((Path(disk), Path(directory)))
        self.mounts.add(Path(directory))

    def mounted(self, directory: Path) -> bool:
        return Path(directory) in self.mounts

    def unmount(self, directory: Path) -> None:
        self.mounts.discard(Path(directory))

    def archive(self, disk: Path, folder: Path, bootloader: bytes, free_space: int) -> None:
        create_sparse(disk, free_space)
        used = 1 + sum(1 for _ in Path(folder).rglob("*"))
        state = self._new_state(free_space, used=used)
        state.bootloader = bootloader
        self.images[Path(disk)] = state
        self.archived.append((Path(disk), Path(folder), len(bootloader), free_space))


@dataclass
class FakeInstaller:
    """Writes a recognisable tree instead of installing packages."""

    calls: list[tuple[str, Path, bool]] = field(default_factory=list)
    produce_bootloader: bool = True
    before_install: object = None
    error: Exception | None = None

    @property
    def base_installs(self) -> int:
        return sum(1 for manifest, _, _ in self.calls if manifest != BOOTLOADER_MANIFEST)

    def install(self, manifest: str, destination: Path, *, live: bool = False) -> None:
        if callable(self.before_install):
            self.before_install(manifest, destination)
        self.calls.append((manifest, destination, live))
        if self.error is not None:
            raise self.error
        if manifest == BOOTLOADER_MANIFEST:
            if self.produce_bootloader:
                (destination / "boot").mkdir(parents=True, exist_ok=True)
                (destination / "boot" / "bootloader.bios").write_bytes(b"BIOS")
                (destination / "boot" / "bootloader.efi").write_bytes(b"EFI")
            return
        (destination / "etc").mkdir(parents=True, exist_ok=True)
        (destination / "etc" / "manifest").write_text(manifest, encoding="utf-8")
        (destination / "usr" / "bin").mkdir(parents=True, exist_ok=True)
        (destination / "usr" / "bin" / "guestexecd").write_text("#!/bin/sh\n", encoding="utf-8")


@dataclass
class FakeLauncher:
    status: int = 51
    log: str = "guest output\n"
    calls: list[list[str]] = field(default_factory=list)

    def launch(self, args, log_path: Path) -> ExecutionResult:
        self.calls.append(list(args))
        return ExecutionResult.from_status(self.status, self.log)


@pytest.fixture
def fake_fs() -> FakeFilesystemLibrary:
    return FakeFilesystemLibrary()


@pytest.fixture
def fake_installer() -> FakeInstaller:
    return FakeInstaller()


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()
