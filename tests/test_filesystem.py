from __future__ import annotations

import threading
from pathlib import Path

import pytest

import guestexec.filesystem as filesystem
from guestexec.errors import FilesystemError, MountTimeout, SubprocessError
from guestexec.filesystem import BOOTLOADER_SIZE, Mount, RedoxFsTools, pad_bootloader

from conftest import FakeFilesystemLibrary


def test_pad_bootloader_fills_the_reserved_region() -> None:
    padded = pad_bootloader(b"BOOT")
    assert len(padded) == BOOTLOADER_SIZE
    assert padded.startswith(b"BOOT\0")


def test_pad_bootloader_rejects_oversized_data() -> None:
    with pytest.raises(FilesystemError, match="larger than"):
        pad_bootloader(b"x" * 9, size=8)


def test_mount_context_mounts_and_unmounts(fake_fs, tmp_path: Path) -> None:
    directory = tmp_path / "root"
    directory.mkdir()

    with Mount(fake_fs, tmp_path / "disk.bin", directory, timeout_s=1.0):
        assert fake_fs.mounted(directory)

    assert not fake_fs.mounted(directory)
    assert fake_fs.served == [(tmp_path / "disk.bin", directory)]


def test_mount_refuses_an_existing_mount_point(fake_fs, tmp_path: Path) -> None:
    fake_fs.mounts.add(tmp_path)
    with pytest.raises(FilesystemError, match="already mounted"):
        Mount(fake_fs, tmp_path / "disk.bin", tmp_path).mount()


def test_mount_helper_failure_propagates(tmp_path: Path) -> None:
    class Failing(FakeFilesystemLibrary):
        def serve(self, disk: Path, directory: Path) -> None:
            raise SubprocessError("mount", ["redoxfs", str(disk), str(directory)], 1)

    with pytest.raises(SubprocessError, match="mount failed"):
        Mount(Failing(), tmp_path / "disk.bin", tmp_path, timeout_s=5.0).mount()


def test_unexpected_mount_error_is_wrapped(tmp_path: Path) -> None:
    class Broken(FakeFilesystemLibrary):
        def serve(self, disk: Path, directory: Path) -> None:
            raise OSError("no fuse device")

    with pytest.raises(FilesystemError, match="no fuse device"):
        Mount(Broken(), tmp_path / "disk.bin", tmp_path, timeout_s=5.0).mount()


def test_hung_mount_times_out(tmp_path: Path) -> None:
    release = threading.Event()

    class Hung(FakeFilesystemLibrary):
        def serve(self, disk: Path, directory: Path) -> None:
            release.wait(5.0)

    try:
        with pytest.raises(MountTimeout, match="within"):
            Mount(Hung(), tmp_path / "disk.bin", tmp_path, timeout_s=0.05).mount()
    finally:
        release.set()


def test_helper_exiting_without_mounting_times_out(tmp_path: Path) -> None:
    class Daemonizing(FakeFilesystemLibrary):
        def serve(self, disk: Path, directory: Path) -> None:
            return None

    with pytest.raises(MountTimeout):
        Mount(Daemonizing(), tmp_path / "disk.bin", tmp_path, timeout_s=0.05).mount()


def test_unmount_reports_a_stuck_mount(tmp_path: Path) -> None:
    class Stuck(FakeFilesystemLibrary):
        def unmount(self, directory: Path) -> None:
            return None

    mount = Mount(Stuck(), tmp_path / "disk.bin", tmp_path, timeout_s=1.0)
    mount.mount()
    with pytest.raises(FilesystemError, match="still mounted"):
        mount.unmount()


def test_command_line_tools_cannot_open_the_allocator(tmp_path: Path) -> None:
    with pytest.raises(FilesystemError, match="allocator"):
        RedoxFsTools().open(tmp_path / "disk.bin")


def test_command_line_create_runs_mkfs(monkeypatch, tmp_path: Path) -> None:
    calls: list[tuple[str, list[str], bytes]] = []

    def fake_run_tool(step, args):
        bootloader = Path(args[-1])
        calls.append((step, [str(arg) for arg in args], bootloader.read_bytes()))

    monkeypatch.setattr(filesystem, "run_tool", fake_run_tool)
    disk = tmp_path / "base.bin.partial"

    RedoxFsTools().create(disk, 8 * 1024 * 1024, b"BOOT")

    assert disk.stat().st_size == 8 * 1024 * 1024
    [(step, args, bootloader)] = calls
    assert step == "mkfs"
    assert args[:2] == ["redoxfs-mkfs", str(disk)]
    assert len(bootloader) == BOOTLOADER_SIZE
    assert not Path(args[2]).exists()


def test_command_line_archive_runs_redoxfs_ar(monkeypatch, tmp_path: Path) -> None:
    calls: list[list[str]] = []
    monkeypatch.setattr(filesystem, "run_tool", lambda step, args: calls.append([str(a) for a in args]))
    disk = tmp_path / "guestexec.bin"

    RedoxFsTools().archive(disk, tmp_path / "root", b"BOOT", 1024 * 1024)

    assert disk.stat().st_size == 1024 * 1024
    assert calls[0][:3] == ["redoxfs-ar", str(disk), str(tmp_path / "root")]
