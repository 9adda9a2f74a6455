"""Build cached base images and per-run images derived from them."""

from __future__ import annotations

import abc
import logging
import os
import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from .disk import DiskSizer
from .errors import CacheDriftError, ConfigError, FilesystemError
from .filesystem import FilesystemLibrary, Mount, pad_bootloader
from .installer import BOOTLOADER_MANIFEST, Installer
from .qemu import Architecture
from .runconfig import FolderMapping, RunConfiguration, write_guest_config
from .runtime_paths import CacheLocation, partial_path
from .tools import run_tool

logger = logging.getLogger(__name__)

RUN_DISK_NAME = "guestexec.bin"
RUN_ROOT_NAME = "guestexec"


@dataclass(frozen=True)
class BaseImage:
    name: str
    path: Path
    manifest: str
    archived: bool


@dataclass
class RunImage:
    disk: Path
    root: Path
    backend: "ImageBackend"
    mount: Mount | None = None


def extract_tar(archive: Path, destination: Path) -> None:
    run_tool("extract", ["tar", "-x", "-p", "--same-owner", "-f", archive, "-C", destination, "."])


def pack_tar(source: Path, archive: Path) -> None:
    run_tool("compress", ["tar", "-c", "-p", "-f", archive, "-C", source, "."])


def copy_folder(source: Path, destination: Path) -> None:
    """Copy the contents of ``source`` (or the file itself) into ``destination``."""
    try:
        if source.is_dir():
            shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
        else:
            destination.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, destination / source.name)
    except (OSError, shutil.Error) as exc:
        raise FilesystemError(f"copying {source} to {destination} failed: {exc}") from exc


class ImageBackend(abc.ABC):
    """How base and run images are stored: a mountable disk or a tar archive."""

    archived: bool

    def __init__(self, library: FilesystemLibrary, sizer: DiskSizer, *, mount_timeout_s: float = 30.0):
        self.library = library
        self.sizer = sizer
        self.mount_timeout_s = mount_timeout_s

    @abc.abstractmethod
    def build_base(
        self,
        partial: Path,
        work_dir: Path,
        *,
        size: int,
        bootloader: bytes,
        populate: Callable[[Path], None],
    ) -> None:
        """Produce a base image at ``partial`` whose tree ``populate`` fills."""

    @abc.abstractmethod
    def materialize(self, base: BaseImage, workspace: Path, *, size: int) -> RunImage:
        """Return a run image whose tree is writable at ``RunImage.root``."""

    @abc.abstractmethod
    def finalize(self, run: RunImage, *, bootloader: bytes, size: int) -> None:
        """Turn the written tree into the disk the emulator boots."""

    def release(self, run: RunImage) -> None:
        """Give up the run tree after an error, without producing a disk."""

    @abc.abstractmethod
    def extract_artifacts(self, run: RunImage, artifacts: Sequence[FolderMapping]) -> None: ...


class MountedBackend(ImageBackend):
    archived = False

    def _mount(self, disk: Path, directory: Path) -> Mount:
        mount = Mount(self.library, disk, directory, timeout_s=self.mount_timeout_s)
        mount.mount()
        return mount

    def build_base(
        self,
        partial: Path,
        work_dir: Path,
        *,
        size: int,
        bootloader: bytes,
        populate: Callable[[Path], None],
    ) -> None:
        self.library.create(partial, size, pad_bootloader(bootloader))
        with Mount(self.library, partial, work_dir, timeout_s=self.mount_timeout_s):
            populate(work_dir)

    def materialize(self, base: BaseImage, workspace: Path, *, size: int) -> RunImage:
        disk = workspace / RUN_DISK_NAME
        root = workspace / RUN_ROOT_NAME
        root.mkdir(parents=True, exist_ok=True)
        run_tool("copy base image", ["cp", base.path, disk])
        if disk.stat().st_size < size:
            self.sizer.expand(disk, size)
        run = RunImage(disk=disk, root=root, backend=self)
        run.mount = self._mount(disk, root)
        return run

    def finalize(self, run: RunImage, *, bootloader: bytes, size: int) -> None:
        self.release(run)

    def release(self, run: RunImage) -> None:
        if run.mount is not None:
            run.mount.unmount()
            run.mount = None

    def extract_artifacts(self, run: RunImage, artifacts: Sequence[FolderMapping]) -> None:
        with Mount(self.library, run.disk, run.root, timeout_s=self.mount_timeout_s):
            for mapping in artifacts:
                source = run.root / mapping.guest_relative()
                if not source.exists():
                    raise FilesystemError(f"artifact {mapping.guest} does not exist in the guest")
                logger.info("copying '%s' to '%s'", mapping.guest, mapping.host)
                copy_folder(source, mapping.host)


class ArchivedBackend(ImageBackend):
    archived = True

    def build_base(
        self,
        partial: Path,
        work_dir: Path,
        *,
        size: int,
        bootloader: bytes,
        populate: Callable[[Path], None],
    ) -> None:
        populate(work_dir)
        logger.info("compressing %s", partial.name)
        pack_tar(work_dir, partial)

    def materialize(self, base: BaseImage, workspace: Path, *, size: int) -> RunImage:
        root = workspace / RUN_ROOT_NAME
        root.mkdir(parents=True, exist_ok=True)
        extract_tar(base.path, root)
        return RunImage(disk=workspace / RUN_DISK_NAME, root=root, backend=self)

    def finalize(self, run: RunImage, *, bootloader: bytes, size: int) -> None:
        self.library.archive(run.disk, run.root, pad_bootloader(bootloader), size)
        if self.library.supports_allocator:
            self.sizer.shrink(run.disk)

    def extract_artifacts(self, run: RunImage, artifacts: Sequence[FolderMapping]) -> None:
        raise ConfigError("artifacts can only be extracted from mountable images")


class ImageBuilder:
    """Keeps the bootloader and base images cached and derives run images."""

    def __init__(
        self,
        cache: CacheLocation,
        backend: ImageBackend,
        installer: Installer,
        arch: Architecture,
        *,
        live: bool = False,
    ):
        self.cache = cache
        self.backend = backend
        self.installer = installer
        self.arch = arch
        self.live = live

    @property
    def base_size(self) -> int:
        return self.arch.live_disk_size if self.live else self.arch.disk_size

    def ensure_bootloader(self) -> bytes:
        path = self.cache.bootloader_path(uefi=self.arch.uefi)
        if not path.is_file():
            logger.info("building bootloader")
            work_dir = self.cache.ensure().work_dir("bootloader")
            _reset_dir(work_dir)
            self.installer.install(BOOTLOADER_MANIFEST, work_dir, live=self.live)
            name = "bootloader.efi" if self.arch.uefi else "bootloader.bios"
            built = work_dir / "boot" / name
            if not built.is_file():
                raise FilesystemError(f"installer did not produce boot/{name}")
            os.replace(built, path)
            shutil.rmtree(work_dir)
        return path.read_bytes()

    def ensure_base(self, name: str, manifest: str, *, update: bool = False) -> BaseImage:
        path = self.cache.ensure().base_path(name, archived=self.backend.archived)
        try:
            self._check_manifest(path, manifest)
        except CacheDriftError as exc:
            logger.info("%s; rebuilding", exc)
            self._invalidate(path)
        if update:
            self._invalidate(path)

        if not path.is_file():
            self._build_base(name, path, manifest)
        return BaseImage(name=name, path=path, manifest=manifest, archived=self.backend.archived)

    def materialize_run(
        self,
        base: BaseImage,
        run_config: RunConfiguration,
        workspace: Path,
        *,
        size: int | None = None,
    ) -> RunImage:
        """Create the run image for ``run_config`` inside ``workspace``."""
        run_config.validate()
        if run_config.artifacts and self.backend.archived:
            raise ConfigError("artifacts require a mountable image; enable FUSE to use them")

        size = self.base_size if size is None else size
        bootloader = self.ensure_bootloader()
        run = self.backend.materialize(base, workspace, size=size)
        try:
            write_guest_config(run.root, run_config)
            for mapping in run_config.folders:
                logger.info("copying '%s' to '%s'", mapping.host, mapping.guest)
                copy_folder(mapping.canonical_host(), run.root / mapping.guest_relative())
        except BaseException:
            self.backend.release(run)
            raise
        self.backend.finalize(run, bootloader=bootloader, size=size)
        return run

    def extract_artifacts(self, run: RunImage, artifacts: Sequence[FolderMapping]) -> None:
        if artifacts:
            self.backend.extract_artifacts(run, artifacts)

    def _check_manifest(self, path: Path, manifest: str) -> None:
        record = self.cache.manifest_path(path)
        if not path.exists():
            return
        if not record.is_file():
            raise CacheDriftError(f"{path.name} has no recorded manifest")
        if record.read_text(encoding="utf-8") != manifest:
            raise CacheDriftError(f"{path.name} was built from a different manifest")

    def _invalidate(self, path: Path) -> None:
        path.unlink(missing_ok=True)
        self.cache.manifest_path(path).unlink(missing_ok=True)

    def _build_base(self, name: str, path: Path, manifest: str) -> None:
        logger.info("building %s", name)
        bootloader = self.ensure_bootloader()
        partial = partial_path(path)
        partial.unlink(missing_ok=True)
        work_dir = self.cache.work_dir(name)
        _reset_dir(work_dir)

        prebuilt = self._prebuilt_archive(name, manifest)

        def populate(root: Path) -> None:
            if prebuilt is not None:
                logger.info("extracting %s", prebuilt.name)
                extract_tar(prebuilt, root)
            else:
                self.installer.install(manifest, root, live=self.live)

        self.backend.build_base(
            partial,
            work_dir,
            size=self.base_size,
            bootloader=bootloader,
            populate=populate,
        )
        os.replace(partial, path)
        self.cache.manifest_path(path).write_text(manifest, encoding="utf-8")
        shutil.rmtree(work_dir)

    def _prebuilt_archive(self, name: str, manifest: str) -> Path | None:
        """An archive base built earlier without FUSE, reusable by a mountable build."""
        if self.backend.archived:
            return None
        archive = self.cache.archive_path(name)
        try:
            self._check_manifest(archive, manifest)
        except CacheDriftError:
            return None
        return archive if archive.is_file() else None


def _reset_dir(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)
