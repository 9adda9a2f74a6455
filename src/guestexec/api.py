"""Public API primitives."""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path

from .config import HarnessConfig
from .disk import DiskSizer
from .filesystem import FilesystemLibrary, RedoxFsTools
from .images import ArchivedBackend, BaseImage, ImageBackend, ImageBuilder, MountedBackend
from .installer import Installer, RedoxInstallerTool, load_manifest
from .preflight import assert_runtime_ready
from .qemu import (
    ExecutionResult,
    Outcome,
    VmLauncher,
    architecture_for,
    find_uefi_firmware,
    merge_args,
)
from .runconfig import RunConfiguration
from .runtime_paths import CacheLocation

logger = logging.getLogger(__name__)

LOG_NAME = "guestexec.log"


class Harness:
    """Runs one command inside a freshly derived guest image per call."""

    def __init__(
        self,
        config: HarnessConfig | None = None,
        *,
        cache: CacheLocation | None = None,
        installer: Installer | None = None,
        filesystem: FilesystemLibrary | None = None,
        launcher: VmLauncher | None = None,
        app_dir: str | Path | None = None,
        skip_preflight: bool = False,
    ):
        self.config = config or HarnessConfig()
        self.config.validate()
        self.arch = architecture_for(self.config.target)
        self.cache = cache or CacheLocation.default(self.config.target, app_dir)
        if not skip_preflight:
            assert_runtime_ready(self.config, self.cache)

        self.filesystem = filesystem or RedoxFsTools()
        self.installer = installer or RedoxInstallerTool()
        self.launcher = launcher or VmLauncher(self.config.qemu_binary or self.arch.qemu_binary)
        self.builder = ImageBuilder(
            self.cache,
            self._backend(),
            self.installer,
            self.arch,
            live=self.config.live,
        )

    def _backend(self) -> ImageBackend:
        sizer = DiskSizer(self.filesystem)
        backend_type = MountedBackend if self.config.use_fuse else ArchivedBackend
        return backend_type(self.filesystem, sizer, mount_timeout_s=self.config.mount_timeout_s)

    def build_base(self) -> BaseImage:
        """Make sure the base image for this configuration is cached and current."""
        manifest = load_manifest(self.config.base_name)
        return self.builder.ensure_base(self.config.base_name, manifest, update=self.config.update)

    def qemu_args(self, image: Path, log_path: Path) -> list[str]:
        firmware = find_uefi_firmware(self.arch.name) if self.arch.uefi else None
        defaults = self.arch.default_args(
            image=image,
            log_path=log_path,
            kvm=self.config.kvm,
            gui=self.config.gui,
            firmware=firmware,
        )
        return merge_args(defaults, self.config.qemu_args)

    def run(self, run_config: RunConfiguration) -> ExecutionResult:
        """Boot the guest, run ``run_config`` and return the decoded verdict."""
        run_config.validate()
        base = self.build_base()

        with tempfile.TemporaryDirectory(prefix="guestexec-") as workspace:
            workspace_path = Path(workspace)
            run = self.builder.materialize_run(
                base, run_config, workspace_path, size=self.config.disk_size
            )
            log_path = workspace_path / LOG_NAME
            result = self.launcher.launch(self.qemu_args(run.disk, log_path), log_path)
            logger.debug("emulator exited with status %s", result.status)
            if result.outcome is Outcome.SUCCESS:
                self.builder.extract_artifacts(run, run_config.artifacts)
            return result
