"""guestexec package."""

from .api import Harness
from .config import HarnessConfig
from .errors import (
    CacheDriftError,
    ConfigError,
    FilesystemError,
    HarnessError,
    ProtocolError,
    SubprocessError,
)
from .preflight import assert_runtime_ready, check_runtime
from .qemu import ExecutionResult, Outcome
from .runconfig import FolderMapping, RunConfiguration
from .runtime_paths import CacheLocation, get_app_dir

__all__ = [
    "CacheDriftError",
    "CacheLocation",
    "ConfigError",
    "ExecutionResult",
    "FilesystemError",
    "FolderMapping",
    "Harness",
    "HarnessConfig",
    "HarnessError",
    "Outcome",
    "ProtocolError",
    "RunConfiguration",
    "SubprocessError",
    "assert_runtime_ready",
    "check_runtime",
    "get_app_dir",
]
