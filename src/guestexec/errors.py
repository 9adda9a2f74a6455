"""Error types raised by guestexec."""

from __future__ import annotations

from collections.abc import Sequence


class HarnessError(RuntimeError):
    """Base error for harness failures unrelated to the guest verdict."""


class ConfigError(HarnessError, ValueError):
    """Raised when a run configuration is missing or malformed."""


class ToolMissingError(HarnessError):
    """Raised when a required external executable is not installed."""


class ProtocolError(HarnessError):
    """Raised when a guest/host protocol expectation is violated."""


class UnexpectedEvent(ProtocolError):
    """Raised when the supervisor receives an event from an unknown source."""

    def __init__(self, event_id: int):
        super().__init__(f"unexpected event id {event_id}")
        self.event_id = event_id


class SubprocessError(HarnessError):
    """Raised when an external tool exits with a non-zero status."""

    def __init__(self, step: str, command: Sequence[str], returncode: int | None):
        self.step = step
        self.command = tuple(command)
        self.returncode = returncode
        if returncode is None:
            detail = "could not be started"
        else:
            detail = f"exited with status {returncode}"
        super().__init__(f"{step} failed: `{' '.join(self.command)}` {detail}")


class FilesystemError(HarnessError):
    """Raised on allocator, transaction or mount failures."""


class MountTimeout(FilesystemError):
    """Raised when a mount does not appear before its deadline."""


class CacheDriftError(HarnessError):
    """Raised when a cached base image was built from a different manifest."""
