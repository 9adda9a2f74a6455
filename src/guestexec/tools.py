"""Helpers for invoking external tools."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from pathlib import Path

from .errors import SubprocessError

logger = logging.getLogger(__name__)


def run_tool(step: str, args: Sequence[str | Path], **kwargs) -> subprocess.CompletedProcess:
    """Run ``args`` and raise :class:`SubprocessError` naming ``step`` on failure."""
    command = [str(arg) for arg in args]
    logger.debug("running: %s", " ".join(command))
    try:
        completed = subprocess.run(command, check=False, **kwargs)
    except OSError as exc:
        raise SubprocessError(step, command, None) from exc
    if completed.returncode != 0:
        raise SubprocessError(step, command, completed.returncode)
    return completed
