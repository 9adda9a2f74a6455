from __future__ import annotations

import os
import subprocess
import sys

import pytest

pytestmark = pytest.mark.integration


def _require_vm_tests() -> None:
    if os.environ.get("GUESTEXEC_RUN_VM_TESTS") != "1":
        pytest.skip("integration test disabled; set GUESTEXEC_RUN_VM_TESTS=1")


@pytest.mark.parametrize(("command", "expected"), [("true", 0), ("false", 1)])
def test_guest_verdict_reaches_host_exit_code(command: str, expected: int) -> None:
    _require_vm_tests()

    completed = subprocess.run(
        [sys.executable, "-m", "guestexec", "exec", command],
        capture_output=True,
        check=False,
        text=True,
        timeout=1800,
    )

    assert completed.returncode == expected, completed.stderr
    banner = "success" if expected == 0 else "failure"
    assert f"## guestexec ({banner}) ##" in completed.stderr
