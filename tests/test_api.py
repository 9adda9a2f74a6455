from __future__ import annotations

from pathlib import Path

import pytest

import guestexec.api as api
import guestexec.preflight as preflight
from guestexec import Harness, HarnessConfig, Outcome
from guestexec.errors import ConfigError, ToolMissingError
from guestexec.runconfig import FolderMapping, RunConfiguration
from guestexec.runtime_paths import CacheLocation


def _harness(tmp_path: Path, fake_fs, fake_installer, fake_launcher, **config) -> Harness:
    return Harness(
        HarnessConfig(**config),
        cache=CacheLocation(tmp_path / "cache"),
        installer=fake_installer,
        filesystem=fake_fs,
        launcher=fake_launcher,
        skip_preflight=True,
    )


def test_harness_runs_preflight_by_default(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(preflight.shutil, "which", lambda name: None)
    with pytest.raises(ToolMissingError, match="redox_installer"):
        Harness(HarnessConfig(), cache=CacheLocation(tmp_path))


def test_invalid_run_configuration_fails_before_building(
    tmp_path: Path, fake_fs, fake_installer, fake_launcher
) -> None:
    harness = _harness(tmp_path, fake_fs, fake_installer, fake_launcher)
    with pytest.raises(ConfigError):
        harness.run(RunConfiguration(arguments=[]))
    assert fake_installer.calls == []
    assert fake_launcher.calls == []


def test_run_boots_archived_image_with_merged_args(
    monkeypatch, tmp_path: Path, fake_fs, fake_installer, fake_launcher
) -> None:
    workspaces: list[str] = []
    real_tempdir = api.tempfile.TemporaryDirectory

    def recording_tempdir(**kwargs):
        tempdir = real_tempdir(**kwargs)
        workspaces.append(tempdir.name)
        return tempdir

    monkeypatch.setattr(api.tempfile, "TemporaryDirectory", recording_tempdir)
    harness = _harness(tmp_path, fake_fs, fake_installer, fake_launcher, qemu_args=["-m", "512"])

    result = harness.run(RunConfiguration(arguments=["true"]))

    assert result.outcome is Outcome.SUCCESS
    assert result.code == 0
    [args] = fake_launcher.calls
    assert args[-2:] == ["-m", "512"]
    assert "2048" not in args
    workspace = Path(workspaces[0])
    assert f"file={workspace / 'guestexec.bin'},format=raw" in args
    assert not workspace.exists()
    assert (tmp_path / "cache" / "base.tar").is_file()


def test_run_extracts_artifacts_only_on_success(
    tmp_path: Path, fake_fs, fake_installer, fake_launcher
) -> None:
    out = tmp_path / "out"
    harness = _harness(tmp_path, fake_fs, fake_installer, fake_launcher, use_fuse=True)
    artifacts = [FolderMapping(out, "/etc")]

    fake_launcher.status = 53
    result = harness.run(RunConfiguration(arguments=["true"], artifacts=artifacts))
    assert result.outcome is Outcome.FAILURE
    assert not out.exists()

    fake_launcher.status = 51
    result = harness.run(RunConfiguration(arguments=["true"], artifacts=artifacts))
    assert result.outcome is Outcome.SUCCESS
    assert (out / "guestexecd").read_text(encoding="utf-8") == "true\n"
    assert not fake_fs.mounts
