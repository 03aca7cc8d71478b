from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import List

import pytest

from achroot.modules import config as config_mod


class FakeMountTable:
    """Pretends to be mount/umount, keeping a mountinfo file up to date."""

    def __init__(self, mountinfo: Path) -> None:
        self.mountinfo = mountinfo
        self.mountinfo.write_text("", encoding="utf-8")
        self.calls: List[List[str]] = []

    def points(self) -> List[str]:
        return [line.split()[4] for line in self.mountinfo.read_text(encoding="utf-8").splitlines() if line]

    def _write(self, points: List[str]) -> None:
        self.mountinfo.write_text(
            "".join(f"{i + 20} 1 0:{i} / {p} rw,relatime - fake none rw\n" for i, p in enumerate(points)),
            encoding="utf-8",
        )

    def __call__(self, cmd, cwd=None, env=None, check=True):
        self.calls.append(list(cmd))
        points = self.points()
        if cmd[0] == "mount":
            if cmd[1] == "-t":
                points.append(cmd[4])
            elif cmd[1] in ("--rbind", "--bind"):
                points.append(cmd[3])
        elif cmd[0] == "umount":
            target = cmd[-1]
            if "--recursive" in cmd:
                points = [p for p in points if p != target and not p.startswith(target + os.sep)]
            else:
                points = [p for p in points if p != target]
        self._write(points)
        return 0, "", ""


@pytest.fixture
def mount_table(tmp_path: Path) -> FakeMountTable:
    return FakeMountTable(tmp_path / "mountinfo")


@pytest.fixture
def root(tmp_path: Path) -> Path:
    path = Path(os.path.realpath(tmp_path)) / "alpine"
    path.mkdir()
    return path


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path: Path) -> None:
    """No config file or variable from the machine running the tests."""
    monkeypatch.setattr(config_mod, "USER_CONFIG", str(tmp_path / "no-user-config.yml"))
    monkeypatch.setattr(config_mod, "SYSTEM_CONFIG", str(tmp_path / "no-system-config.yml"))
    monkeypatch.delenv("ACHROOT_CONFIG", raising=False)
    for var in config_mod.ENV_VARS.values():
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def install_runner():
    """Runner that records commands and carries out `install SRC DST`."""
    calls: List[List[str]] = []

    def runner(cmd, cwd=None, env=None, check=True):
        calls.append(list(cmd))
        if "install" in cmd:
            shutil.copyfile(cmd[-2], cmd[-1])
        return 0, "", ""

    runner.calls = calls
    return runner
