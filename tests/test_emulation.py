from __future__ import annotations

from pathlib import Path

import pytest

from achroot.modules.emulation import EmulationProvisioner
from achroot.modules.errors import DependencyInstallError


@pytest.fixture
def binfmt_dir(tmp_path: Path) -> Path:
    path = tmp_path / "binfmt_misc"
    path.mkdir()
    return path


@pytest.fixture
def qemu(tmp_path: Path) -> Path:
    path = tmp_path / "host-bin" / "qemu-aarch64-static"
    path.parent.mkdir()
    path.write_bytes(b"\x7fELF qemu")
    return path


def register(binfmt_dir: Path, interpreter: str) -> None:
    (binfmt_dir / "qemu-aarch64").write_text(
        f"enabled\ninterpreter {interpreter}\nflags: OCF\noffset 0\n", encoding="utf-8")


def test_everything_present_installs_nothing(binfmt_dir: Path, qemu: Path, root: Path) -> None:
    register(binfmt_dir, "/usr/libexec/qemu-binfmt/aarch64-binfmt-P")
    calls = []
    emu = EmulationProvisioner(runner=lambda cmd, check=True: calls.append(cmd) or (0, "", ""),
                               which={"qemu-aarch64-static": str(qemu)}.get,
                               binfmt_dir=str(binfmt_dir))

    inside = emu.ensure("arm64", str(root))

    assert calls == []
    assert Path(inside) == root / "usr/libexec/qemu-binfmt/aarch64-binfmt-P"
    assert Path(inside).read_bytes() == qemu.read_bytes()
    assert Path(inside).stat().st_mode & 0o777 == 0o755


def test_missing_emulator_is_installed(binfmt_dir: Path, qemu: Path, root: Path) -> None:
    register(binfmt_dir, str(qemu))
    installed = []

    def runner(cmd, check=True):
        installed.append(cmd)
        return 0, "", ""

    def which(name):
        if name == "apt-get":
            return "/usr/bin/apt-get"
        if name == "qemu-aarch64-static" and installed:
            return str(qemu)
        return None

    emu = EmulationProvisioner(runner=runner, which=which, binfmt_dir=str(binfmt_dir))

    assert emu.ensure_emulator("aarch64") == str(qemu)
    assert installed[0][:2] == ["apt-get", "install"]
    assert installed[0][-1] == "qemu-user-static"


def test_install_failure(binfmt_dir: Path) -> None:
    emu = EmulationProvisioner(runner=lambda cmd, check=True: (100, "", "E: Unable to locate package"),
                               which={"apt-get": "/usr/bin/apt-get"}.get,
                               binfmt_dir=str(binfmt_dir))

    with pytest.raises(DependencyInstallError):
        emu.ensure_emulator("riscv64")


def test_no_package_manager(binfmt_dir: Path) -> None:
    emu = EmulationProvisioner(runner=lambda cmd, check=True: (0, "", ""), which=lambda name: None,
                               binfmt_dir=str(binfmt_dir))

    with pytest.raises(DependencyInstallError):
        emu.ensure_emulator("s390x")


def test_binfmt_registered_by_update_binfmts(binfmt_dir: Path) -> None:
    calls = []

    def runner(cmd, check=True):
        calls.append(cmd)
        if cmd[0] == "update-binfmts":
            register(binfmt_dir, "/usr/bin/qemu-aarch64-static")
        return 0, "", ""

    emu = EmulationProvisioner(runner=runner,
                               which={"apt-get": "/usr/bin/apt-get",
                                      "update-binfmts": "/usr/sbin/update-binfmts"}.get,
                               binfmt_dir=str(binfmt_dir))

    emu.ensure_binfmt("aarch64")

    assert calls[-1] == ["update-binfmts", "--enable", "qemu-aarch64"]
    assert emu.interpreter("aarch64", "") == "/usr/bin/qemu-aarch64-static"


def test_binfmt_still_missing(binfmt_dir: Path) -> None:
    emu = EmulationProvisioner(runner=lambda cmd, check=True: (0, "", ""),
                               which={"dnf": "/usr/bin/dnf"}.get,
                               binfmt_dir=str(binfmt_dir))

    with pytest.raises(DependencyInstallError):
        emu.ensure_binfmt("aarch64")


def test_interpreter_falls_back_without_entry(binfmt_dir: Path) -> None:
    emu = EmulationProvisioner(binfmt_dir=str(binfmt_dir))
    assert emu.interpreter("armv7", "/usr/bin/qemu-arm-static") == "/usr/bin/qemu-arm-static"
