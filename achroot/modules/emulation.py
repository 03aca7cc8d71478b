"""
modules/emulation.py - qemu-user emulation for foreign architecture roots

ensure() makes sure that
  1. a static qemu-user binary for the target exists on the host,
  2. the kernel binfmt_misc registry has an entry routing the target's
     executables to it,
  3. the binary is present inside the root at the path the registry entry
     names, so it still resolves after chroot.
Each step is skipped when already satisfied.
"""

from __future__ import annotations

import os
import shutil
from typing import Callable, List, Optional

from achroot.modules import arch as arch_mod
from achroot.modules import log, utils
from achroot.modules.errors import DependencyInstallError

logger = log.get_logger("emulation")

BINFMT_DIR = "/proc/sys/fs/binfmt_misc"

# host package manager -> (install emulator, install binfmt support)
INSTALL_COMMANDS = {
    "apt-get": (
        ["apt-get", "install", "-y", "--no-install-recommends", "qemu-user-static"],
        ["apt-get", "install", "-y", "--no-install-recommends", "binfmt-support"],
    ),
    "dnf": (
        ["dnf", "install", "-y", "qemu-user-static"],
        ["dnf", "install", "-y", "qemu-user-binfmt"],
    ),
}


def emulator_names(target: str) -> List[str]:
    q = arch_mod.qemu_name(target)
    return [f"qemu-{q}-static", f"qemu-{q}"]


class EmulationProvisioner:
    def __init__(self, runner: Callable = utils.run, which: Callable = shutil.which,
                 binfmt_dir: str = BINFMT_DIR):
        self.runner = runner
        self.which = which
        self.binfmt_dir = binfmt_dir

    # ---------------------------
    # Host side
    # ---------------------------
    def find_emulator(self, target: str) -> Optional[str]:
        for name in emulator_names(target):
            path = self.which(name)
            if path:
                return path
        return None

    def package_manager(self) -> str:
        for name in INSTALL_COMMANDS:
            if self.which(name):
                return name
        raise DependencyInstallError(
            "no supported host package manager (apt-get, dnf) to install qemu-user-static")

    def _install(self, cmd: List[str], what: str) -> None:
        logger.info("Installing %s on the host", what)
        rc, _, err = self.runner(cmd, check=False)
        if rc != 0:
            raise DependencyInstallError(f"failed to install {what}: {err.strip() or f'exit code {rc}'}")

    def ensure_emulator(self, target: str) -> str:
        path = self.find_emulator(target)
        if path:
            logger.debug("Found emulator %s", path)
            return path

        self._install(INSTALL_COMMANDS[self.package_manager()][0], "qemu-user-static")
        path = self.find_emulator(target)
        if not path:
            raise DependencyInstallError(
                f"qemu-user-static installed but none of {', '.join(emulator_names(target))} was found")
        return path

    def binfmt_entry(self, target: str) -> str:
        return os.path.join(self.binfmt_dir, f"qemu-{arch_mod.qemu_name(target)}")

    def is_registered(self, target: str) -> bool:
        return os.path.exists(self.binfmt_entry(target))

    def ensure_binfmt(self, target: str) -> None:
        if self.is_registered(target):
            logger.debug("binfmt entry %s present", self.binfmt_entry(target))
            return

        manager = self.package_manager()
        self._install(INSTALL_COMMANDS[manager][1], "binfmt support")
        name = f"qemu-{arch_mod.qemu_name(target)}"
        if self.which("update-binfmts"):
            self._install(["update-binfmts", "--enable", name], f"binfmt entry {name}")
        elif self.which("systemctl"):
            self._install(["systemctl", "restart", "systemd-binfmt"], f"binfmt entry {name}")

        if not self.is_registered(target):
            raise DependencyInstallError(f"binfmt_misc has no entry for {name} after installing support")

    def interpreter(self, target: str, default: str) -> str:
        """Returns the interpreter path recorded in the binfmt entry."""
        try:
            with open(self.binfmt_entry(target), "r", encoding="utf-8") as f:
                for line in f:
                    if line.startswith("interpreter "):
                        return line.split(None, 1)[1].strip()
        except OSError:
            pass
        return default

    # ---------------------------
    # Root side
    # ---------------------------
    def install_into(self, root: str, host_path: str, target: str) -> str:
        inside = self.interpreter(target, host_path)
        dest = utils.in_root(root, inside)
        logger.info("Copying %s into %s", host_path, dest)
        utils.copy_file(host_path, dest, mode=0o755)
        return dest

    def ensure(self, target: str, root: str) -> str:
        """Runs all three steps, returns the emulator path inside root."""
        host_path = self.ensure_emulator(target)
        self.ensure_binfmt(target)
        return self.install_into(root, host_path, target)
