"""
modules/mounts.py - bind mounts that make a chroot usable

Mount order is fixed: proc, then /sys and /dev recursively bound, then the
host bind directory last. Unmounting walks the same list backwards. Both
directions skip what is already in the wanted state, so they can be re-run
against a partially mounted root.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Set

from achroot.modules import log, utils
from achroot.modules.errors import MountError

logger = log.get_logger("mounts")

MOUNTINFO = "/proc/self/mountinfo"

PSEUDO = "proc"
RBIND = "rbind"
BIND = "bind"

_OCTAL = re.compile(r"\\([0-7]{3})")


@dataclass(frozen=True)
class MountBinding:
    source: str
    target: str
    kind: str

    def mount_commands(self) -> List[List[str]]:
        if self.kind == PSEUDO:
            return [["mount", "-t", "proc", "none", self.target]]
        if self.kind == RBIND:
            return [["mount", "--rbind", self.source, self.target],
                    ["mount", "--make-rprivate", self.target]]
        return [["mount", "--bind", self.source, self.target],
                ["mount", "--make-private", self.target]]

    def unmount_command(self) -> List[str]:
        if self.kind == RBIND:
            return ["umount", "--recursive", self.target]
        return ["umount", self.target]


def _decode(path: str) -> str:
    return _OCTAL.sub(lambda m: chr(int(m.group(1), 8)), path)


def mounted_paths(mountinfo: str = MOUNTINFO) -> Set[str]:
    """Mount points listed in mountinfo (field 5), escapes decoded."""
    paths = set()
    with open(mountinfo, "r", encoding="utf-8") as f:
        for line in f:
            fields = line.split()
            if len(fields) >= 5:
                paths.add(_decode(fields[4]))
    return paths


def plan(root: str, bind_dir: Optional[str]) -> List[MountBinding]:
    """The bindings for root, in mount order."""
    root = os.path.abspath(root)
    bindings = [
        MountBinding("none", os.path.join(root, "proc"), PSEUDO),
        MountBinding("/sys", os.path.join(root, "sys"), RBIND),
        MountBinding("/dev", os.path.join(root, "dev"), RBIND),
    ]
    if bind_dir:
        bind_dir = os.path.abspath(bind_dir)
        if bind_dir == "/" or bind_dir == root or bind_dir.startswith(root + os.sep):
            raise MountError(f"cannot bind {bind_dir} into {root}")
        bindings.append(MountBinding(bind_dir, utils.in_root(root, bind_dir), BIND))
    return bindings


class MountManager:
    def __init__(self, runner: Callable = utils.run, mountinfo: str = MOUNTINFO):
        self.runner = runner
        self.mountinfo = mountinfo

    def is_mounted(self, path: str) -> bool:
        paths = mounted_paths(self.mountinfo)
        return path in paths or os.path.realpath(path) in paths

    def _run(self, cmd: List[str]) -> None:
        rc, _, err = self.runner(cmd, check=False)
        if rc != 0:
            raise MountError(f"{' '.join(cmd)} failed (exit code {rc}): {err.strip()}")

    def mount(self, binding: MountBinding) -> bool:
        if self.is_mounted(binding.target):
            logger.debug("%s already mounted, skipping", binding.target)
            return False
        utils.ensure_dir(binding.target)
        logger.info("Mounting %s on %s (%s)", binding.source, binding.target, binding.kind)
        for cmd in binding.mount_commands():
            self._run(cmd)
        return True

    def unmount(self, binding: MountBinding) -> bool:
        if not self.is_mounted(binding.target):
            logger.debug("%s not mounted, skipping", binding.target)
            return False
        logger.info("Unmounting %s", binding.target)
        self._run(binding.unmount_command())
        return True

    def mount_all(self, root: str, bind_dir: Optional[str]) -> List[MountBinding]:
        bindings = plan(root, bind_dir)
        for binding in bindings:
            self.mount(binding)
        return bindings

    def unmount_all(self, root: str, bind_dir: Optional[str]) -> List[MountBinding]:
        bindings = list(reversed(plan(root, bind_dir)))
        for binding in bindings:
            self.unmount(binding)
        return bindings

    def mounts_below(self, root: str) -> List[str]:
        """Every mount point at or below root."""
        root = os.path.realpath(root)
        return sorted(p for p in mounted_paths(self.mountinfo)
                      if p == root or p.startswith(root + os.sep))

    def unmount_below(self, root: str) -> List[str]:
        """Unmounts whatever is still mounted below root, deepest first."""
        leftover = sorted(self.mounts_below(root), key=len, reverse=True)
        for path in leftover:
            if path == os.path.realpath(root) or not self.is_mounted(path):
                continue
            logger.info("Unmounting leftover %s", path)
            self._run(["umount", "--recursive", path])
        return leftover
