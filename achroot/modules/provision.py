#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
modules/provision.py - provisioning run

Sequence (each step needs the previous one to have succeeded):
  1. privilege pre-flight
  2. verified fetch of apk.static and of any signing key pinned in the
     settings; the host's own apk keys are trusted as they are
  3. resolve target arch, decide on emulation
  4. qemu-user + binfmt + copy into the root (foreign arch only)
  5. bootstrap the root with apk.static
  6. mount proc, sys, dev and the bind directory
  7. write enter-chroot and destroy
  8. first run through enter-chroot: apk update/add, create the bind
     directory owner's account

A failure aborts the run. Nothing is rolled back: the caller runs
`destroy` (or teardown()) and starts over.
Concurrent runs against the same root are not supported; lock outside.

Usage:
    from achroot.modules.provision import Provisioner
    env = Provisioner().provision(config.resolve())
    env.run(["uname", "-m"])
"""

from __future__ import annotations

import os
import pwd
import shlex
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Mapping, Optional, Sequence

from achroot.modules import arch as arch_mod
from achroot.modules import bootstrap as bootstrap_mod
from achroot.modules import entry as entry_mod
from achroot.modules import fetch as fetch_mod
from achroot.modules import log, utils
from achroot.modules.emulation import EmulationProvisioner
from achroot.modules.errors import BootstrapError, IntegrityError, MountError
from achroot.modules.mounts import MountBinding, MountManager

logger = log.get_logger("provision")


# ---------------------------
# Chroot handle
# ---------------------------
@dataclass
class ChrootEnvironment:
    """Everything is derived from `root`; the handle owns nothing else."""
    root: str
    bind_dir: Optional[str] = None
    arch: Optional[str] = None
    emulator: Optional[str] = None
    bindings: List[MountBinding] = field(default_factory=list)

    def __post_init__(self):
        self.root = os.path.abspath(self.root)

    @property
    def entry_script(self) -> str:
        return os.path.join(self.root, entry_mod.ENTRY_SCRIPT)

    @property
    def destroy_script(self) -> str:
        return os.path.join(self.root, entry_mod.DESTROY_SCRIPT)

    def command(self, command: Sequence[str], user: str = "root") -> List[str]:
        cmd = [self.entry_script]
        if user != "root":
            cmd += ["-u", user]
        return cmd + ["--"] + list(command)

    def run(self, command: Sequence[str], user: str = "root", runner: Callable = utils.run):
        """Runs command inside the root through enter-chroot, returns (rc, out, err)."""
        return runner(self.command(command, user), check=False)

    def destroy(self, remove: bool = False, mounts: Optional[MountManager] = None) -> None:
        teardown(self.root, self.bind_dir, remove=remove, mounts=mounts)


def teardown(root: str, bind_dir: Optional[str], remove: bool = False,
             mounts: Optional[MountManager] = None) -> None:
    """
    Unmounts in reverse order; with remove=True deletes the tree afterwards,
    but only once nothing is mounted below root anymore.
    """
    mounts = mounts or MountManager()
    mounts.unmount_all(root, bind_dir)
    mounts.unmount_below(root)
    if not remove:
        return
    leftover = mounts.mounts_below(root)
    if leftover:
        raise MountError(f"refusing to remove {root}, still mounted: {', '.join(leftover)}")
    if os.path.isdir(root):
        logger.info("Removing %s", root)
        shutil.rmtree(root)


# ---------------------------
# Helpers
# ---------------------------
def _owner_uid(path: str) -> int:
    return os.stat(path).st_uid


def _user_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return f"user{uid}"


def host_keys(dirs: Iterable[str]) -> List[str]:
    """Signing keys already trusted by the host, first directory wins per name."""
    found = {}
    for directory in dirs:
        if not os.path.isdir(directory):
            continue
        for name in sorted(os.listdir(directory)):
            path = os.path.join(directory, name)
            if name.endswith(".rsa.pub") and os.path.isfile(path):
                found.setdefault(name, path)
    return [found[name] for name in sorted(found)]


def trusted_artifacts(settings: Mapping, work_dir: str) -> List[fetch_mod.TrustedArtifact]:
    """apk.static first, then the signing keys pinned by sha256 in the settings."""
    artifacts = [fetch_mod.TrustedArtifact(settings["apk_tools_url"], settings["apk_tools_sha256"],
                                           work_dir, name="apk.static")]
    keys_dir = os.path.join(work_dir, "keys")
    keys_url = settings["keys_url"].rstrip("/")
    for name, sha256 in (settings.get("alpine_keys") or {}).items():
        artifacts.append(fetch_mod.TrustedArtifact(f"{keys_url}/{name}", sha256, keys_dir, name=name))
    return artifacts


# ---------------------------
# Orchestrator
# ---------------------------
class Provisioner:
    def __init__(self,
                 runner: Callable = utils.run,
                 fetcher: Callable = fetch_mod.fetch_all,
                 emulation: Optional[EmulationProvisioner] = None,
                 mounts: Optional[MountManager] = None,
                 host_arch: Callable[[], str] = arch_mod.host_arch,
                 owner_uid: Callable[[str], int] = _owner_uid,
                 user_name: Callable[[int], str] = _user_name,
                 euid: Optional[int] = None,
                 resolv_conf: str = "/etc/resolv.conf"):
        self.runner = runner
        self.fetcher = fetcher
        self.emulation = emulation or EmulationProvisioner(runner=runner)
        self.mounts = mounts or MountManager(runner=runner)
        self.host_arch = host_arch
        self.owner_uid = owner_uid
        self.user_name = user_name
        self.euid = euid
        self.resolv_conf = resolv_conf

    def provision(self, settings: Mapping) -> ChrootEnvironment:
        utils.require_root(self.euid)

        local_keys = host_keys(settings.get("host_keys_dirs") or [])
        if not local_keys and not settings.get("alpine_keys"):
            raise IntegrityError(
                "no trusted Alpine signing keys: install them on the host (alpine-keys) "
                "or pin name: sha256 pairs under alpine_keys in the config")

        root = settings["chroot_dir"]
        bind_dir = settings["bind_dir"]
        work_dir = tempfile.mkdtemp(prefix="achroot.", dir=settings.get("temp_dir"))
        try:
            artifacts = trusted_artifacts(settings, work_dir)
            timeout = (settings["connect_timeout"], settings["read_timeout"])
            paths = self.fetcher(artifacts, timeout=timeout)
            apk_static, key_paths = paths[0], paths[1:]
            pinned = {os.path.basename(p) for p in key_paths}
            key_paths += [p for p in local_keys if os.path.basename(p) not in pinned]

            host = self.host_arch()
            target = arch_mod.normalize(settings.get("arch") or host)
            if not arch_mod.is_supported(target):
                logger.warning("Architecture %s is not known to be supported by Alpine", target)
            emulate = arch_mod.needs_emulation(host, target)
            env = ChrootEnvironment(root, bind_dir=bind_dir, arch=target)

            utils.ensure_dir(root)
            if emulate:
                logger.info("Target %s differs from host %s, setting up emulation", target, host)
                env.emulator = self.emulation.ensure(target, root)

            bootstrap_mod.bootstrap(root, settings["mirror"], settings["branch"], settings["extra_repos"],
                                    apk_static, key_paths, arch=target if emulate else None,
                                    runner=self.runner, resolv_conf=self.resolv_conf)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        env.bindings = self.mounts.mount_all(root, bind_dir)
        entry_mod.write_entry_script(root, settings["keep_vars"])
        entry_mod.write_destroy_script(root, env.bindings)

        self.install_packages(env, settings["packages"])
        self.create_user(env)
        logger.info("Alpine chroot ready at %s, enter it with %s", root, env.entry_script)
        return env

    # ---------------------------
    # First run
    # ---------------------------
    def install_packages(self, env: ChrootEnvironment, packages: Sequence[str]) -> None:
        script = "apk update"
        if packages:
            script += " && apk add " + " ".join(shlex.quote(p) for p in packages)
        logger.info("Installing packages: %s", " ".join(packages) or "(none)")
        rc, _, err = env.run(["sh", "-c", script], runner=self.runner)
        if rc != 0:
            raise BootstrapError(f"installing packages failed (exit code {rc}): {err.strip()}")

    def create_user(self, env: ChrootEnvironment) -> Optional[str]:
        """Mirrors the bind directory owner inside the root; skipped for uid 0."""
        if not env.bind_dir:
            return None
        uid = self.owner_uid(env.bind_dir)
        if uid == 0:
            logger.debug("%s is owned by root, no user to create", env.bind_dir)
            return None

        name = self.user_name(uid)
        rc, _, _ = env.run(["id", "-u", name], runner=self.runner)
        if rc == 0:
            logger.info("User %s already exists in the chroot", name)
            return name

        logger.info("Creating user %s (uid %d)", name, uid)
        rc, _, err = env.run(["adduser", "-u", str(uid), "-G", "users", "-s", "/bin/sh", "-D", name],
                             runner=self.runner)
        if rc != 0:
            raise BootstrapError(f"could not create user {name}: {err.strip()}")
        return name
