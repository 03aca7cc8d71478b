"""
modules/bootstrap.py - turns an empty directory into a minimal Alpine root

Uses the verified apk.static from the host (no chroot yet):
- etc/apk/repositories: <mirror>/<branch>/main, <mirror>/<branch>/community,
  then the extra repositories verbatim and in the given order
- etc/resolv.conf copied from the host so the network works right away
- etc/apk/keys populated with the trusted signing keys
- apk --initdb add alpine-base
There is no partial-root recovery: a failure leaves the directory as is.
"""

from __future__ import annotations

import os
import shutil
from typing import Callable, Iterable, List, Optional

from achroot.modules import log, utils
from achroot.modules.errors import BootstrapError

logger = log.get_logger("bootstrap")

BASE_PACKAGES = ["alpine-base"]
REPOSITORIES_FILE = "etc/apk/repositories"
RESOLV_CONF = "etc/resolv.conf"
KEYS_DIR = "etc/apk/keys"


def repositories(mirror: str, branch: str, extra: Iterable[str] = ()) -> List[str]:
    mirror = mirror.rstrip("/")
    repos = [f"{mirror}/{branch}/main", f"{mirror}/{branch}/community"]
    repos.extend(extra)
    return repos


def write_repositories(root: str, repos: List[str]) -> str:
    path = os.path.join(root, REPOSITORIES_FILE)
    logger.info("Writing %s", path)
    utils.write_text(path, "".join(f"{r}\n" for r in repos))
    return path


def copy_resolv_conf(root: str, source: str = "/etc/resolv.conf") -> str:
    dest = os.path.join(root, RESOLV_CONF)
    utils.ensure_dir(os.path.dirname(dest))
    # resolv.conf is often a symlink into /run; copy the content
    if os.path.lexists(dest):
        os.remove(dest)
    shutil.copyfile(source, dest)
    os.chmod(dest, 0o644)
    return dest


def install_keys(root: str, key_paths: Iterable[str]) -> str:
    keys_dir = os.path.join(root, KEYS_DIR)
    utils.ensure_dir(keys_dir)
    for key in key_paths:
        utils.copy_file(key, os.path.join(keys_dir, os.path.basename(key)), mode=0o644)
    return keys_dir


def apk_command(apk_static: str, root: str, keys_dir: str,
                packages: Iterable[str] = BASE_PACKAGES, arch: Optional[str] = None) -> List[str]:
    cmd = [apk_static, "--root", root, "--keys-dir", keys_dir,
           "--update-cache", "--initdb", "--no-progress"]
    if arch:
        cmd += ["--arch", arch]
    cmd.append("add")
    cmd.extend(packages)
    return cmd


def bootstrap(root: str, mirror: str, branch: str, extra_repos: Iterable[str],
              apk_static: str, key_paths: Iterable[str], arch: Optional[str] = None,
              runner: Callable = utils.run, resolv_conf: str = "/etc/resolv.conf") -> None:
    """
    Initialises root with the base package set. `arch` is passed to apk only
    when emulation is in effect.
    """
    utils.ensure_dir(root)
    write_repositories(root, repositories(mirror, branch, extra_repos))
    copy_resolv_conf(root, resolv_conf)
    keys_dir = install_keys(root, key_paths)

    os.chmod(apk_static, 0o755)
    cmd = apk_command(apk_static, root, keys_dir, arch=arch)
    logger.info("Installing %s into %s", " ".join(BASE_PACKAGES), root)
    rc, _, err = runner(cmd, check=False)
    if rc != 0:
        raise BootstrapError(f"apk failed to initialise {root} (exit code {rc}): {err.strip()}")
