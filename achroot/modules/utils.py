import hmac
import os
import shutil
import subprocess
from typing import List, Optional

from achroot.modules import log
from achroot.modules.errors import PrivilegeError


# -------------------------
# Filesystem
# -------------------------
def ensure_dir(path: str, mode: int = 0o755):
    """Creates the directory (and parents) if missing"""
    os.makedirs(path, mode=mode, exist_ok=True)


def copy_file(src: str, dst: str, mode: Optional[int] = None):
    """Copies a file keeping metadata, optionally forcing its mode"""
    ensure_dir(os.path.dirname(dst))
    shutil.copy2(src, dst)
    if mode is not None:
        os.chmod(dst, mode)


def write_text(path: str, text: str, mode: int = 0o644):
    ensure_dir(os.path.dirname(path))
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
    os.chmod(path, mode)


def in_root(root: str, path: str) -> str:
    """Maps an absolute path to its location below root (root + path)"""
    return os.path.join(root, path.lstrip("/"))


# -------------------------
# Commands
# -------------------------
def run(cmd: List[str], cwd: str | None = None, env: dict | None = None, check=True):
    """Runs a command through log.run_cmd"""
    rc, out, err = log.run_cmd(cmd, cwd=cwd, env=env)
    if check and rc != 0:
        raise subprocess.CalledProcessError(rc, cmd, out, err)
    return rc, out, err


# -------------------------
# Digests
# -------------------------
def digest_matches(actual: str, expected: str) -> bool:
    """Exact, case-insensitive comparison of two hex digests"""
    return hmac.compare_digest(actual.lower(), expected.strip().lower())


# -------------------------
# Privileges
# -------------------------
def require_root(euid: Optional[int] = None):
    """Pre-flight check: provisioning needs uid 0"""
    euid = os.geteuid() if euid is None else euid
    if euid != 0:
        raise PrivilegeError("this must be run as root (mount and chroot need it)")


def elevation_prefix(euid: Optional[int] = None, which=shutil.which) -> List[str]:
    """
    Returns the command prefix needed to act as root: [] when already root,
    ["sudo"] when sudo is available, PrivilegeError otherwise.
    """
    euid = os.geteuid() if euid is None else euid
    if euid == 0:
        return []
    sudo = which("sudo")
    if not sudo:
        raise PrivilegeError("not running as root and sudo is not available")
    return [sudo]
