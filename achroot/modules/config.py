"""
config.py - achroot configuration

- $ACHROOT_CONFIG > ~/.config/achroot/config.yml > /etc/achroot/config.yml > defaults
- environment variables override the file, command line flags override both
- list values may be given as YAML lists or whitespace separated strings
"""

import os
from typing import Mapping, Optional

import yaml

USER_CONFIG = os.path.expanduser("~/.config/achroot/config.yml")
SYSTEM_CONFIG = "/etc/achroot/config.yml"

APK_TOOLS_URI = "https://gitlab.alpinelinux.org/api/v4/projects/5/packages/generic/v2.14.0/x86_64/apk.static"
APK_TOOLS_SHA256 = "1c65115a425d049590bec7c729c7fd88357fbb090a6fc8c31d834d7b0bc7d6f2"

# Host directories whose *.rsa.pub files are trusted as Alpine signing keys.
HOST_KEYS_DIRS = ["/etc/apk/keys", "/usr/share/apk/keys"]

DEFAULTS = {
    # Target
    "arch": None,  # None -> host architecture
    "branch": "latest-stable",
    "mirror": "http://dl-cdn.alpinelinux.org/alpine",
    "packages": ["build-base", "ca-certificates", "ssl_client"],
    "extra_repos": [],

    # Paths
    "chroot_dir": "/alpine",
    "bind_dir": None,  # None -> current directory
    "temp_dir": None,  # None -> system temp dir
    "log_dir": None,   # None -> console only

    # Entry script
    "keep_vars": ["ARCH", "CI", "QEMU_EMULATOR", "TRAVIS_.*"],

    # Trusted artifacts
    "apk_tools_url": APK_TOOLS_URI,
    "apk_tools_sha256": APK_TOOLS_SHA256,
    "keys_url": "https://alpinelinux.org/keys",
    "alpine_keys": {},  # key file name -> pinned sha256, fetched from keys_url
    "host_keys_dirs": list(HOST_KEYS_DIRS),

    # Network
    "connect_timeout": 10,
    "read_timeout": 60,
}

# key -> environment variable
ENV_VARS = {
    "arch": "ARCH",
    "branch": "ALPINE_BRANCH",
    "mirror": "ALPINE_MIRROR",
    "packages": "ALPINE_PACKAGES",
    "extra_repos": "EXTRA_REPOS",
    "chroot_dir": "CHROOT_DIR",
    "bind_dir": "BIND_DIR",
    "temp_dir": "TEMP_DIR",
    "keep_vars": "CHROOT_KEEP_VARS",
    "apk_tools_url": "APK_TOOLS_URI",
    "apk_tools_sha256": "APK_TOOLS_SHA256",
    "host_keys_dirs": "ALPINE_KEYS_DIRS",
}

LIST_KEYS = ("packages", "extra_repos", "keep_vars", "host_keys_dirs")


def _load_from(path: str) -> dict:
    """Loads a YAML config file, {} when it is missing or not a mapping."""
    if not os.path.isfile(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        return {}
    return data


def config_path(environ: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """Returns the first config file found following env > user > system."""
    environ = os.environ if environ is None else environ
    env_path = environ.get("ACHROOT_CONFIG")
    if env_path and os.path.exists(env_path):
        return env_path
    if os.path.exists(USER_CONFIG):
        return USER_CONFIG
    if os.path.exists(SYSTEM_CONFIG):
        return SYSTEM_CONFIG
    return None


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> dict:
    """Loads defaults merged with the config file (no env/flag overrides)."""
    path = path or config_path(environ)
    data = _load_from(path) if path else {}
    return {**DEFAULTS, **{k: _coerce(k, v) for k, v in data.items()}}


def _coerce(key: str, value):
    if key in LIST_KEYS and isinstance(value, str):
        return value.split()
    if key in LIST_KEYS and isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return value


def normalize_branch(branch: str) -> str:
    """'3.19' -> 'v3.19'; named branches (edge, latest-stable) are kept."""
    if branch and branch[0].isdigit():
        return "v" + branch
    return branch


def resolve(overrides: Optional[Mapping] = None,
            environ: Optional[Mapping[str, str]] = None,
            base: Optional[Mapping] = None) -> dict:
    """
    Computes effective settings: flags (overrides) > environment > file > defaults.
    `None` values in overrides mean "not given on the command line".
    """
    environ = os.environ if environ is None else environ
    settings = dict(base if base is not None else load_config(environ=environ))

    for key, var in ENV_VARS.items():
        value = environ.get(var)
        if value:
            settings[key] = _coerce(key, value)

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key in LIST_KEYS and not value:
            continue
        settings[key] = _coerce(key, value)

    settings["branch"] = normalize_branch(settings["branch"])
    if not settings.get("bind_dir"):
        settings["bind_dir"] = os.getcwd()
    settings["bind_dir"] = os.path.abspath(settings["bind_dir"])
    settings["chroot_dir"] = os.path.abspath(settings["chroot_dir"])
    return settings
