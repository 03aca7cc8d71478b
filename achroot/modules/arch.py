"""
modules/arch.py - architecture names

normalize() folds the names used by uname, Debian and Alpine onto the
Alpine spelling and passes anything unknown through untouched.
"""

import platform

ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "i386": "x86",
    "i486": "x86",
    "i586": "x86",
    "i686": "x86",
    "x86": "x86",
    "aarch64": "aarch64",
    "arm64": "aarch64",
    "armv8": "aarch64",
    "armv7": "armv7",
    "armv7l": "armv7",
    "armv7a": "armv7",
    "armhf": "armhf",
    "armv6": "armhf",
    "armv6l": "armhf",
    "arm": "armhf",
    "ppc64le": "ppc64le",
    "ppc64el": "ppc64le",
    "powerpc64le": "ppc64le",
    "s390x": "s390x",
    "riscv64": "riscv64",
    "loongarch64": "loongarch64",
    "loong64": "loongarch64",
}

# Alpine arch -> qemu-user suffix
QEMU_NAMES = {
    "x86": "i386",
    "armhf": "arm",
    "armv7": "arm",
}

SUPPORTED = ("x86_64", "x86", "aarch64", "armhf", "armv7", "ppc64le", "s390x", "riscv64", "loongarch64")


def normalize(name: str) -> str:
    key = (name or "").strip().lower()
    return ALIASES.get(key, name)


def host_arch() -> str:
    return normalize(platform.machine())


def needs_emulation(host: str, target: str) -> bool:
    return normalize(host) != normalize(target)


def qemu_name(arch: str) -> str:
    arch = normalize(arch)
    return QEMU_NAMES.get(arch, arch)


def is_supported(arch: str) -> bool:
    return normalize(arch) in SUPPORTED
