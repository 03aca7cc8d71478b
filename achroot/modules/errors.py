"""
modules/errors.py - error taxonomy of achroot.

Every fatal condition is one of these; the CLI maps them to exit codes.
"""


class AchrootError(Exception):
    exit_code = 1


class PrivilegeError(AchrootError):
    """Not running with the rights needed for mount/chroot."""
    exit_code = 2


class TransportError(AchrootError):
    """A network fetch failed."""
    exit_code = 3


class IntegrityError(AchrootError):
    """A fetched artifact does not match its pinned digest."""
    exit_code = 4


class DependencyInstallError(AchrootError):
    """Installing the emulator or its binfmt support on the host failed."""
    exit_code = 5


class BootstrapError(AchrootError):
    exit_code = 6


class MountError(AchrootError):
    exit_code = 7
