#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
cli.py - achroot command line

    achroot install [-a ARCH] [-b BRANCH] [-d DIR] [-i BIND_DIR] [-k VARS]
                    [-m MIRROR] [-p PKG] [-r REPO] [-t TEMP_DIR]
    achroot enter   [-d DIR] [-u USER] [-k VARS] [-- COMMAND...]
    achroot destroy [-d DIR] [-i BIND_DIR] [--remove]

Every option also has an environment variable (see modules/config.py); the
option wins when both are given.
"""

from __future__ import annotations

import argparse
import os
import sys
from typing import List, Optional

from achroot import VERSION
from achroot.modules import config as config_mod
from achroot.modules import entry as entry_mod
from achroot.modules import log as log_mod
from achroot.modules.errors import AchrootError
from achroot.modules.provision import Provisioner, teardown

logger = log_mod.get_logger("cli")

# ANSI colours
C = {
    "reset": "\033[0m",
    "red": "\033[31m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "cyan": "\033[36m",
}


def color(text: str, col: str) -> str:
    if not sys.stderr.isatty():
        return text
    return f"{C.get(col, '')}{text}{C['reset']}"


def _split(values: Optional[List[str]]) -> Optional[List[str]]:
    """Flattens repeated, possibly whitespace separated, list options."""
    if values is None:
        return None
    return [item for value in values for item in value.split()]


def _setup_logging(args) -> None:
    log_mod.set_level("debug" if getattr(args, "verbose", False) else "info")
    log_dir = getattr(args, "log_dir", None) or config_mod.load_config().get("log_dir")
    if log_dir:
        log_mod.enable_file_log(log_dir)


def _settings(args) -> dict:
    overrides = {
        "arch": getattr(args, "arch", None),
        "branch": getattr(args, "branch", None),
        "chroot_dir": getattr(args, "chroot_dir", None),
        "bind_dir": getattr(args, "bind_dir", None),
        "keep_vars": _split(getattr(args, "keep_vars", None)),
        "mirror": getattr(args, "mirror", None),
        "packages": _split(getattr(args, "packages", None)),
        "extra_repos": _split(getattr(args, "repositories", None)),
        "temp_dir": getattr(args, "temp_dir", None),
    }
    return config_mod.resolve(overrides)


# ---------------------------
# Command handlers
# ---------------------------
def cmd_install(args) -> int:
    settings = _settings(args)
    logger.debug("Settings: %s", settings)
    env = Provisioner().provision(settings)
    print(color(f"[OK] Alpine chroot ready at {env.root}", "green"))
    print(f"Enter it with: {env.entry_script}")
    print(f"Tear it down with: {env.destroy_script} [--remove]")
    return 0


def cmd_enter(args) -> int:
    settings = _settings(args)
    command = list(args.command or [])
    if command and command[0] == "--":
        command = command[1:]
    return entry_mod.enter(settings["chroot_dir"], settings["keep_vars"],
                           user=args.user, command=command or None)


def cmd_destroy(args) -> int:
    settings = _settings(args)
    # only an explicitly given bind dir; leftovers are found from the mount table
    bind_dir = args.bind_dir or os.environ.get(config_mod.ENV_VARS["bind_dir"])
    teardown(settings["chroot_dir"], bind_dir, remove=args.remove)
    print(color(f"[OK] {settings['chroot_dir']} " + ("removed" if args.remove else "unmounted"), "green"))
    return 0


# ---------------------------
# Argument parser
# ---------------------------
def _add_chroot_dir(p):
    p.add_argument("-d", "--chroot-dir", default=None,
                   help="Root directory of the chroot (env CHROOT_DIR, default /alpine)")


def _add_bind_dir(p):
    p.add_argument("-i", "--bind-dir", default=None,
                   help="Host directory bound at the same path inside the chroot "
                        "(env BIND_DIR, default current directory)")


def _add_keep_vars(p):
    p.add_argument("-k", "--keep-vars", action="append", default=None, metavar="PATTERN",
                   help="Extended regex of environment variable names passed into the chroot; "
                        "repeatable (env CHROOT_KEEP_VARS, default 'ARCH CI QEMU_EMULATOR TRAVIS_.*')")


def build_parser():
    p = argparse.ArgumentParser(prog="achroot",
                                description="Set up and enter an Alpine Linux chroot, optionally for a foreign architecture")
    p.add_argument("--version", action="version", version=f"achroot {VERSION}")
    p.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    p.add_argument("--log-dir", default=None, help="Also write a rotating debug log into this directory")
    sub = p.add_subparsers(dest="command_name")

    # install
    si = sub.add_parser("install", help="Provision a new chroot")
    si.add_argument("-a", "--arch", default=None,
                    help="CPU architecture of the chroot (env ARCH, default host architecture)")
    si.add_argument("-b", "--branch", default=None,
                    help="Alpine branch to install (env ALPINE_BRANCH, default latest-stable)")
    _add_chroot_dir(si)
    _add_bind_dir(si)
    _add_keep_vars(si)
    si.add_argument("-m", "--mirror", default=None,
                    help="Alpine mirror URI (env ALPINE_MIRROR, default http://dl-cdn.alpinelinux.org/alpine)")
    si.add_argument("-p", "--package", dest="packages", action="append", default=None, metavar="PKG",
                    help="Package to install; repeatable "
                         "(env ALPINE_PACKAGES, default 'build-base ca-certificates ssl_client')")
    si.add_argument("-r", "--repository", dest="repositories", action="append", default=None, metavar="REPO",
                    help="Extra repository URI added after main and community; repeatable (env EXTRA_REPOS)")
    si.add_argument("-t", "--temp-dir", default=None,
                    help="Directory for temporary downloads (env TEMP_DIR)")
    si.set_defaults(func=cmd_install)

    # enter
    se = sub.add_parser("enter", help="Run a command (default: a shell) inside the chroot")
    _add_chroot_dir(se)
    _add_keep_vars(se)
    se.add_argument("-u", "--user", default="root", help="User to log in as (default root)")
    se.add_argument("command", nargs=argparse.REMAINDER, help="Command and arguments")
    se.set_defaults(func=cmd_enter)

    # destroy
    sd = sub.add_parser("destroy", help="Unmount the chroot and optionally remove it")
    _add_chroot_dir(sd)
    _add_bind_dir(sd)
    sd.add_argument("--remove", action="store_true", help="Delete the chroot directory after unmounting")
    sd.set_defaults(func=cmd_destroy)

    return p


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    _setup_logging(args)

    try:
        return args.func(args)
    except AchrootError as e:
        logger.debug("%s", type(e).__name__, exc_info=True)
        print(color(log_mod.namespaced(str(e)), "red"), file=sys.stderr)
        return e.exit_code
    except Exception as e:
        logger.exception("Unexpected error")
        print(color(log_mod.namespaced(str(e)), "red"), file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
