"""
modules/entry.py - entering a provisioned root

Two renditions of the same ordered pipeline:

  parse args -> capture cwd -> request elevation -> snapshot + filter the
  environment -> store the snapshot in the root -> cd into the root ->
  chroot with a clean environment and log in -> restore cwd -> exec command

- generate() writes it as a POSIX shell script (`enter-chroot`) stored at the
  top of the root. Only the variable-name filter is fixed at generation time;
  values are read from the caller's environment on every invocation.
- enter() runs it from python, one function per step.

The snapshot is read with awk from the exported environment, so only names
are matched against the filter. The script's own variables all start with
`_achroot_`; that prefix is reserved.

The snapshot is stored root-only (0600) at the top of the root, then moved by
the chroot stage into a private temp file owned by the entering user, which
the login shell deletes after sourcing it. Concurrent invocations are as safe
as sudo and chroot are; two entries racing with different environments may
pick up each other's snapshot.
"""

from __future__ import annotations

import os
import re
import shlex
import shutil
import tempfile
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from achroot import VERSION
from achroot.modules import log, utils
from achroot.modules.mounts import RBIND, MountBinding

logger = log.get_logger("entry")

ENTRY_SCRIPT = "enter-chroot"
DESTROY_SCRIPT = "destroy"
ENV_SNAPSHOT = "env.sh"
SNAPSHOT_MODE = "600"

# Run by the login shell inside the root: $1 is the snapshot to source, $2
# the caller's cwd, the rest is the command.
LOGIN_SCRIPT = (
    '. /etc/profile; '
    '. "$1"; [ "$1" = /dev/null ] || rm -f "$1"; shift; '
    'cd "$1" 2>/dev/null || true; '
    'shift; exec "$@"'
)

# Run as root right after chroot: $1 is the user, the rest goes to LOGIN_SCRIPT.
STAGE_SCRIPT = (
    '_u="$1"; shift; _f=/dev/null; '
    f'if [ -f /{ENV_SNAPSHOT} ]; then '
    '_f="$(mktemp /tmp/achroot-env.XXXXXX)" && '
    f'cat /{ENV_SNAPSHOT} > "$_f" && chown "$_u" "$_f" || _f=/dev/null; '
    f'rm -f /{ENV_SNAPSHOT}; '
    'fi; '
    f'exec su -l "$_u" -c {shlex.quote(LOGIN_SCRIPT)} sh "$_f" "$@"'
)

# Prints `export NAME='value'` for every exported variable whose name fully
# matches ARGV[1]; values never take part in the match.
SNAPSHOT_AWK = r'''BEGIN {
	q = "\047"
	for (name in ENVIRON) {
		if (name !~ /^[A-Za-z_][A-Za-z0-9_]*$/ || name !~ ("^" ARGV[1] "$"))
			continue
		value = ENVIRON[name]
		quoted = ""
		while ((i = index(value, q)) > 0) {
			quoted = quoted substr(value, 1, i - 1) q "\\" q q
			value = substr(value, i + 1)
		}
		printf "export %s=%s%s%s\n", name, q, (quoted value), q
	}
	exit
}'''

DEFAULT_COMMAND = ["sh"]


# ---------------------------
# Environment filter
# ---------------------------
def env_filter_regex(patterns: Iterable[str]) -> str:
    """Joins the name patterns into one ERE alternation."""
    return "(" + "|".join(patterns) + ")"


def compile_env_filter(patterns: Iterable[str]) -> re.Pattern:
    return re.compile(env_filter_regex(patterns))


def snapshot_environment(environ: Mapping[str, str], patterns: Iterable[str]) -> Dict[str, str]:
    """The name/value pairs whose name fully matches one of the patterns."""
    regex = compile_env_filter(patterns)
    return {name: value for name, value in environ.items() if regex.fullmatch(name)}


def render_snapshot(snapshot: Mapping[str, str]) -> str:
    return "".join(f"export {name}={shlex.quote(value)}\n" for name, value in sorted(snapshot.items()))


def snapshot_command(regex: str) -> str:
    """Shell command writing the filtered snapshot of its environment to stdout."""
    return f"awk {shlex.quote(SNAPSHOT_AWK)} {shlex.quote(regex)}"


# ---------------------------
# Generated script
# ---------------------------
def _step_parse_arguments(_: str) -> str:
    return r'''
_achroot_user='root'
if [ $# -ge 2 ] && [ "$1" = '-u' ]; then
	_achroot_user="$2"
	shift 2
fi
[ "${1:-}" != '--' ] || shift
[ $# -gt 0 ] || set -- sh
_achroot_root="$(cd "$(dirname "$0")" && pwd)"
'''


def _step_capture_cwd(_: str) -> str:
    return r'''
_achroot_oldpwd="$(pwd)"
'''


def _step_request_elevation(_: str) -> str:
    return r'''
_achroot_sudo=''
if [ "$(id -u)" -ne 0 ]; then
	if ! command -v sudo >/dev/null 2>&1; then
		echo 'enter-chroot: must be run as root or with sudo available' >&2
		exit 1
	fi
	_achroot_sudo='sudo'
fi
'''


def _step_snapshot_environment(regex: str) -> str:
    return f'''
_achroot_tmpfile="$(mktemp)"
trap 'rm -f "$_achroot_tmpfile"' EXIT
{snapshot_command(regex)} > "$_achroot_tmpfile"
'''


def _step_store_snapshot(_: str) -> str:
    return f'''
$_achroot_sudo install -m {SNAPSHOT_MODE} "$_achroot_tmpfile" "$_achroot_root/{ENV_SNAPSHOT}"
'''


def _step_enter_root(_: str) -> str:
    return r'''
cd "$_achroot_root"
'''


def _step_login(_: str) -> str:
    return f'''
rm -f "$_achroot_tmpfile"
trap - EXIT
exec $_achroot_sudo chroot . /usr/bin/env -i /bin/sh \\
	-c {shlex.quote(STAGE_SCRIPT)} \\
	sh "$_achroot_user" "$_achroot_oldpwd" "$@"
'''


ENTRY_STEPS = (
    ("parse_arguments", _step_parse_arguments),
    ("capture_cwd", _step_capture_cwd),
    ("request_elevation", _step_request_elevation),
    ("snapshot_environment", _step_snapshot_environment),
    ("store_snapshot", _step_store_snapshot),
    ("enter_root", _step_enter_root),
    ("login", _step_login),
)


def generate(patterns: Iterable[str]) -> str:
    """Returns the enter-chroot script with the name filter baked in."""
    regex = env_filter_regex(patterns)
    header = f'''#!/bin/sh
# Generated by achroot {VERSION}.
# Usage: enter-chroot [-u USER] [--] [COMMAND [ARGS...]]
set -e
'''
    return header + "".join(step(regex) for _, step in ENTRY_STEPS)


def generate_destroy(root: str, bindings: Sequence[MountBinding]) -> str:
    """Returns the destroy script: unmount in reverse order, --remove deletes the root."""
    root = os.path.abspath(root)
    lines = [
        "#!/bin/sh",
        f"# Generated by achroot {VERSION}.",
        "# Usage: destroy [--remove]",
        "set -e",
        "",
        'root="$(cd "$(dirname "$0")" && pwd)"',
        "_sudo=''",
        "[ \"$(id -u)\" -eq 0 ] || _sudo='sudo'",
        "",
        "_umount() {",
        '\tif mountpoint -q "$2"; then',
        '\t\t$_sudo umount $1 "$2"',
        "\tfi",
        "}",
        "",
    ]
    targets = []
    for binding in reversed(list(bindings)):
        rel = shlex.quote(os.path.relpath(binding.target, root))
        flag = "--recursive" if binding.kind == RBIND else "''"
        lines.append(f'_umount {flag} "$root"/{rel}')
        targets.append(f'"$root"/{rel}')
    lines += [
        "",
        "if [ \"${1:-}\" = '--remove' ]; then",
        f"\tfor target in {' '.join(targets)}; do",
        '\t\tif mountpoint -q "$target"; then',
        "\t\t\techo \"destroy: $target is still mounted, not removing $root\" >&2",
        "\t\t\texit 1",
        "\t\tfi",
        "\tdone",
        '\t$_sudo rm -Rf "$root"',
        "fi",
        "",
    ]
    return "\n".join(lines)


def write_entry_script(root: str, patterns: Iterable[str]) -> str:
    path = os.path.join(root, ENTRY_SCRIPT)
    logger.info("Writing %s", path)
    utils.write_text(path, generate(patterns), mode=0o755)
    return path


def write_destroy_script(root: str, bindings: Sequence[MountBinding]) -> str:
    path = os.path.join(root, DESTROY_SCRIPT)
    logger.info("Writing %s", path)
    utils.write_text(path, generate_destroy(root, bindings), mode=0o755)
    return path


# ---------------------------
# Python pipeline
# ---------------------------
def capture_cwd(cwd: Optional[str] = None) -> str:
    return os.path.abspath(cwd) if cwd else os.getcwd()


def request_elevation(euid: Optional[int] = None, which: Callable = shutil.which) -> List[str]:
    return utils.elevation_prefix(euid=euid, which=which)


def store_snapshot(root: str, snapshot: Mapping[str, str], prefix: List[str],
                   runner: Callable = utils.run, temp_dir: Optional[str] = None) -> str:
    dest = os.path.join(root, ENV_SNAPSHOT)
    fd, tmp = tempfile.mkstemp(prefix="achroot-env.", dir=temp_dir)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(render_snapshot(snapshot))
        runner(prefix + ["install", "-m", SNAPSHOT_MODE, tmp, dest])
    finally:
        os.remove(tmp)
    return dest


def chroot_command(root: str, user: str, cwd: str, command: Optional[Sequence[str]],
                   prefix: List[str]) -> List[str]:
    command = list(command) if command else list(DEFAULT_COMMAND)
    return prefix + ["chroot", root, "/usr/bin/env", "-i", "/bin/sh",
                     "-c", STAGE_SCRIPT, "sh", user, cwd] + command


def enter(root: str, patterns: Iterable[str], user: str = "root",
          command: Optional[Sequence[str]] = None,
          environ: Optional[Mapping[str, str]] = None,
          cwd: Optional[str] = None,
          runner: Callable = utils.run,
          call: Callable = log.run_interactive,
          euid: Optional[int] = None,
          which: Callable = shutil.which) -> int:
    """Enters root as user and runs command (default: a shell). Returns its exit code."""
    root = os.path.abspath(root)
    environ = os.environ if environ is None else environ

    oldpwd = capture_cwd(cwd)
    prefix = request_elevation(euid=euid, which=which)
    snapshot = snapshot_environment(environ, patterns)
    logger.debug("Forwarding %s", ", ".join(sorted(snapshot)) or "no variables")
    store_snapshot(root, snapshot, prefix, runner=runner)
    argv = chroot_command(".", user, oldpwd, command, prefix)
    return call(argv, cwd=root)
