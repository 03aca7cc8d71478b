import logging
import os
import subprocess
from logging.handlers import RotatingFileHandler
from datetime import datetime

# -------------------------
# Initial setup
# -------------------------
LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

PREFIX = "achroot"

_root_logger = logging.getLogger(PREFIX)
_root_logger.setLevel(logging.DEBUG)  # handlers do the filtering


class ColorFormatter(logging.Formatter):
    """Formats console messages with a colour per level"""
    COLORS = {
        logging.DEBUG: "\033[36m",   # cyan
        logging.INFO: "\033[32m",    # green
        logging.WARNING: "\033[33m", # yellow
        logging.ERROR: "\033[31m",   # red
        logging.CRITICAL: "\033[41m" # red background
    }
    RESET = "\033[0m"

    def format(self, record):
        color = self.COLORS.get(record.levelno, self.RESET)
        ts = datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S")
        module = f"[{record.name}]" if record.name != PREFIX else ""
        msg = super().format(record)
        return f"{color}[{ts}] {record.levelname.lower():<8}{module}{self.RESET} {msg}"


def _setup_handlers():
    """Installs the console handler once"""
    if _root_logger.handlers:
        return

    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorFormatter("%(message)s"))
    _root_logger.addHandler(ch)


_setup_handlers()


# -------------------------
# Public API
# -------------------------
def get_logger(name: str = PREFIX):
    """Returns a sub-logger (e.g. log.get_logger("mounts") -> achroot.mounts)"""
    if name == PREFIX:
        return _root_logger
    return _root_logger.getChild(name)


def set_level(level: str):
    """Changes the level of every installed handler"""
    lvl = LEVELS.get(level.lower())
    if lvl is None:
        raise ValueError(f"Invalid log level: {level}")
    for handler in _root_logger.handlers:
        if not isinstance(handler, RotatingFileHandler):
            handler.setLevel(lvl)


def enable_file_log(log_dir: str) -> str:
    """Adds a rotating debug log under log_dir, returns the log file path"""
    os.makedirs(log_dir, exist_ok=True)
    logfile = os.path.join(log_dir, "achroot.log")
    for handler in _root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and handler.baseFilename == os.path.abspath(logfile):
            return logfile

    fh = RotatingFileHandler(logfile, maxBytes=10 * 1024 * 1024, backupCount=5)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
        "%Y-%m-%d %H:%M:%S"
    ))
    _root_logger.addHandler(fh)
    return logfile


def namespaced(msg: str) -> str:
    return f"{PREFIX}: {msg}"


def run_cmd(cmd: list[str], cwd: str | None = None, env: dict | None = None):
    """
    Runs an external command logging stdout/stderr.
    Returns (returncode, stdout, stderr).
    """
    logger = get_logger("cmd")
    logger.info("Running: %s", " ".join(cmd))

    try:
        process = subprocess.Popen(
            cmd,
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            bufsize=1
        )
    except OSError as e:
        logger.error("Could not start %s: %s", cmd[0], e)
        return 127, "", str(e)

    out, err = process.communicate()
    stdout_lines = out.splitlines()
    stderr_lines = err.splitlines()
    for line in stdout_lines:
        logger.debug("[stdout] %s", line)
    for line in stderr_lines:
        logger.warning("[stderr] %s", line)

    rc = process.returncode
    if rc != 0:
        logger.error("Command failed with exit code %s", rc)

    return rc, "\n".join(stdout_lines), "\n".join(stderr_lines)


def run_interactive(cmd: list[str], cwd: str | None = None, env: dict | None = None) -> int:
    """Runs a command attached to the caller's terminal, returns its exit code"""
    get_logger("cmd").debug("Running (interactive): %s", " ".join(cmd))
    return subprocess.call(cmd, cwd=cwd, env=env)

