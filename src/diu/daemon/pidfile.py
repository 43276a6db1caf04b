"""PID file helpers for the diu daemon."""

import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def write_pid_file(path: Path, pid: int | None = None) -> None:
    """Write the process id (this process by default) as plain text."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{pid if pid is not None else os.getpid()}\n")


def read_pid(path: Path) -> int | None:
    """Return the PID stored in the file, or None if absent or unreadable."""
    try:
        content = path.read_text().strip()
    except OSError:
        return None
    try:
        return int(content)
    except ValueError:
        logger.warning("Ignoring malformed PID file %s", path)
        return None


def remove_pid_file(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove PID file %s: %s", path, e)


def pid_alive(pid: int) -> bool:
    """True if a process with this PID exists (signal 0 probe)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    except OSError:
        return False
    return True


def is_running(path: Path) -> bool:
    """True if the PID file exists and names a live process."""
    pid = read_pid(path)
    return pid is not None and pid_alive(pid)
