"""
Daemon module for diu.

The daemon ingests execution events from wrapper scripts (Unix socket)
and API callers (HTTP), classifies them with the parser registry, and
stores them through the JSON store.
"""

from diu.daemon.api import create_app
from diu.daemon.core import Daemon, create_daemon
from diu.daemon.pidfile import is_running, read_pid

__all__ = [
    "Daemon",
    "create_app",
    "create_daemon",
    "is_running",
    "read_pid",
]
