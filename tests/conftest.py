"""
Pytest configuration and fixtures for diu tests.

This module provides shared fixtures used across unit and integration
tests.
"""

import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Generator

import pytest

from diu.schema import Config, ExecutionRecord, load_config_from_data


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    # Short prefix keeps Unix socket paths under the 104/108 byte limit
    with tempfile.TemporaryDirectory(prefix="diu-", dir="/tmp") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def config(temp_dir: Path) -> Config:
    """A config that keeps every file inside temp_dir and disables the HTTP server."""
    return load_config_from_data({
        "daemon": {
            "data_dir": str(temp_dir / "data"),
            "pid_file": str(temp_dir / "diu.pid"),
            "socket_path": str(temp_dir / "diu.sock"),
            "enqueue_timeout_seconds": 0.5,
            "shutdown_timeout_seconds": 2.0,
        },
        "api": {"enabled": False},
    })


@pytest.fixture
def make_record() -> Callable[..., ExecutionRecord]:
    """Factory for execution records with sensible defaults."""

    def _make(
        tool: str = "npm",
        command: str = "npm install express",
        args: list[str] | None = None,
        timestamp: datetime | None = None,
        **kwargs: Any,
    ) -> ExecutionRecord:
        if args is None:
            args = command.split()[1:]
        return ExecutionRecord(
            tool=tool,
            command=command,
            args=args,
            timestamp=timestamp or datetime.now(UTC),
            **kwargs,
        )

    return _make
