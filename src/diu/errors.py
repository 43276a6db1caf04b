"""
Exception hierarchy for diu.

All diu exceptions inherit from DiuError, allowing callers to catch
every diu-specific failure with a single except clause.

Exception Categories:
    - ConfigError: Configuration file could not be read or validated
    - ParserError: A tool parser is missing or failed to initialize
    - StorageError: The JSON document could not be loaded or written
    - DaemonError: The ingestion daemon could not start or accept events

Every error carries a numeric code, a human-readable message, an optional
suggestion and a context dict, so it can be logged, displayed by the CLI,
or returned from the HTTP API unchanged.
"""

from dataclasses import dataclass, field
from typing import Any


# =============================================================================
# Error Codes
# =============================================================================

# Config errors: 1xxx
ERROR_CONFIG_INVALID = 1001
ERROR_CONFIG_READ = 1002

# Parser errors: 2xxx
ERROR_PARSER_NOT_FOUND = 2001
ERROR_PARSER_INIT_FAILED = 2002

# Storage errors: 3xxx
ERROR_STORAGE_LOAD = 3001
ERROR_STORAGE_WRITE = 3002
ERROR_STORAGE_NOT_FOUND = 3003
ERROR_STORAGE_RESTORE = 3004
ERROR_STORAGE_CLOSED = 3005

# Daemon errors: 4xxx
ERROR_DAEMON_STATE = 4001
ERROR_DAEMON_ALREADY_RUNNING = 4002
ERROR_QUEUE_FULL = 4003
ERROR_QUEUE_CLOSED = 4004


# =============================================================================
# Base Exception
# =============================================================================


@dataclass
class DiuError(Exception):
    """
    Base exception for all diu errors.

    Attributes:
        message: Human-readable error description
        code: Numeric error code for programmatic handling
        suggestion: Optional hint for how to resolve the error
        context: Optional dict with additional debugging info
    """

    message: str = ""
    code: int = 0
    suggestion: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        """Format error for display."""
        parts = [f"[E{self.code}] {self.message}"]
        if self.suggestion:
            parts.append(f"\nSuggestion: {self.suggestion}")
        return "".join(parts)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"code={self.code}, "
            f"context={self.context!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "suggestion": self.suggestion,
            "context": self.context,
        }


# =============================================================================
# Config Errors
# =============================================================================


@dataclass
class ConfigError(DiuError):
    """
    Raised when the configuration file cannot be read or is invalid.

    Attributes:
        path: The configuration file involved
        underlying_error: What went wrong while reading or validating it
    """

    path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid configuration {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_CONFIG_INVALID
        if not self.suggestion:
            self.suggestion = "Fix the file or run 'diu config show' to see the defaults"
        self.context.update({
            "path": self.path,
            "underlying_error": self.underlying_error,
        })


# =============================================================================
# Parser Errors
# =============================================================================


@dataclass
class ParserError(DiuError):
    """
    Base class for parser errors.

    Attributes:
        tool: Name of the tool the parser handles
    """

    tool: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["tool"] = self.tool


@dataclass
class ParserNotFoundError(ParserError):
    """Raised when no parser is registered for a tool."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"No parser registered for tool: {self.tool}"
        if self.code == 0:
            self.code = ERROR_PARSER_NOT_FOUND
        if not self.suggestion:
            self.suggestion = "Add the tool to monitoring.enabled_tools"
        super().__post_init__()


@dataclass
class ParserInitError(ParserError):
    """Raised when a parser cannot be initialized."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to initialize {self.tool} parser: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_PARSER_INIT_FAILED
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


# =============================================================================
# Storage Errors
# =============================================================================


@dataclass
class StorageError(DiuError):
    """
    Base class for storage errors.

    Attributes:
        operation: The operation that failed (e.g., "append", "restore")
    """

    operation: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        self.context["operation"] = self.operation


@dataclass
class StorageLoadError(StorageError):
    """Raised when the storage document cannot be read or validated."""

    path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Failed to load storage file {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_LOAD
        if not self.suggestion:
            self.suggestion = "Restore a backup with 'diu restore <backup>' or move the file away"
        super().__post_init__()
        self.context.update({
            "path": self.path,
            "underlying_error": self.underlying_error,
        })


@dataclass
class StorageWriteError(StorageError):
    """Raised when the storage document cannot be written."""

    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Storage write failed: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_WRITE
        super().__post_init__()
        self.context["underlying_error"] = self.underlying_error


@dataclass
class StorageNotFoundError(StorageError):
    """Raised when a requested execution or package does not exist."""

    key: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Not found: {self.key}"
        if self.code == 0:
            self.code = ERROR_STORAGE_NOT_FOUND
        super().__post_init__()
        self.context["key"] = self.key


@dataclass
class StorageRestoreError(StorageError):
    """Raised when a backup file is missing or invalid."""

    path: str = ""
    underlying_error: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Cannot restore from {self.path}: {self.underlying_error}"
        if self.code == 0:
            self.code = ERROR_STORAGE_RESTORE
        if not self.suggestion:
            self.suggestion = "Pass a file created by 'diu backup'"
        super().__post_init__()
        self.context.update({
            "path": self.path,
            "underlying_error": self.underlying_error,
        })


@dataclass
class StorageClosedError(StorageError):
    """Raised when mutating a store that was closed or opened read-only."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Storage is not writable ({self.operation})"
        if self.code == 0:
            self.code = ERROR_STORAGE_CLOSED
        super().__post_init__()


# =============================================================================
# Daemon Errors
# =============================================================================


@dataclass
class DaemonError(DiuError):
    """
    Raised when the daemon is asked to do something its state forbids.

    Attributes:
        state: The daemon state at the time of the error
    """

    state: str = ""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Invalid daemon state: {self.state}"
        if self.code == 0:
            self.code = ERROR_DAEMON_STATE
        self.context["state"] = self.state


@dataclass
class DaemonAlreadyRunningError(DaemonError):
    """Raised when another live daemon owns the PID file."""

    pid: int = 0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"diu daemon already running (pid {self.pid})"
        if self.code == 0:
            self.code = ERROR_DAEMON_ALREADY_RUNNING
        if not self.suggestion:
            self.suggestion = "Stop it first with 'diu daemon stop'"
        super().__post_init__()
        self.context["pid"] = self.pid


@dataclass
class QueueFullError(DaemonError):
    """Raised when an event could not be enqueued within the timeout."""

    timeout_seconds: float = 0.0

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = f"Event queue full after {self.timeout_seconds}s, event dropped"
        if self.code == 0:
            self.code = ERROR_QUEUE_FULL
        super().__post_init__()
        self.context["timeout_seconds"] = self.timeout_seconds


@dataclass
class QueueClosedError(DaemonError):
    """Raised when an event arrives after the queue was closed."""

    def __post_init__(self) -> None:
        """Set defaults after dataclass init."""
        if not self.message:
            self.message = "Event queue is closed"
        if self.code == 0:
            self.code = ERROR_QUEUE_CLOSED
        super().__post_init__()
