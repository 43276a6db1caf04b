"""
Schema definitions for diu.

This module defines the Pydantic models used throughout diu:
- ExecutionRecord: One observed tool invocation (the wire and storage format)
- PackageInfo: Aggregate usage of one package under one tool
- StorageDocument: The complete persisted state
- QueryFilters: Filters accepted by the storage engine
- Config: The daemon configuration tree

Design Decisions:
    - Records are frozen; a stored execution is never updated in place
    - Metadata values are limited to str, bool, int and list[str]
    - Timestamps are always timezone-aware (naive input is read as UTC)
    - Config models forbid unknown keys so typos are reported, not ignored
"""

import os
import shlex
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
)

from diu.errors import ConfigError

# Value kinds allowed in ExecutionRecord.metadata
MetadataValue = bool | int | str | list[str]

STORAGE_FORMAT_VERSION = "1.0.0"
CONFIG_VERSION = "1.0"

# Tool names
TOOL_HOMEBREW = "homebrew"
TOOL_HOMEBREW_CASK = "homebrew-cask"
TOOL_NPM = "npm"
TOOL_GO = "go"
TOOL_GO_BINARY = "go-binary"
TOOL_PIP = "pip"
TOOL_CARGO = "cargo"


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# =============================================================================
# Enums
# =============================================================================


class DaemonState(str, Enum):
    """Lifecycle state of the ingestion daemon."""

    CREATED = "created"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


# =============================================================================
# Record Models
# =============================================================================


class ExecutionRecord(BaseModel):
    """
    One observed invocation of a tool.

    This is both the wire format emitted by wrapper scripts and the
    format persisted in the storage document.

    Attributes:
        id: Unique identifier (assigned by the store when empty)
        tool: Tool name (e.g., "npm", "homebrew")
        command: The raw command line
        args: Argument list, subcommand first
        timestamp: When the invocation started
        duration_ms: Wall time in milliseconds
        exit_code: Process exit status
        working_dir: Directory the command ran in
        user: Invoking user
        environment: Optional subset of the environment
        packages_affected: Package names the command touched
        metadata: Tool-specific facts (subcommand, flags, action, ...)
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str = Field(default="", description="Unique identifier")
    tool: str = Field(..., description="Tool name", min_length=1)
    command: str = Field(default="", description="Raw command line")
    args: list[str] = Field(default_factory=list, description="Argument list")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the invocation started",
    )
    duration_ms: int = Field(default=0, description="Duration in milliseconds", ge=0)
    exit_code: int = Field(default=0, description="Process exit status")
    working_dir: str = Field(default="", description="Working directory")
    user: str = Field(default="", description="Invoking user")
    environment: dict[str, str] | None = Field(
        default=None,
        description="Optional environment subset",
    )
    packages_affected: list[str] = Field(
        default_factory=list,
        description="Packages the command touched",
    )
    metadata: dict[str, MetadataValue] = Field(
        default_factory=dict,
        description="Tool-specific facts",
    )

    @field_validator("args", mode="before")
    @classmethod
    def split_args_string(cls, v: Any) -> Any:
        """Accept a single shell-quoted string, as older wrappers send it."""
        if isinstance(v, str):
            try:
                return shlex.split(v)
            except ValueError:
                return v.split()
        return v

    @field_validator("packages_affected", "metadata", mode="before")
    @classmethod
    def null_to_empty(cls, v: Any, info: ValidationInfo) -> Any:
        """Treat an explicit null as an empty collection."""
        if v is None:
            return {} if info.field_name == "metadata" else []
        return v

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)


class PackageInfo(BaseModel):
    """
    Aggregate usage of one package under one tool.

    Attributes:
        name: Package name
        version: Last observed version (empty when unknown)
        tool: Tool the package belongs to
        install_date: First time the package was seen
        last_used: Most recent time the package was seen
        usage_count: Number of executions naming this package
        path: Optional filesystem location
        dependencies: Optional dependency names
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(..., description="Package name", min_length=1)
    version: str = Field(default="", description="Last observed version")
    tool: str = Field(..., description="Tool name", min_length=1)
    install_date: datetime = Field(..., description="First seen")
    last_used: datetime = Field(..., description="Last seen")
    usage_count: int = Field(default=0, description="Usage count", ge=0)
    path: str | None = Field(default=None, description="Filesystem location")
    dependencies: list[str] | None = Field(default=None, description="Dependencies")

    @field_validator("install_date", "last_used")
    @classmethod
    def normalize_dates(cls, v: datetime) -> datetime:
        return as_utc(v)


class StorageMetadata(BaseModel):
    """Metadata describing the storage document itself."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    created: datetime = Field(default_factory=lambda: datetime.now(UTC))
    last_updated: datetime = Field(default_factory=lambda: datetime.now(UTC))
    hostname: str = ""
    user: str = ""
    diu_version: str = ""


class Statistics(BaseModel):
    """
    Aggregate statistics over all stored executions.

    Attributes:
        total_executions: Number of executions currently stored
        tools_used: Every tool ever seen, in order of first use
        most_active_day: Busiest calendar day (YYYY-MM-DD), empty if none
        execution_frequency: Executions per tool
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    total_executions: int = Field(default=0, ge=0)
    tools_used: list[str] = Field(default_factory=list)
    most_active_day: str = ""
    execution_frequency: dict[str, int] = Field(default_factory=dict)


class StorageDocument(BaseModel):
    """
    The complete persisted state.

    The store never mutates a document; every change builds a new one
    with model_copy() and swaps it in once it has been written to disk.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    version: str = Field(default=STORAGE_FORMAT_VERSION)
    metadata: StorageMetadata = Field(default_factory=StorageMetadata)
    executions: list[ExecutionRecord] = Field(default_factory=list)
    packages: dict[str, dict[str, PackageInfo]] = Field(default_factory=dict)
    statistics: Statistics = Field(default_factory=Statistics)


class QueryFilters(BaseModel):
    """
    Filters for querying executions.

    since is inclusive and until is exclusive. A limit of 0 or None
    means no limit.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    tool: str | None = None
    package: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = Field(default=None, ge=0)
    offset: int = Field(default=0, ge=0)

    @field_validator("since", "until")
    @classmethod
    def normalize_bounds(cls, v: datetime | None) -> datetime | None:
        return as_utc(v) if v is not None else None


class HealthStatus(BaseModel):
    """Response body of the health endpoint."""

    model_config = ConfigDict(frozen=True)

    status: str
    version: str
    uptime: str
    uptime_seconds: float
    monitors_active: int


# =============================================================================
# Config Models
# =============================================================================


def _default_data_dir() -> Path:
    return Path.home() / ".local" / "share" / "diu"


class DaemonConfig(BaseModel):
    """
    Settings for the ingestion daemon.

    Attributes:
        log_level: Logging level name
        log_file: Optional log file (relative paths live in data_dir)
        data_dir: Directory holding the storage document and logs
        pid_file: Process-identity file
        socket_path: Unix socket wrapper scripts write to
        queue_size: Capacity of the event queue
        enqueue_timeout_seconds: How long producers wait on a full queue
        shutdown_timeout_seconds: Grace period for the HTTP server on stop
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    log_level: str = Field(default="info")
    log_file: str | None = Field(default=None)
    data_dir: Path = Field(default_factory=_default_data_dir)
    pid_file: Path = Field(default=Path("/tmp/diu.pid"))
    socket_path: Path = Field(default=Path("/tmp/diu.sock"))
    queue_size: int = Field(default=100, gt=0)
    enqueue_timeout_seconds: float = Field(default=1.0, ge=0)
    shutdown_timeout_seconds: float = Field(default=5.0, gt=0)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.lower()
        if level not in {"debug", "info", "warning", "error", "critical"}:
            msg = f"Unknown log level: {v}"
            raise ValueError(msg)
        return level


class StorageConfig(BaseModel):
    """Settings for the JSON storage backend."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    backend: str = Field(default="json")
    json_file: Path | None = Field(
        default=None,
        description="Storage document (defaults to <data_dir>/executions.json)",
    )
    backup_enabled: bool = Field(default=True)
    retention_days: int = Field(default=365, gt=0)

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v != "json":
            msg = f"Unsupported storage backend: {v}"
            raise ValueError(msg)
        return v


class MonitoringConfig(BaseModel):
    """Which tools get a parser."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled_tools: list[str] = Field(
        default_factory=lambda: [TOOL_HOMEBREW, TOOL_NPM, TOOL_GO, TOOL_PIP, TOOL_CARGO],
    )


class HomebrewConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    cellar_paths: list[str] = Field(default_factory=list)
    track_casks: bool = True


class NpmConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    track_global_only: bool = True


class GoConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    gopath: str = ""
    gobin: str = ""


class ToolsConfig(BaseModel):
    """Per-tool discovery settings."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    homebrew: HomebrewConfig = Field(default_factory=HomebrewConfig)
    npm: NpmConfig = Field(default_factory=NpmConfig)
    go: GoConfig = Field(default_factory=GoConfig)


class ApiConfig(BaseModel):
    """Settings for the HTTP API."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = Field(default=8081, ge=0, le=65535)


class Config(BaseModel):
    """
    Complete diu configuration.

    Every section has defaults, so an empty file (or no file at all)
    is a valid configuration.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str = Field(default=CONFIG_VERSION)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)

    @property
    def storage_file(self) -> Path:
        """Resolved path of the storage document."""
        if self.storage.json_file is not None:
            return self.storage.json_file
        return self.daemon.data_dir / "executions.json"

    @property
    def log_path(self) -> Path | None:
        """Resolved path of the log file, if one is configured."""
        if not self.daemon.log_file:
            return None
        path = Path(self.daemon.log_file)
        return path if path.is_absolute() else self.daemon.data_dir / path


# =============================================================================
# Config Loading Helpers
# =============================================================================


def default_config_path() -> Path:
    """Config path from $DIU_CONFIG, else ~/.config/diu/config.yaml."""
    env_path = os.environ.get("DIU_CONFIG")
    if env_path:
        return Path(env_path)
    return Path.home() / ".config" / "diu" / "config.yaml"


def load_config(path: Path | str | None = None) -> Config:
    """
    Load the configuration from a YAML (or JSON) file.

    Args:
        path: Config file path (defaults to default_config_path())

    Returns:
        Validated Config; defaults when the file does not exist

    Raises:
        ConfigError: If the file can't be read or doesn't match the schema
    """
    path = Path(path) if path is not None else default_config_path()
    if not path.exists():
        return Config()

    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(path=str(path), underlying_error=str(e)) from e

    return load_config_from_data(data or {}, source=str(path))


def load_config_from_string(content: str) -> Config:
    """Load a configuration from a YAML string."""
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(path="<string>", underlying_error=str(e)) from e
    return load_config_from_data(data or {}, source="<string>")


def load_config_from_data(data: Any, source: str = "<data>") -> Config:
    """Validate already-parsed configuration data."""
    if not isinstance(data, dict):
        raise ConfigError(path=source, underlying_error="top level must be a mapping")
    try:
        return Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(path=source, underlying_error=str(e)) from e


def save_config(config: Config, path: Path | str | None = None) -> Path:
    """Write the configuration as YAML, creating parent directories."""
    path = Path(path) if path is not None else default_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as f:
        yaml.safe_dump(config.model_dump(mode="json"), f, sort_keys=False)
    return path


def ensure_directories(config: Config) -> None:
    """Create the data directory and the storage file's directory."""
    for directory in (config.daemon.data_dir, config.storage_file.parent):
        directory.mkdir(parents=True, exist_ok=True)
