"""
Base classes for the parser interface.

This module defines the core abstraction for per-tool classifiers:
- Parser: Abstract base class every tool parser implements
- Argument helpers shared by the concrete parsers

Design Principles:
    - classify() never raises; unknown subcommands produce a bare record
    - Parsers are stateless apart from discovery done in initialize()
    - A missing tool binary degrades discovery, never classification
    - Parsers are registered by name; the registry handles lookup
"""

import logging
import queue
import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence

from diu.schema import Config, ExecutionRecord, MetadataValue, PackageInfo

logger = logging.getLogger(__name__)

# Tokens that name the current module tree rather than a package
PATH_PATTERNS = frozenset({".", "..", "./...", "..."})

DISCOVERY_TIMEOUT_SECONDS = 30


def has_flag(args: Sequence[str], *flags: str) -> bool:
    """Return True if any of the flags appears in args."""
    return any(arg in flags for arg in args)


def flag_value(args: Sequence[str], flag: str) -> str | None:
    """
    Return the value of a flag given as "flag VALUE" or "flag=VALUE".

    Returns None when the flag is absent or has no value.
    """
    prefix = f"{flag}="
    for i, arg in enumerate(args):
        if arg == flag and i + 1 < len(args):
            return args[i + 1]
        if arg.startswith(prefix):
            return arg[len(prefix):]
    return None


def is_path_like(token: str) -> bool:
    """True for tokens like ".", "./...", "./pkg", "../lib" or "/abs/path"."""
    return token in PATH_PATTERNS or token.startswith(("./", "../", "/", "~"))


def split_at_version(token: str) -> tuple[str, str]:
    """
    Split "name@version" into (name, version).

    A leading "@" marks a scoped name and is kept:
        "express@4.18.0"        -> ("express", "4.18.0")
        "@types/node@18"        -> ("@types/node", "18")
        "@types/node"           -> ("@types/node", "")
    """
    if token.startswith("@"):
        name, sep, version = token[1:].partition("@")
        return f"@{name}", version if sep else ""
    name, _, version = token.partition("@")
    return name, version


def positional_args(
    args: Sequence[str],
    value_flags: Iterable[str] = (),
) -> list[str]:
    """
    Return the non-flag arguments.

    Flags start with "-". A flag listed in value_flags also consumes
    the next token, unless it was written as "--flag=value".
    """
    value_flags = frozenset(value_flags)
    result = []
    skip_next = False
    for arg in args:
        if skip_next:
            skip_next = False
            continue
        if arg.startswith("-"):
            if arg in value_flags:
                skip_next = True
            continue
        result.append(arg)
    return result


def extract_packages(
    args: Sequence[str],
    value_flags: Iterable[str] = (),
    skip_paths: bool = False,
    split_versions: bool = True,
) -> tuple[list[str], list[str]]:
    """
    Extract package names from the arguments after a subcommand.

    Args:
        args: Arguments following the subcommand
        value_flags: Flags that consume the next token
        skip_paths: Drop path-like tokens (".", "./...", "./pkg")
        split_versions: Split "name@version" into name and version

    Returns:
        (packages, versions) where versions lists "name@version" for
        every token that carried a version
    """
    packages: list[str] = []
    versions: list[str] = []
    for token in positional_args(args, value_flags):
        if skip_paths and is_path_like(token):
            continue
        if split_versions:
            name, version = split_at_version(token)
            if not name or name == "@":
                continue
            packages.append(name)
            if version:
                versions.append(f"{name}@{version}")
        else:
            packages.append(token)
    return packages, versions


def run_tool(argv: Sequence[str]) -> str | None:
    """
    Run a discovery command and return its stdout.

    Returns None when the binary is missing, times out, or prints nothing.
    Non-zero exit codes are tolerated when there is output, since
    package managers often exit 1 on warnings.
    """
    try:
        result = subprocess.run(
            list(argv),
            capture_output=True,
            text=True,
            timeout=DISCOVERY_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("Discovery command %s failed: %s", argv[0], e)
        return None
    if not result.stdout.strip():
        return None
    return result.stdout


class Parser(ABC):
    """
    Abstract base class for all tool parsers.

    A parser turns a raw command line into a classified ExecutionRecord
    for one tool. Parsers also take part in the daemon lifecycle: they
    are initialized with the config, started with the shared cancel
    event and event queue, and stopped on shutdown.

    Subclasses must implement:
    - name property: The tool's unique name (e.g., "npm")
    - classify(): Build the classified record

    Example:
        class EchoParser(Parser):
            @property
            def name(self) -> str:
                return "echo"

            def classify(self, command, args):
                return self.make_record(command, args, {"words": len(args)})
    """

    binary: str = ""

    def __init__(self) -> None:
        self.config: Config | None = None
        self.binary_path: str | None = None
        self._cancel: threading.Event | None = None
        self._active = False

    @property
    @abstractmethod
    def name(self) -> str:
        """The tool name records are filed under."""
        ...

    @property
    def description(self) -> str:
        return f"Parser: {self.name}"

    @property
    def active(self) -> bool:
        """Whether the parser has been started and not yet stopped."""
        return self._active and not (self._cancel is not None and self._cancel.is_set())

    def initialize(self, config: Config) -> None:
        """
        Record the config and locate the tool binary.

        Subclasses extend this with their own discovery. A missing binary
        is not an error: classification still works, discovery is skipped.
        """
        self.config = config
        if self.binary:
            self.binary_path = shutil.which(self.binary)
            if self.binary_path is None:
                logger.debug("%s binary not found on PATH", self.binary)

    def start(self, cancel: threading.Event, events: queue.Queue) -> None:
        """
        Attach to the shared cancel signal.

        events is the daemon queue for parsers that observe invocations
        themselves. Every built-in parser is fed by wrapper scripts, so
        the base class only watches cancel.
        """
        self._cancel = cancel
        self._active = True

    def stop(self) -> None:
        self._active = False

    @abstractmethod
    def classify(self, command: str, args: Sequence[str]) -> ExecutionRecord:
        """
        Classify one invocation.

        Args:
            command: The raw command line
            args: Arguments after the binary, subcommand first

        Returns:
            A record for this tool with metadata and packages_affected set

        Note:
            - Never raise for unknown subcommands or odd arguments
            - An empty args list yields a record with empty metadata
        """
        ...

    def installed_packages(self) -> list[PackageInfo]:
        """
        List packages currently installed for this tool.

        The default implementation knows of none. Implementations return
        an empty list when the binary is missing or the listing fails.
        """
        return []

    def make_record(
        self,
        command: str,
        args: Sequence[str],
        metadata: dict[str, MetadataValue] | None = None,
        packages: Sequence[str] = (),
        versions: Sequence[str] = (),
    ) -> ExecutionRecord:
        """Build the classified record for this tool."""
        metadata = dict(metadata or {})
        if versions:
            metadata["versions"] = list(versions)
        return ExecutionRecord(
            tool=self.name,
            command=command,
            args=list(args),
            packages_affected=list(packages),
            metadata=metadata,
        )

    def __repr__(self) -> str:
        return f"<Parser: {self.name}>"
