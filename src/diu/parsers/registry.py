"""
Parser registry for diu.

The registry maps tool names to parser instances and drives their
lifecycle alongside the daemon.

Design:
    - One registry per daemon, built from monitoring.enabled_tools
    - A closed table of parser factories; unknown names are skipped
    - Initialization failures are logged and skipped so one broken
      tool never blocks the others
    - classify() never raises; the daemon always gets a record back

Usage:
    from diu.parsers.registry import build_registry

    registry = build_registry(config)
    record = registry.classify("npm", "npm install express", ["install", "express"])
"""

import logging
import queue
import threading
from collections.abc import Callable, Iterator, Sequence

from diu.errors import ParserInitError, ParserNotFoundError
from diu.parsers.base import Parser
from diu.parsers.cargo import CargoParser
from diu.parsers.go import GoParser
from diu.parsers.homebrew import HomebrewParser
from diu.parsers.npm import NpmParser
from diu.parsers.pip import PipParser
from diu.schema import (
    TOOL_CARGO,
    TOOL_GO,
    TOOL_HOMEBREW,
    TOOL_NPM,
    TOOL_PIP,
    Config,
    ExecutionRecord,
)

logger = logging.getLogger(__name__)

PARSER_FACTORIES: dict[str, Callable[[], Parser]] = {
    TOOL_HOMEBREW: HomebrewParser,
    TOOL_NPM: NpmParser,
    TOOL_GO: GoParser,
    TOOL_PIP: PipParser,
    TOOL_CARGO: CargoParser,
}


class ParserRegistry:
    """
    Registry for looking up parsers by tool name.

    Attributes:
        _parsers: Internal mapping of tool names to parser instances
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._parsers: dict[str, Parser] = {}

    def register(self, parser: Parser) -> None:
        """
        Register a parser, replacing any parser with the same name.

        Raises:
            ValueError: If parser is None or has an empty name
        """
        if parser is None:
            msg = "Cannot register None as a parser"
            raise ValueError(msg)

        name = parser.name
        if not name:
            msg = "Parser must have a non-empty name"
            raise ValueError(msg)

        if name in self._parsers:
            logger.debug("Replacing parser for %s", name)
        self._parsers[name] = parser

    def get(self, name: str) -> Parser:
        """
        Look up a parser by tool name.

        Raises:
            ParserNotFoundError: If no parser is registered for the tool
        """
        parser = self._parsers.get(name)
        if parser is None:
            raise ParserNotFoundError(tool=name)
        return parser

    def get_optional(self, name: str) -> Parser | None:
        return self._parsers.get(name)

    def has(self, name: str) -> bool:
        return name in self._parsers

    def unregister(self, name: str) -> bool:
        """Remove a parser. Returns False if it wasn't registered."""
        if name in self._parsers:
            del self._parsers[name]
            return True
        return False

    def clear(self) -> None:
        """Remove all parsers from the registry."""
        self._parsers.clear()

    def list_parsers(self) -> list[str]:
        """List registered tool names in sorted order."""
        return sorted(self._parsers.keys())

    def classify(self, tool: str, command: str, args: Sequence[str]) -> ExecutionRecord:
        """
        Classify an invocation with the tool's parser.

        Falls back to a bare record (no metadata, no packages) when no
        parser is registered or the parser fails.
        """
        parser = self._parsers.get(tool)
        if parser is not None:
            try:
                return parser.classify(command, args)
            except Exception:
                logger.exception("Parser %s failed to classify %r", tool, command)
        return ExecutionRecord(tool=tool, command=command, args=list(args))

    def initialize_all(self, config: Config) -> list[str]:
        """
        Initialize every registered parser.

        Parsers that fail are logged and removed from the registry.

        Returns:
            Names of the parsers that were removed
        """
        failed = []
        for name, parser in list(self._parsers.items()):
            try:
                parser.initialize(config)
            except Exception as e:
                error = ParserInitError(tool=name, underlying_error=str(e))
                logger.warning("%s, skipping", error.message)
                failed.append(name)
        for name in failed:
            self.unregister(name)
        return failed

    def start_all(self, cancel: threading.Event, events: queue.Queue) -> None:
        """Start every registered parser with the shared cancel event and queue."""
        for parser in self._parsers.values():
            try:
                parser.start(cancel, events)
            except Exception:
                logger.exception("Failed to start %s parser", parser.name)

    def stop_all(self) -> None:
        """Stop every parser. Errors are logged and the rest still stop."""
        for parser in self._parsers.values():
            try:
                parser.stop()
            except Exception:
                logger.exception("Failed to stop %s parser", parser.name)

    def active(self) -> list[str]:
        """Names of the parsers that are currently started."""
        return [name for name, parser in sorted(self._parsers.items()) if parser.active]

    def __len__(self) -> int:
        return len(self._parsers)

    def __iter__(self) -> Iterator[Parser]:
        return iter(self._parsers.values())

    def __contains__(self, name: str) -> bool:
        return name in self._parsers

    def __repr__(self) -> str:
        parsers = ", ".join(self.list_parsers())
        return f"<ParserRegistry: [{parsers}]>"


def build_registry(config: Config) -> ParserRegistry:
    """
    Build and initialize a registry for monitoring.enabled_tools.

    Unknown tool names and parsers that fail to initialize are logged
    and skipped.
    """
    registry = ParserRegistry()
    for name in config.monitoring.enabled_tools:
        factory = PARSER_FACTORIES.get(name)
        if factory is None:
            logger.warning("No parser available for tool %r, skipping", name)
            continue
        registry.register(factory())

    registry.initialize_all(config)
    logger.info("Parsers ready: %s", ", ".join(registry.list_parsers()) or "none")
    return registry
