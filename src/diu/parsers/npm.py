"""
npm parser for diu.

Classifies npm invocations:
- install/i/add, uninstall/remove/rm/r/un, update/up/upgrade
- list/ls/la/ll, search, run, test, start, build, publish, link, audit,
  fund, outdated

Package specs follow npm's grammar: "name", "name@version",
"@scope/name" and "@scope/name@version". Versions are split off,
scopes are kept.
"""

import json
import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from diu.parsers.base import Parser, extract_packages, flag_value, has_flag, run_tool
from diu.schema import TOOL_NPM, Config, ExecutionRecord, MetadataValue, PackageInfo

logger = logging.getLogger(__name__)

# Flags whose next token is a value, not a package
VALUE_FLAGS = ("--registry", "--scope", "--tag")

INSTALL_COMMANDS = {"install", "i", "add"}
UNINSTALL_COMMANDS = {"uninstall", "remove", "rm", "r", "un"}
UPDATE_COMMANDS = {"update", "up", "upgrade"}
LIST_COMMANDS = {"list", "ls", "la", "ll"}
SEARCH_COMMANDS = {"search", "s", "se", "find"}
RUN_COMMANDS = {"run", "run-script"}
TEST_COMMANDS = {"test", "t", "tst"}
LINK_COMMANDS = {"link", "ln"}

# Subcommands that only need an "action" entry
SIMPLE_ACTIONS = {"start", "build", "fund", "outdated"}


class NpmParser(Parser):
    """
    Parser for the npm CLI.

    Metadata keys:
        subcommand: The raw subcommand
        global: Whether -g/--global was given
        action: install, uninstall, update, list, test, publish, link, ...
        dev_dependency / optional_dependency: Save flags on install
        update_all: update without package names
        depth: --depth for list
        search_term / script: Arguments of search and run
        fix: audit --fix

    Discovery:
        global_path: <prefix>/lib/node_modules from "npm config get prefix"
    """

    binary = "npm"

    def __init__(self) -> None:
        super().__init__()
        self.global_path: Path | None = None

    @property
    def name(self) -> str:
        return TOOL_NPM

    @property
    def description(self) -> str:
        return "Node package manager"

    def initialize(self, config: Config) -> None:
        super().initialize(config)
        self.global_path = self._detect_global_path()

    def _detect_global_path(self) -> Path:
        if self.binary_path:
            output = run_tool([self.binary_path, "config", "get", "prefix"])
            if output:
                return Path(output.strip()) / "lib" / "node_modules"
        return Path.home() / ".npm"

    def classify(self, command: str, args: Sequence[str]) -> ExecutionRecord:
        if not args:
            return self.make_record(command, args)

        subcommand = args[0]
        rest = args[1:]
        metadata: dict[str, MetadataValue] = {
            "subcommand": subcommand,
            "global": has_flag(args, "-g", "--global"),
        }
        packages: list[str] = []
        versions: list[str] = []

        if subcommand in INSTALL_COMMANDS:
            packages, versions = extract_packages(rest, VALUE_FLAGS)
            metadata["action"] = "install"
            if has_flag(args, "--save-dev", "-D"):
                metadata["dev_dependency"] = True
            if has_flag(args, "--save-optional", "-O"):
                metadata["optional_dependency"] = True

        elif subcommand in UNINSTALL_COMMANDS:
            packages, _ = extract_packages(rest, VALUE_FLAGS)
            metadata["action"] = "uninstall"

        elif subcommand in UPDATE_COMMANDS:
            packages, versions = extract_packages(rest, VALUE_FLAGS)
            metadata["action"] = "update"
            if not packages:
                metadata["update_all"] = True

        elif subcommand in LIST_COMMANDS:
            metadata["action"] = "list"
            depth = self._extract_depth(args)
            if depth is not None:
                metadata["depth"] = depth

        elif subcommand in SEARCH_COMMANDS:
            if rest:
                metadata["search_term"] = " ".join(rest)

        elif subcommand in RUN_COMMANDS:
            if rest:
                metadata["script"] = rest[0]

        elif subcommand in TEST_COMMANDS:
            metadata["action"] = "test"

        elif subcommand == "publish":
            metadata["action"] = "publish"
            if rest and not rest[0].startswith("-"):
                packages = [rest[0]]

        elif subcommand in LINK_COMMANDS:
            metadata["action"] = "link"
            if rest and not rest[0].startswith("-"):
                packages = [rest[0]]

        elif subcommand == "audit":
            metadata["action"] = "audit"
            if has_flag(args, "--fix"):
                metadata["fix"] = True

        elif subcommand in SIMPLE_ACTIONS:
            metadata["action"] = subcommand

        return self.make_record(command, args, metadata, packages, versions)

    @staticmethod
    def _extract_depth(args: Sequence[str]) -> int | None:
        value = flag_value(args, "--depth")
        if value is None:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    def installed_packages(self) -> list[PackageInfo]:
        """
        List installed npm packages.

        Global packages come from "npm list -g --json". With
        tools.npm.track_global_only off, the packages of the project in
        the current directory are listed too.
        """
        if not self.binary_path:
            return []

        packages = self._list_packages(["-g"], self.global_path)
        if self.config is not None and not self.config.tools.npm.track_global_only:
            packages += self._list_packages([], Path.cwd() / "node_modules")
        return packages

    def _list_packages(self, scope: list[str], root: Path | None) -> list[PackageInfo]:
        output = run_tool([self.binary_path, "list", *scope, "--depth=0", "--json"])
        if output is None:
            return []
        try:
            data = json.loads(output)
        except json.JSONDecodeError:
            logger.warning("Unexpected output from npm list, skipping npm packages")
            return []

        now = datetime.now(UTC)
        packages = []
        for name, info in (data.get("dependencies") or {}).items():
            info = info or {}
            dependencies = sorted(info.get("dependencies") or {}) or None
            packages.append(PackageInfo(
                name=name,
                version=info.get("version", ""),
                tool=TOOL_NPM,
                install_date=now,
                last_used=now,
                path=str(root / name) if root else None,
                dependencies=dependencies,
            ))
        return packages
