"""
Cargo parser for diu.

Covers both binary installs ("cargo install ripgrep") and manifest
edits ("cargo add serde@1.0 --features derive").
"""

import logging
import re
from collections.abc import Sequence
from datetime import UTC, datetime

from diu.parsers.base import Parser, extract_packages, flag_value, has_flag, run_tool
from diu.schema import TOOL_CARGO, ExecutionRecord, MetadataValue, PackageInfo

logger = logging.getLogger(__name__)

VALUE_FLAGS = (
    "--version", "--vers",
    "--git", "--branch", "--tag", "--rev",
    "--path", "--root", "--registry", "--index",
    "-F", "--features",
    "-p", "--package",
    "--target", "--profile",
    "-j", "--jobs",
    "--rename",
)

SIMPLE_ACTIONS = {"build", "b", "run", "r", "test", "t", "check", "c", "publish", "search"}

# "ripgrep v14.1.0:" lines from "cargo install --list"
_INSTALLED_LINE = re.compile(r"^(\S+) v(\S+?)(?: \(.*\))?:$")


class CargoParser(Parser):
    """Parser for cargo."""

    binary = "cargo"

    @property
    def name(self) -> str:
        return TOOL_CARGO

    @property
    def description(self) -> str:
        return "Rust package manager"

    def classify(self, command: str, args: Sequence[str]) -> ExecutionRecord:
        if not args:
            return self.make_record(command, args)

        subcommand = args[0]
        rest = args[1:]
        metadata: dict[str, MetadataValue] = {"subcommand": subcommand}
        packages: list[str] = []
        versions: list[str] = []

        if subcommand == "install":
            packages, versions = extract_packages(rest, VALUE_FLAGS, skip_paths=True)
            metadata["action"] = "install"
            version = flag_value(args, "--version") or flag_value(args, "--vers")
            if version and len(packages) == 1 and not versions:
                versions = [f"{packages[0]}@{version}"]
            if flag_value(args, "--git"):
                metadata["source"] = "git"
            elif flag_value(args, "--path"):
                metadata["source"] = "path"

        elif subcommand == "uninstall":
            packages, _ = extract_packages(rest, VALUE_FLAGS)
            metadata["action"] = "uninstall"

        elif subcommand == "add":
            packages, versions = extract_packages(rest, VALUE_FLAGS, skip_paths=True)
            metadata["action"] = "add"
            if has_flag(args, "--dev"):
                metadata["dev_dependency"] = True
            if has_flag(args, "--build"):
                metadata["build_dependency"] = True

        elif subcommand in ("remove", "rm"):
            packages, _ = extract_packages(rest, VALUE_FLAGS)
            metadata["action"] = "remove"

        elif subcommand == "update":
            metadata["action"] = "update"
            package = flag_value(args, "-p") or flag_value(args, "--package")
            if package:
                packages = [package]
            else:
                metadata["update_all"] = True

        elif subcommand in SIMPLE_ACTIONS:
            metadata["action"] = subcommand
            if subcommand == "search" and rest:
                metadata["search_term"] = " ".join(rest)

        return self.make_record(command, args, metadata, packages, versions)

    def installed_packages(self) -> list[PackageInfo]:
        """List installed binaries from "cargo install --list"."""
        if not self.binary_path:
            return []

        output = run_tool([self.binary_path, "install", "--list"])
        if output is None:
            return []

        now = datetime.now(UTC)
        packages = []
        for line in output.splitlines():
            match = _INSTALLED_LINE.match(line.strip())
            if match is None:
                continue
            packages.append(PackageInfo(
                name=match.group(1),
                version=match.group(2),
                tool=TOOL_CARGO,
                install_date=now,
                last_used=now,
            ))
        return packages
