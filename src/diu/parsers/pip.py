"""
pip parser for diu.

Requirement specifiers ("requests==2.31.0", "django>=4", "uvicorn[standard]")
are reduced to the distribution name; the pinned version, when there is
one, is kept in metadata["versions"]. Local paths, archives and URLs
are not packages.
"""

import json
import logging
import re
from collections.abc import Sequence
from datetime import UTC, datetime

from diu.parsers.base import Parser, flag_value, has_flag, is_path_like, positional_args, run_tool
from diu.schema import TOOL_PIP, ExecutionRecord, MetadataValue, PackageInfo

logger = logging.getLogger(__name__)

VALUE_FLAGS = (
    "-r", "--requirement",
    "-c", "--constraint",
    "-e", "--editable",
    "-i", "--index-url",
    "--extra-index-url",
    "-f", "--find-links",
    "-t", "--target",
    "--prefix",
    "--root",
    "--platform",
    "--python-version",
)

PACKAGE_COMMANDS = {"install", "uninstall", "download", "show"}

_SPECIFIER = re.compile(r"^([A-Za-z0-9][A-Za-z0-9._-]*)\s*(\[[^\]]*\])?\s*(.*)$")
_ARCHIVE_SUFFIXES = (".whl", ".tar.gz", ".zip", ".tar.bz2")


def parse_requirement(token: str) -> tuple[str, str] | None:
    """
    Split a requirement specifier into (name, pinned_version).

    The version is only filled in for exact pins ("==").
    Returns None for paths, archives and URLs.
    """
    if is_path_like(token) or "://" in token or token.endswith(_ARCHIVE_SUFFIXES):
        return None
    match = _SPECIFIER.match(token)
    if match is None:
        return None
    name, _, spec = match.groups()
    spec = spec.strip()
    version = spec[2:].strip() if spec.startswith("==") else ""
    return name, version


class PipParser(Parser):
    """Parser for pip (and pip3)."""

    binary = "pip"

    @property
    def name(self) -> str:
        return TOOL_PIP

    @property
    def description(self) -> str:
        return "Python package installer"

    def classify(self, command: str, args: Sequence[str]) -> ExecutionRecord:
        if not args:
            return self.make_record(command, args)

        subcommand = args[0]
        rest = args[1:]
        metadata: dict[str, MetadataValue] = {"subcommand": subcommand}
        packages: list[str] = []
        versions: list[str] = []

        if subcommand in PACKAGE_COMMANDS:
            for token in positional_args(rest, VALUE_FLAGS):
                parsed = parse_requirement(token)
                if parsed is None:
                    continue
                name, version = parsed
                packages.append(name)
                if version:
                    versions.append(f"{name}@{version}")
            metadata["action"] = subcommand

        if subcommand == "install":
            if has_flag(args, "-U", "--upgrade"):
                metadata["upgrade"] = True
            if has_flag(args, "--user"):
                metadata["user"] = True
            if has_flag(args, "-e", "--editable"):
                metadata["editable"] = True
            requirements = flag_value(args, "-r") or flag_value(args, "--requirement")
            if requirements:
                metadata["requirements"] = requirements

        elif subcommand in ("list", "freeze", "check"):
            metadata["action"] = subcommand
            if subcommand == "list" and has_flag(args, "-o", "--outdated"):
                metadata["outdated"] = True

        elif subcommand == "search":
            if rest:
                metadata["search_term"] = " ".join(rest)

        return self.make_record(command, args, metadata, packages, versions)

    def installed_packages(self) -> list[PackageInfo]:
        """List installed distributions from "pip list --format=json"."""
        if not self.binary_path:
            return []

        output = run_tool([self.binary_path, "list", "--format=json", "--disable-pip-version-check"])
        if output is None:
            return []
        try:
            data = json.loads(output)
        except json.JSONDecodeError:
            logger.warning("Unexpected output from pip list, skipping pip packages")
            return []

        now = datetime.now(UTC)
        return [
            PackageInfo(
                name=item["name"],
                version=item.get("version", ""),
                tool=TOOL_PIP,
                install_date=now,
                last_used=now,
            )
            for item in data
            if isinstance(item, dict) and item.get("name")
        ]
