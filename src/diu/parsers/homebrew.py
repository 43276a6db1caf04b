"""
Homebrew parser for diu.

Formula names may legitimately contain "@" (python@3.11, openssl@3),
so brew arguments are never split at "@".
"""

import json
import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from diu.parsers.base import Parser, extract_packages, has_flag, run_tool
from diu.schema import (
    TOOL_HOMEBREW,
    TOOL_HOMEBREW_CASK,
    Config,
    ExecutionRecord,
    MetadataValue,
    PackageInfo,
)

logger = logging.getLogger(__name__)

CELLAR_CANDIDATES = (
    Path("/opt/homebrew/Cellar"),
    Path("/usr/local/Cellar"),
    Path("/home/linuxbrew/.linuxbrew/Cellar"),
)

UNINSTALL_COMMANDS = {"uninstall", "remove", "rm"}


def _brew_packages(args: Sequence[str]) -> list[str]:
    packages, _ = extract_packages(args, split_versions=False)
    return packages


class HomebrewParser(Parser):
    """
    Parser for brew.

    Discovery:
        cellar_paths: tools.homebrew.cellar_paths or the existing defaults
        caskroom: Caskroom directory next to the first cellar, if present
    """

    binary = "brew"

    def __init__(self) -> None:
        super().__init__()
        self.cellar_paths: list[Path] = []
        self.caskroom: Path | None = None

    @property
    def name(self) -> str:
        return TOOL_HOMEBREW

    @property
    def description(self) -> str:
        return "Homebrew package manager"

    def initialize(self, config: Config) -> None:
        super().initialize(config)
        configured = [Path(p) for p in config.tools.homebrew.cellar_paths]
        self.cellar_paths = configured or self._detect_cellar_paths()
        self.caskroom = self._detect_caskroom()

    def _detect_cellar_paths(self) -> list[Path]:
        paths = [p for p in CELLAR_CANDIDATES if p.is_dir()]
        if self.binary_path:
            output = run_tool([self.binary_path, "--cellar"])
            if output:
                cellar = Path(output.strip())
                if cellar not in paths:
                    paths.append(cellar)
        return paths

    def _detect_caskroom(self) -> Path | None:
        for cellar in self.cellar_paths:
            caskroom = cellar.parent / "Caskroom"
            if caskroom.is_dir():
                return caskroom
        return None

    def classify(self, command: str, args: Sequence[str]) -> ExecutionRecord:
        if not args:
            return self.make_record(command, args)

        subcommand = args[0]
        rest = args[1:]
        metadata: dict[str, MetadataValue] = {"subcommand": subcommand}
        packages: list[str] = []

        if subcommand == "install":
            packages = _brew_packages(rest)
            metadata["action"] = "install"
            metadata["type"] = "cask" if has_flag(args, "--cask") else "formula"

        elif subcommand in UNINSTALL_COMMANDS:
            packages = _brew_packages(rest)
            metadata["action"] = "uninstall"

        elif subcommand == "upgrade":
            packages = _brew_packages(rest)
            metadata["action"] = "upgrade"
            if not packages:
                metadata["upgrade_all"] = True

        elif subcommand == "reinstall":
            packages = _brew_packages(rest)
            metadata["action"] = "reinstall"

        elif subcommand in ("tap", "untap"):
            if rest:
                metadata[subcommand] = rest[0]

        elif subcommand in ("list", "ls"):
            metadata["action"] = "list"

        elif subcommand == "search":
            if rest:
                metadata["search_term"] = " ".join(rest)

        elif subcommand == "info":
            packages = _brew_packages(rest)[:1]

        elif subcommand == "services":
            if rest:
                metadata["service_action"] = rest[0]
                packages = _brew_packages(rest[1:])[:1]

        return self.make_record(command, args, metadata, packages)

    def installed_packages(self) -> list[PackageInfo]:
        """List installed formulae (and casks) from "brew info --json=v2 --installed"."""
        if not self.binary_path:
            return []

        output = run_tool([self.binary_path, "info", "--json=v2", "--installed"])
        if output is None:
            return []
        try:
            data = json.loads(output)
        except json.JSONDecodeError:
            logger.warning("Unexpected output from brew info, skipping Homebrew packages")
            return []

        now = datetime.now(UTC)
        packages = []
        for formula in data.get("formulae") or []:
            if not formula.get("name"):
                continue
            installed = (formula.get("installed") or [{}])[-1]
            installed_at = installed.get("time")
            when = datetime.fromtimestamp(installed_at, UTC) if installed_at else now
            packages.append(PackageInfo(
                name=formula["name"],
                version=installed.get("version", ""),
                tool=TOOL_HOMEBREW,
                install_date=when,
                last_used=when,
                dependencies=formula.get("dependencies") or None,
            ))

        track_casks = self.config is None or self.config.tools.homebrew.track_casks
        if track_casks:
            for cask in data.get("casks") or []:
                if not cask.get("token"):
                    continue
                packages.append(PackageInfo(
                    name=cask["token"],
                    version=cask.get("installed") or "",
                    tool=TOOL_HOMEBREW_CASK,
                    install_date=now,
                    last_used=now,
                    path=str(self.caskroom / cask["token"]) if self.caskroom else None,
                ))
        return packages
