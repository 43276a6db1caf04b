"""
Go toolchain parser for diu.

Classifies go invocations (get, install, mod, build, run, test, fmt,
vet, list, clean, env, version). Module paths like
"github.com/spf13/cobra@v1.8.0" are split into path and version;
package patterns that name the local tree (".", "./...", "./cmd/x")
are not packages.
"""

import logging
import os
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from diu.parsers.base import Parser, extract_packages, flag_value, has_flag, run_tool
from diu.schema import TOOL_GO, TOOL_GO_BINARY, Config, ExecutionRecord, MetadataValue, PackageInfo

logger = logging.getLogger(__name__)

MOD_ACTIONS = {"download", "tidy", "vendor"}
SIMPLE_ACTIONS = {"fmt", "vet", "env", "version"}


class GoParser(Parser):
    """
    Parser for the go command.

    Discovery:
        gopath: tools.go.gopath, $GOPATH, or ~/go
        gobin: tools.go.gobin, $GOBIN, or <gopath>/bin
        modules: "go list -m all" in the current directory
    """

    binary = "go"

    def __init__(self) -> None:
        super().__init__()
        self.gopath: Path | None = None
        self.gobin: Path | None = None

    @property
    def name(self) -> str:
        return TOOL_GO

    @property
    def description(self) -> str:
        return "Go toolchain"

    def initialize(self, config: Config) -> None:
        super().initialize(config)
        gopath = config.tools.go.gopath or os.environ.get("GOPATH", "")
        self.gopath = Path(gopath) if gopath else Path.home() / "go"
        gobin = config.tools.go.gobin or os.environ.get("GOBIN", "")
        self.gobin = Path(gobin) if gobin else self.gopath / "bin"

    def classify(self, command: str, args: Sequence[str]) -> ExecutionRecord:
        if not args:
            return self.make_record(command, args)

        subcommand = args[0]
        rest = args[1:]
        metadata: dict[str, MetadataValue] = {"subcommand": subcommand}
        packages: list[str] = []
        versions: list[str] = []

        if subcommand == "get":
            packages, versions = extract_packages(rest, skip_paths=True)
            metadata["action"] = "get"
            if has_flag(args, "-u"):
                metadata["update"] = True

        elif subcommand == "install":
            packages, versions = extract_packages(rest, skip_paths=True)
            metadata["action"] = "install"

        elif subcommand == "mod":
            if rest:
                mod_command = rest[0]
                metadata["mod_command"] = mod_command
                if mod_command in MOD_ACTIONS:
                    metadata["action"] = f"mod_{mod_command}"
                elif mod_command == "init" and len(rest) > 1:
                    metadata["module"] = rest[1]

        elif subcommand == "build":
            metadata["action"] = "build"
            output = flag_value(args, "-o")
            if output:
                metadata["output"] = output

        elif subcommand == "run":
            metadata["action"] = "run"
            if rest and rest[0].endswith(".go"):
                metadata["file"] = rest[0]

        elif subcommand == "test":
            metadata["action"] = "test"
            packages, versions = extract_packages(rest, skip_paths=True)

        elif subcommand == "list":
            metadata["action"] = "list"
            if has_flag(args, "-m"):
                metadata["modules"] = True

        elif subcommand == "clean":
            metadata["action"] = "clean"
            if has_flag(args, "-modcache"):
                metadata["modcache"] = True

        elif subcommand in SIMPLE_ACTIONS:
            metadata["action"] = subcommand

        return self.make_record(command, args, metadata, packages, versions)

    def installed_packages(self) -> list[PackageInfo]:
        """Modules of the current module (tool go) and executables in GOBIN (tool go-binary)."""
        return self._modules() + self._binaries()

    def _modules(self) -> list[PackageInfo]:
        """
        Dependencies from "go list -m all", run in the current directory.

        The first line names the main module and has no version; it is
        skipped. Outside a module go prints nothing on stdout.
        """
        if not self.binary_path:
            return []
        output = run_tool([self.binary_path, "list", "-m", "all"])
        if output is None:
            return []

        now = datetime.now(UTC)
        packages = []
        for line in output.splitlines():
            fields = line.split()
            if len(fields) < 2:
                continue
            packages.append(PackageInfo(
                name=fields[0],
                version=fields[1],
                tool=TOOL_GO,
                install_date=now,
                last_used=now,
            ))
        return packages

    def _binaries(self) -> list[PackageInfo]:
        if self.gobin is None or not self.gobin.is_dir():
            return []

        packages = []
        try:
            entries = sorted(self.gobin.iterdir())
        except OSError as e:
            logger.warning("Cannot read GOBIN %s: %s", self.gobin, e)
            return []

        for entry in entries:
            try:
                if not entry.is_file() or not os.access(entry, os.X_OK):
                    continue
                modified = datetime.fromtimestamp(entry.stat().st_mtime, UTC)
            except OSError:
                continue
            packages.append(PackageInfo(
                name=entry.name,
                version=self._binary_version(entry) or "",
                tool=TOOL_GO_BINARY,
                install_date=modified,
                last_used=modified,
                path=str(entry),
            ))
        return packages

    def _binary_version(self, path: Path) -> str | None:
        """Read the module version embedded in a Go binary with "go version -m"."""
        if not self.binary_path:
            return None
        output = run_tool([self.binary_path, "version", "-m", str(path)])
        if output is None:
            return None
        for line in output.splitlines():
            fields = line.split()
            if len(fields) >= 3 and fields[0] == "mod":
                return fields[2]
        return None
