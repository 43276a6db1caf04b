"""
Unit tests for the Homebrew parser.

Tests cover:
- Subcommand classification and metadata
- Formula names containing "@"
- Cellar discovery and "brew info --json=v2" parsing
"""

import json
from pathlib import Path

import pytest

from diu.parsers import homebrew as homebrew_module
from diu.parsers.homebrew import HomebrewParser
from diu.schema import load_config_from_data


@pytest.fixture
def parser() -> HomebrewParser:
    return HomebrewParser()


def classify(parser: HomebrewParser, *args: str):
    return parser.classify(" ".join(["brew", *args]), list(args))


class TestClassify:
    def test_install_formula(self, parser: HomebrewParser) -> None:
        record = classify(parser, "install", "wget", "jq")
        assert record.tool == "homebrew"
        assert record.packages_affected == ["wget", "jq"]
        assert record.metadata["action"] == "install"
        assert record.metadata["type"] == "formula"

    def test_install_cask(self, parser: HomebrewParser) -> None:
        record = classify(parser, "install", "--cask", "firefox")
        assert record.packages_affected == ["firefox"]
        assert record.metadata["type"] == "cask"

    def test_at_sign_kept(self, parser: HomebrewParser) -> None:
        record = classify(parser, "install", "python@3.11")
        assert record.packages_affected == ["python@3.11"]
        assert "versions" not in record.metadata

    @pytest.mark.parametrize("subcommand", ["uninstall", "remove", "rm"])
    def test_uninstall(self, parser: HomebrewParser, subcommand: str) -> None:
        record = classify(parser, subcommand, "wget")
        assert record.packages_affected == ["wget"]
        assert record.metadata["action"] == "uninstall"

    def test_upgrade_all(self, parser: HomebrewParser) -> None:
        assert classify(parser, "upgrade").metadata["upgrade_all"] is True
        assert "upgrade_all" not in classify(parser, "upgrade", "git").metadata

    def test_reinstall(self, parser: HomebrewParser) -> None:
        record = classify(parser, "reinstall", "openssl@3")
        assert record.packages_affected == ["openssl@3"]
        assert record.metadata["action"] == "reinstall"

    def test_tap(self, parser: HomebrewParser) -> None:
        assert classify(parser, "tap", "homebrew/cask-fonts").metadata["tap"] == "homebrew/cask-fonts"
        assert classify(parser, "untap", "homebrew/cask-fonts").metadata["untap"] == "homebrew/cask-fonts"

    def test_list(self, parser: HomebrewParser) -> None:
        assert classify(parser, "ls", "--versions").metadata["action"] == "list"

    def test_search(self, parser: HomebrewParser) -> None:
        assert classify(parser, "search", "postgres").metadata["search_term"] == "postgres"

    def test_info(self, parser: HomebrewParser) -> None:
        assert classify(parser, "info", "node", "yarn").packages_affected == ["node"]

    def test_services(self, parser: HomebrewParser) -> None:
        record = classify(parser, "services", "start", "postgresql@16")
        assert record.metadata["service_action"] == "start"
        assert record.packages_affected == ["postgresql@16"]

    def test_services_list(self, parser: HomebrewParser) -> None:
        record = classify(parser, "services", "list")
        assert record.metadata["service_action"] == "list"
        assert record.packages_affected == []

    def test_unknown(self, parser: HomebrewParser) -> None:
        record = classify(parser, "doctor")
        assert record.metadata == {"subcommand": "doctor"}

    def test_no_args(self, parser: HomebrewParser) -> None:
        assert parser.classify("brew", []).metadata == {}


class TestDiscovery:
    def test_configured_cellar(self, parser: HomebrewParser, temp_dir: Path) -> None:
        cellar = temp_dir / "Cellar"
        cellar.mkdir()
        (temp_dir / "Caskroom").mkdir()
        config = load_config_from_data({"tools": {"homebrew": {"cellar_paths": [str(cellar)]}}})
        parser.initialize(config)
        assert parser.cellar_paths == [cellar]
        assert parser.caskroom == temp_dir / "Caskroom"

    def test_installed_packages(self, parser: HomebrewParser, monkeypatch: pytest.MonkeyPatch) -> None:
        output = json.dumps({
            "formulae": [
                {
                    "name": "wget",
                    "dependencies": ["openssl@3"],
                    "installed": [{"version": "1.21.4", "time": 1700000000}],
                },
                {"installed": []},
            ],
            "casks": [{"token": "firefox", "installed": "121.0"}],
        })
        monkeypatch.setattr(homebrew_module, "run_tool", lambda argv: output)
        parser.binary_path = "/opt/homebrew/bin/brew"

        packages = {(p.tool, p.name): p for p in parser.installed_packages()}
        wget = packages[("homebrew", "wget")]
        assert wget.version == "1.21.4"
        assert wget.dependencies == ["openssl@3"]
        assert wget.install_date.timestamp() == 1700000000
        assert packages[("homebrew-cask", "firefox")].version == "121.0"
        assert len(packages) == 2

    def test_casks_not_tracked(self, parser: HomebrewParser, monkeypatch: pytest.MonkeyPatch) -> None:
        output = json.dumps({"formulae": [], "casks": [{"token": "firefox", "installed": "121.0"}]})
        monkeypatch.setattr(homebrew_module, "run_tool", lambda argv: output)
        parser.initialize(load_config_from_data({"tools": {"homebrew": {"track_casks": False}}}))
        parser.binary_path = "/opt/homebrew/bin/brew"
        assert parser.installed_packages() == []
