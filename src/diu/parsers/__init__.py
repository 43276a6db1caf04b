"""
Parsers module for diu.

Each parser turns a raw command line for one tool into a classified
ExecutionRecord: which subcommand ran and which packages it touched.

Built-in parsers:
    - homebrew: brew install/uninstall/upgrade/services ...
    - npm: npm install/uninstall/update/run ...
    - go: go get/install/mod/build ...
    - pip: pip install/uninstall/show ...
    - cargo: cargo install/add/remove/update ...

Architecture:
    - Parser: Abstract base class defining the parser interface
    - ParserRegistry: Lookup by tool name plus lifecycle (start/stop)
    - build_registry: Builds the registry from the config
"""

from diu.parsers.base import Parser
from diu.parsers.cargo import CargoParser
from diu.parsers.go import GoParser
from diu.parsers.homebrew import HomebrewParser
from diu.parsers.npm import NpmParser
from diu.parsers.pip import PipParser
from diu.parsers.registry import PARSER_FACTORIES, ParserRegistry, build_registry

__all__ = [
    "Parser",
    "ParserRegistry",
    "PARSER_FACTORIES",
    "build_registry",
    "CargoParser",
    "GoParser",
    "HomebrewParser",
    "NpmParser",
    "PipParser",
]
