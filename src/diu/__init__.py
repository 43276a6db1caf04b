"""
diu (Do I Use) - Track how you use your package managers and developer tools.

diu records every invocation of tools like npm, go, brew, pip and cargo,
classifies what each invocation did, and keeps durable usage statistics:
- A background daemon ingests events from wrapper scripts and an HTTP API
- Per-tool parsers work out which packages a command touched
- A crash-safe JSON store keeps executions, packages and statistics

Example usage:
    $ diu daemon start
    $ diu query --tool npm --last 7d
    $ diu packages --unused 90d
"""

__version__ = "0.1.0"
__author__ = "diu Contributors"

__all__ = [
    "__version__",
    "__author__",
]
