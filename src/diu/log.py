"""Logging setup for diu: rich console output plus an optional log file."""

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "diu"
FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def setup_logging(level: str = "info", log_file: Path | None = None) -> logging.Logger:
    """
    Configure the "diu" logger.

    Replaces handlers from an earlier call, so it is safe to call again
    once the config has been loaded.

    Args:
        level: Level name (debug, info, warning, error, critical)
        log_file: Also append plain-text records here when given
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper())
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.addHandler(RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    ))

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)

    return logger
