"""
Process-wide logging configuration for the CLI.

Library modules only create module loggers; handlers are installed here,
once, by the entry point.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(
    level: Union[int, str] = logging.INFO,
    log_file: Union[str, Path, None] = None,
) -> None:
    """
    Install console (stderr) and optional file handlers on the root logger.

    Replaces handlers from an earlier call, so it is safe to call twice.

    Args:
        level: Log level name or number
        log_file: Also append log lines to this file
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError("Unknown log level")

    handlers = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def level_for(verbose: bool, quiet: bool) -> int:
    """Map CLI verbosity flags to a log level."""
    if verbose:
        return logging.DEBUG
    if quiet:
        return logging.WARNING
    return logging.INFO
