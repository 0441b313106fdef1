"""Centralized logging configuration for agentclaims.

Every module obtains its logger through ``get_logger(__name__)`` so that all
output lives under the ``agentclaims`` logger hierarchy. The CLI calls
``setup_logging`` once at startup.

Usage:
    # In main entry point (cli.py):
    from .logging_config import setup_logging
    setup_logging(level="INFO")

    # In any module:
    from .logging_config import get_logger
    logger = get_logger(__name__)
    logger.info("Claimed task build-1")
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

__all__ = [
    "setup_logging",
    "get_logger",
    "LOG_LEVELS",
]

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(
    level: str = "WARNING",
    format_string: Optional[str] = None,
    log_file: Optional[str] = None,
) -> None:
    """Configure logging for agentclaims.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_string: Custom format string (default includes timestamp, name, level, message)
        log_file: Optional file path to append logs to (in addition to stderr)

    Raises:
        ValueError: If level is not a known log level name

    Note:
        Logs go to stderr so they never mix with command output on stdout.
    """
    level_name = level.upper()
    if level_name not in LOG_LEVELS:
        raise ValueError(f"Unknown log level '{level}', expected one of {LOG_LEVELS}")

    if format_string is None:
        format_string = DEFAULT_FORMAT

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]

    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a"))

    logging.basicConfig(
        level=getattr(logging, level_name),
        format=format_string,
        handlers=handlers,
        force=True,
    )

    logging.getLogger("agentclaims").setLevel(getattr(logging, level_name))


def get_logger(name: str) -> logging.Logger:
    """Get a logger for the given module name.

    The returned logger is always namespaced under ``agentclaims`` so it
    inherits the level configured by ``setup_logging``.

    Args:
        name: Module name (typically __name__ from the calling module)

    Returns:
        Logger instance for the module

    Example:
        >>> logger = get_logger("agentclaims.leases")
        >>> logger.name
        'agentclaims.leases'
    """
    if name.startswith("agentclaims."):
        name = name[len("agentclaims."):]

    if name == "agentclaims":
        return logging.getLogger(name)

    return logging.getLogger(f"agentclaims.{name}")
