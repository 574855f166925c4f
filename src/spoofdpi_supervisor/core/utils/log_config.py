"""Logging configuration for the supervisor.

This module provides centralized logging configuration using Loguru.
It sets up logging to both file and console with proper formatting
and log rotation. The core modules only import ``loguru.logger``; sinks are
installed by the command line through :func:`setup_logging`.
"""

import sys
from pathlib import Path

from loguru import logger

LOG_DIR = Path.home() / ".spoofdpi-supervisor" / "logs"
LOG_FILE = LOG_DIR / "supervisor.log"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"


def setup_logging(debug: bool = False, console_level: str = "INFO", log_dir: Path = LOG_DIR) -> None:
    """Replace the default loguru handler with console and rotating file sinks.

    Args:
        debug: Log DEBUG messages to the console as well
        console_level: Console level when not debugging; the live panel
            raises it so log records do not tear the display
        log_dir: Directory for the rotating log file
    """
    log_dir.mkdir(parents=True, exist_ok=True)
    logger.remove()

    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        level="DEBUG" if debug else console_level,
        backtrace=True,
        diagnose=debug,
    )

    logger.add(
        log_dir / LOG_FILE.name,
        rotation="10 MB",
        retention="1 week",
        compression="zip",
        format=FILE_FORMAT,
        level="DEBUG",
        backtrace=True,
        diagnose=debug,
    )


__all__ = ["logger", "LOG_DIR", "LOG_FILE", "setup_logging"]
