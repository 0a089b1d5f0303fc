"""Structured logging configuration for the bulletin radar pipeline."""

import logging
import sys
from pathlib import Path
from typing import Optional


DEFAULT_LOG_DIR = Path("logs")
DEFAULT_LOG_FILE = "bulletin_radar.log"
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
ROOT_LOGGER_NAME = "bulletin_radar"


def setup_logging(
    log_file: Optional[Path] = None,
    log_dir: Optional[Path] = None,
    level: int = logging.INFO,
    console: bool = True,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """Attach file and optional stdout handlers to the ``bulletin_radar`` logger.

    A relative ``log_file`` is placed under ``log_dir``. Calling this again
    replaces the handlers installed by the previous call.
    """
    if log_dir is None:
        log_dir = DEFAULT_LOG_DIR

    if log_file is None:
        log_file = log_dir / DEFAULT_LOG_FILE
    elif not log_file.is_absolute():
        log_file = log_dir / log_file

    log_file.parent.mkdir(parents=True, exist_ok=True)

    fmt = format_string or DEFAULT_FORMAT
    formatter = logging.Formatter(fmt, datefmt=DEFAULT_DATE_FORMAT)

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)

    # Re-running setup must not stack handlers
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    if console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        logger.addHandler(console_handler)

    logger.propagate = False

    logger.info(f"Logging initialized: {log_file}")
    return logger


def get_logger(name: str) -> logging.Logger:
    """Child of the package logger, e.g. ``get_logger("runner")``."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
