"""Logging helpers.

Everything logs to ``calmwave.log`` under the data directory's ``Logs`` folder.
Long-running commands such as ``monitor`` also echo records to stderr so the
live feature line on stdout stays readable.
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler

LOGGER_NAME = "calmwave"
LOG_FILE = "calmwave.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_BYTES = 2_000_000
LOG_BACKUPS = 3


def _has_console(logger: logging.Logger) -> bool:
    return any(
        type(h) is logging.StreamHandler and h.stream is sys.stderr for h in logger.handlers
    )


def setup_logging(
    log_dir: str = "Logs",
    level: int | str = logging.INFO,
    console: bool = False,
) -> tuple[logging.Logger, str]:
    """Attach the rotating file handler (and optionally a console one) once."""
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, LOG_FILE)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper() if isinstance(level, str) else level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        handler = RotatingFileHandler(log_path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    if console and not _has_console(logger):
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(formatter)
        logger.addHandler(stream)

    return logger, log_path


def close_logging() -> None:
    """Detach and close every handler added by ``setup_logging``."""
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
