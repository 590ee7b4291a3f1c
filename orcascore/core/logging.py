"""Logging for the OrcaScore backend.

Everything logs under the ``orcascore`` logger tree. ``setup_logging`` is
called once by the process entry point; library code only calls
``get_logger``.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from orcascore.core.config import Settings, get_settings

ROOT_LOGGER = "orcascore"

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_configured = False


def _file_handler(settings: Settings, formatter: logging.Formatter) -> RotatingFileHandler:
    log_path = Path(settings.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_path,
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(formatter)
    return handler


def setup_logging(settings: Settings | None = None) -> logging.Logger:
    """Attach the stderr and rotating-file handlers to ``orcascore``. Idempotent.

    ``settings.log_file`` may be empty to log to stderr only.
    """
    global _configured
    logger = logging.getLogger(ROOT_LOGGER)
    if _configured:
        return logger

    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)
    logger.propagate = False

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)

    if settings.log_file:
        logger.addHandler(_file_handler(settings, formatter))

    _configured = True
    logger.info("Logging initialised (level=%s, file=%s)", settings.log_level, settings.log_file or "-")
    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Child logger of ``orcascore``; ``name`` may already carry the prefix."""
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
