"""Logging utilities for the mail spool service.

Handlers are installed once by the entry point (``main.py`` or the CLI) via
:func:`configure_logging`; modules only ever ask for a named logger.

Example:
    Typical usage in a module::

        from mail_spool.logger import get_logger

        logger = get_logger("SpoolWorker")
        logger.info("Worker started")
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOG_FILE_PREFIX = "mail-spool-"


def get_logger(name: str = "MailSpool") -> logging.Logger:
    """Retrieve a logger instance.

    No handlers or formatters are configured here; that responsibility lies
    with the application entry point.

    Args:
        name: The logger name. Defaults to "MailSpool".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def log_file_name(day: datetime | None = None) -> str:
    """Return the daily log file name used when file logging is enabled."""
    day = day or datetime.now(timezone.utc)
    return f"{LOG_FILE_PREFIX}{day:%Y%m%d}.log"


def configure_logging(level: str = "INFO", directory: str | None = None) -> Path | None:
    """Configure the root logger for console output and, optionally, a daily file.

    Returns the path of the log file when file logging is enabled. Old files
    in ``directory`` are removed by the retention sweeper.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    log_path: Path | None = None
    if directory:
        log_dir = Path(directory).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / log_file_name()
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=handlers,
        force=True,  # Force reconfiguration to avoid duplicate handlers
    )
    return log_path
