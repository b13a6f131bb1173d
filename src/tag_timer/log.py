"""Logging setup for tag-timer.

Library modules only call ``get_logger``; handlers are installed once by
``setup_logging`` (the CLI does this on startup).
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.logging import RichHandler

ROOT_LOGGER = "tag_timer"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(filename)s:%(lineno)d] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Return a logger under the ``tag_timer`` namespace."""
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def setup_logging(
        level: int = logging.INFO,
        log_dir: Path | None = None,
        console: bool = True,
        max_bytes: int = 5 * 1024 * 1024,
        backup_count: int = 5,
) -> logging.Logger:
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)

    # Console handler, rendered by rich
    console_handler_name = f"{ROOT_LOGGER}:console"
    if console and not any(h.get_name() == console_handler_name for h in logger.handlers):
        console_handler = RichHandler(show_path=False, rich_tracebacks=True)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        console_handler.set_name(console_handler_name)
        logger.addHandler(console_handler)

    # Persistent rotating file handler
    file_handler_name = f"{ROOT_LOGGER}:persistent"
    if log_dir is not None and not any(h.get_name() == file_handler_name for h in logger.handlers):
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            filename=log_dir / f"{ROOT_LOGGER}.log",
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
            delay=True,
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        file_handler.set_name(file_handler_name)
        logger.addHandler(file_handler)

    return logger
