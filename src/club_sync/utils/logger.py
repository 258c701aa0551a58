"""
Logging setup for Club Sync.

One console handler, picked by ``LoggingConfig.format``, plus an optional
rotating file. Every record is stamped with the id of the process run so
the lines of overlapping scheduled runs can be told apart in a shared file
or JSON stream.

Usage:
    setup_logging(settings.logging, level="DEBUG")
    logger = get_logger(__name__)
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from logging.handlers import RotatingFileHandler
from typing import Callable

from rich.console import Console
from rich.logging import RichHandler

from club_sync.config import LoggingConfig


# Global console for rich output
console = Console(stderr=True)

# Package logger
logger = logging.getLogger("club_sync")

# Attributes every LogRecord carries; anything else was passed via ``extra``.
_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that log every request at INFO.
_QUIET_LOGGERS = ("httpx", "httpcore")


class RunContextFilter(logging.Filter):
    """Stamp ``run_id`` on records that do not carry one."""

    def __init__(self, run_id: str) -> None:
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run_id"):
            record.run_id = self.run_id
        return True


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Fields passed through ``extra=`` or stamped by RunContextFilter
        for key, value in vars(record).items():
            if key not in _RESERVED and not key.startswith("_"):
                log_data[key] = value

        return json.dumps(log_data, default=str)


def _rich_handler() -> logging.Handler:
    handler = RichHandler(console=console, rich_tracebacks=True, show_path=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def _json_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    return handler


def _simple_handler() -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)-8s | %(message)s", datefmt=_DATEFMT)
    )
    return handler


CONSOLE_HANDLERS: dict[str, Callable[[], logging.Handler]] = {
    "rich": _rich_handler,
    "json": _json_handler,
    "simple": _simple_handler,
}


def _file_handler(config: LoggingConfig) -> logging.Handler:
    config.file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        config.file,
        maxBytes=config.max_file_size_mb * 1024 * 1024,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s | %(run_id)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt=_DATEFMT,
        )
    )
    return handler


def setup_logging(
    config: LoggingConfig,
    level: str | None = None,
    run_id: str | None = None,
) -> str:
    """
    Configure the package logger from ``config``.

    Args:
        config: Logging section of the settings
        level: Overrides ``config.level`` (``--verbose`` / ``--quiet``)
        run_id: Id stamped on every record; generated when omitted

    Returns:
        The run id in use
    """
    run_id = run_id or uuid.uuid4().hex[:12]
    log_level = getattr(logging, (level or config.level).upper(), logging.INFO)

    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.setLevel(log_level)
    logger.propagate = False

    handlers = [CONSOLE_HANDLERS.get(config.format, _simple_handler)()]
    if config.file is not None:
        handlers.append(_file_handler(config))

    context = RunContextFilter(run_id)
    for handler in handlers:
        handler.setLevel(log_level)
        handler.addFilter(context)
        logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    return run_id


def get_logger(name: str = "club_sync") -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)
