"""
Logging Configuration for the Stat Tracker persistence layer

The hosting server calls ``setup_logging`` once at startup. Modules only ever
call ``logging.getLogger(__name__)``; this module decides where records go:

- Console: colored level names, level chosen by the caller
- logs/stat_tracker.log: INFO and above
- logs/stat_tracker_debug.log: everything
- logs/stat_tracker_error.log: ERROR and above

File handlers rotate at ``max_bytes`` (10MB by default) keeping
``backup_count`` old files.

Storage drivers and transactions log every statement at DEBUG and every
connection at INFO. ``setup_database_logging`` quiets just those loggers;
``DatabaseLifecycleManager`` applies it from
``PersistenceSettings.database_log_level``.

Usage Example:
    from stat_tracker.logging_config import setup_logging

    setup_logging(level="INFO", log_dir="logs")
    settings = PersistenceSettings.load("config/persistence.json")
    manager = DatabaseLifecycleManager(settings)
"""

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Dict, Optional


DETAILED_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - "
    "[%(filename)s:%(lineno)d] - %(funcName)s() - %(message)s"
)

SIMPLE_FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"

CONSOLE_FORMAT = "%(levelname)s - %(name)s - %(message)s"

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_FILE_PREFIX = "stat_tracker"

# suffix -> (level, format); None means the caller's chosen format
FILE_HANDLERS = (
    ("", logging.INFO, None),
    ("_debug", logging.DEBUG, DETAILED_FORMAT),
    ("_error", logging.ERROR, DETAILED_FORMAT),
)

DATABASE_LOGGERS = (
    "stat_tracker.database.drivers",
    "stat_tracker.database.transaction_context",
    "stat_tracker.database.schema",
)


class ColoredFormatter(logging.Formatter):
    """Console formatter that wraps the level name in an ANSI color."""

    COLORS: Dict[str, str] = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def format(self, record):
        # the record is shared with the file handlers
        plain = record.levelname
        color = self.COLORS.get(plain)
        if color:
            record.levelname = f"{color}{plain}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = plain


def _level(name: str) -> int:
    return getattr(logging, name.upper())


def _rotating_handler(
    log_dir: str,
    suffix: str,
    level: int,
    log_format: str,
    max_bytes: int,
    backup_count: int
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        filename=os.path.join(log_dir, f"{LOG_FILE_PREFIX}{suffix}.log"),
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(log_format, datefmt=DATE_FORMAT))
    return handler


def setup_logging(
    level: str = "INFO",
    log_dir: str = "logs",
    enable_console: bool = True,
    enable_file: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
    format_style: str = "detailed"
) -> None:
    """
    Replace the root logger's handlers with console and rotating file output.

    Args:
        level: Root and console level name
        log_dir: Directory for the three log files (created if needed)
        enable_console: Add the colored console handler
        enable_file: Add the rotating file handlers
        max_bytes: Rotation size per file
        backup_count: Rotated files kept per log
        format_style: "detailed" (file/line/function) or "simple" for the main log
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_level(level))
    root_logger.handlers.clear()

    if enable_console:
        console = logging.StreamHandler()
        console.setLevel(_level(level))
        console.setFormatter(ColoredFormatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))
        root_logger.addHandler(console)

    if enable_file:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        main_format = DETAILED_FORMAT if format_style == "detailed" else SIMPLE_FORMAT
        for suffix, handler_level, handler_format in FILE_HANDLERS:
            root_logger.addHandler(_rotating_handler(
                log_dir,
                suffix,
                handler_level,
                handler_format or main_format,
                max_bytes,
                backup_count
            ))

    root_logger.info(
        f"Logging initialized - Level: {level}, "
        f"Console: {enable_console}, File: {enable_file}"
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_exception(
    logger: logging.Logger,
    exception: Exception,
    context: Optional[dict] = None,
    level: str = "ERROR"
) -> None:
    """
    Log ``exception`` with its traceback, prefixed by ``key=value`` context.

    Example:
        >>> try:
        ...     await repository.save(uid, name, stats)
        ... except PersistenceError as e:
        ...     log_exception(logger, e, context={"player_uid": uid})
    """
    suffix = ""
    if context:
        suffix = " [" + ", ".join(f"{k}={v}" for k, v in context.items()) + "]"

    logger.log(
        _level(level),
        f"Exception occurred{suffix}: {type(exception).__name__}: {exception}",
        exc_info=True
    )


def configure_module_logger(
    module_name: str,
    level: Optional[str] = None,
    propagate: bool = True
) -> logging.Logger:
    """
    Set the level (None keeps the inherited one) and propagation of one logger.

    Returns:
        The configured logger
    """
    logger = logging.getLogger(module_name)
    if level:
        logger.setLevel(_level(level))
    logger.propagate = propagate
    return logger


def setup_database_logging(level: str = "WARNING") -> None:
    """
    Set the level of the statement-level database loggers.

    Only drivers, transactions and schema are affected, so lifecycle state
    changes keep flowing at the root level.
    """
    for name in DATABASE_LOGGERS:
        configure_module_logger(name, level=level)
