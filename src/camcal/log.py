"""
Logging utilities for camcal.

All modules log through child loggers of the 'camcal' root logger:

    from camcal.log import get_logger
    logger = get_logger(__name__)

Handlers are installed once by the application (see cli.py) through
setup_logger(); library code never configures handlers itself.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional, Union

ROOT_LOGGER_NAME = "camcal"

MAX_LOG_BYTES = 5 * 1024 * 1024   # 5MB
BACKUP_COUNT = 3

_LOG_FORMAT = "%(levelname)s | %(asctime)s | %(name)s | %(threadName)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_initialized = False


class ColoredFormatter(logging.Formatter):
    """Formatter that colours the level name for terminal output."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record):
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{record.levelname}{self.RESET}"
        return super().format(record)


def setup_logger(
    level: int = logging.INFO,
    log_file: Optional[Union[str, Path]] = None,
    use_color: bool = True,
) -> logging.Logger:
    """
    Configure the 'camcal' root logger. Call once at application start.

    Args:
        level: Console log level
        log_file: Optional path of a rotating log file (always at DEBUG)
        use_color: Colour the console level names

    Returns:
        The configured root logger
    """
    global _initialized

    logger = logging.getLogger(ROOT_LOGGER_NAME)

    if _initialized:
        set_log_level(level)
        return logger

    logger.setLevel(logging.DEBUG if log_file else level)
    logger.propagate = False

    formatter_cls = ColoredFormatter if use_color else logging.Formatter
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter_cls(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(stream_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=MAX_LOG_BYTES,
            backupCount=BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT))
        logger.addHandler(file_handler)

    _initialized = True
    return logger


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """
    Get a child logger of the 'camcal' root logger.

    Module names already inside the package ('camcal.estimator') are used
    as-is; anything else is nested below the root ('cli' -> 'camcal.cli').
    """
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def set_log_level(level: int) -> None:
    """Change the console log level at runtime. File handlers keep DEBUG."""
    root = logging.getLogger(ROOT_LOGGER_NAME)
    has_file = False
    for handler in root.handlers:
        if isinstance(handler, logging.handlers.RotatingFileHandler):
            has_file = True
            continue
        handler.setLevel(level)
    root.setLevel(logging.DEBUG if has_file else level)
