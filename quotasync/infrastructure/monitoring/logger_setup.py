"""Logging configuration for the quotasync CLI.

The root logger gets a console handler and, when `logging.file` is set, a
size-rotated file handler. HTTP client chatter is kept at WARNING unless the
CLI itself runs at DEBUG.
"""

import logging
import logging.handlers
import sys
from typing import Iterable, Optional

DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_FILE_MAX_BYTES = 1024 * 1024
LOG_FILE_BACKUPS = 3
NOISY_LOGGERS = ("httpx", "httpcore")

def _rotating_file_handler(log_file: str, formatter: logging.Formatter, log_level: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS, encoding='utf-8'
    )
    handler.setLevel(log_level)
    handler.setFormatter(formatter)
    return handler

def setup_logging(
    log_level: int = DEFAULT_LOG_LEVEL,
    log_format: str = DEFAULT_LOG_FORMAT,
    log_file: Optional[str] = None,
    noisy_loggers: Iterable[str] = NOISY_LOGGERS,
) -> None:
    """Replaces the root logger's handlers.

    Args:
        log_level: Minimum level for the root logger and its handlers.
        log_format: Format string shared by all handlers.
        log_file: Optional path of a log file, rotated at 1 MB.
        noisy_loggers: Third-party loggers held at WARNING unless log_level is DEBUG.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(log_format)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        try:
            root_logger.addHandler(_rotating_file_handler(log_file, formatter, log_level))
        except OSError as e:
            # Falls back to console-only logging
            logging.error(f"Cannot log to {log_file}: {e}")

    for name in noisy_loggers:
        logging.getLogger(name).setLevel(log_level if log_level <= logging.DEBUG else logging.WARNING)

    logging.debug(f"Logging configured. Level={logging.getLevelName(log_level)}")

def level_from_name(name: Optional[str], default: int = DEFAULT_LOG_LEVEL) -> int:
    """'debug' -> logging.DEBUG; unknown names fall back to the default."""
    if not name:
        return default
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else default
