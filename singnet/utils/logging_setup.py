"""
Logging Setup module
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

PACKAGE_LOGGER = 'singnet'

CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_FORMAT = (
    '%(asctime)s - %(name)s - %(levelname)s - '
    '%(funcName)s:%(lineno)d - %(message)s'
)


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Get a logger; handlers live on the package logger"""
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    return logger


def setup_console_logging(level: int = logging.INFO) -> logging.Logger:
    """Attach a stderr handler to the package logger (once)"""
    logger = logging.getLogger(PACKAGE_LOGGER)

    for handler in logger.handlers:
        if getattr(handler, 'name', None) == 'singnet-console':
            handler.setLevel(level)
            break
    else:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.set_name('singnet-console')
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        logger.addHandler(console_handler)

    logger.setLevel(min(level, logger.level or level))
    return logger


def setup_file_logging(
    log_file: Path,
    level: int = logging.INFO,
    max_bytes: int = 5 * 1024 * 1024,
    backups: int = 3
) -> logging.Logger:
    """Setup rotating file logging on the package logger"""
    logger = logging.getLogger(PACKAGE_LOGGER)
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)

    for handler in logger.handlers:
        if getattr(handler, 'name', None) == 'singnet-file':
            return logger

    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=max_bytes, backupCount=backups, encoding='utf-8'
    )
    file_handler.set_name('singnet-file')
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
    logger.addHandler(file_handler)
    logger.setLevel(min(level, logger.level or level))

    return logger


def set_logging_level(level: str = "INFO"):
    """Set logging level for the package logger and its handlers"""
    log_level = getattr(logging, str(level).upper(), logging.INFO)
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(log_level)
    for handler in logger.handlers:
        handler.setLevel(log_level)
