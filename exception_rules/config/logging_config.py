"""
Logging configuration for the exception rule engine.

Library modules call ``get_logger(__name__)``; applications embedding the
engine call ``setup_logging()`` once to attach handlers.
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

from exception_rules.config import settings

ROOT_LOGGER_NAME = "exception_rules"

DETAILED_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for an engine module

    Args:
        name: Logger name, usually ``__name__``

    Returns:
        Named logger
    """
    return logging.getLogger(name)


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Set up and configure the package logger

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
            Falls back to the configured level, or DEBUG in debug mode.

    Returns:
        Configured package logger
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)

    # If logger is already configured, return it
    if logger.handlers:
        return logger

    # Determine log level
    if level:
        log_level = getattr(logging, level.upper(), logging.INFO)
    elif settings.debug_mode:
        log_level = logging.DEBUG
    else:
        log_level = getattr(logging, settings.logging.level, logging.INFO)

    logger.setLevel(log_level)

    simple_formatter = logging.Formatter(settings.logging.format)
    detailed_formatter = logging.Formatter(DETAILED_FORMAT)

    if settings.logging.console_enabled:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(simple_formatter)
        console_handler.setLevel(log_level)
        logger.addHandler(console_handler)

    if settings.logging.file_enabled:
        log_file = settings.ensure_log_dir() / "exception_rules.log"
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=5
        )
        file_handler.setFormatter(detailed_formatter)
        file_handler.setLevel(log_level)
        logger.addHandler(file_handler)

    return logger
