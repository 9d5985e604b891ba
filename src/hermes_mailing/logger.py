"""Logging utilities for the mail queue dispatcher.

This module provides a centralized logger lookup. The actual logging setup
(level, handlers, format) is configured once by :func:`configure_logging`
from the CLI entry point to avoid duplicate handlers.

Example:
    Typical usage in a module::

        from hermes_mailing.logger import get_logger

        logger = get_logger("Claimer")
        logger.info("Signed %d entries", claimed)
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "HermesMailing") -> logging.Logger:
    """Retrieve a logger instance.

    This function returns a standard library logger with the specified name.
    It does not configure handlers or formatters; that responsibility lies
    with the application entry point.

    Args:
        name: The logger name. Defaults to "HermesMailing".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for command-line usage.

    Unknown level names fall back to INFO.
    """
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        force=True,
    )
