"""Logging configuration for chatsync.

Provides structured logging with appropriate levels for application
code vs third-party libraries.
"""

import logging
import sys
from typing import Literal

from src.settings import get_settings

# List of noisy third-party loggers to suppress
NOISY_LOGGERS = [
    "httpcore",
    "httpx",
    "asyncio",
]

# Per-logger levels for noisy libraries
NOISY_LOGGER_LEVELS: dict[str, int] = {
    "httpcore": logging.WARNING,
}


def suppress_noisy_loggers() -> None:
    """Suppress noisy third-party loggers.

    Call this after importing libraries that configure their own logging.
    """
    for logger_name in NOISY_LOGGERS:
        logger = logging.getLogger(logger_name)
        level = NOISY_LOGGER_LEVELS.get(logger_name, logging.WARNING)
        logger.setLevel(level)
        # Clear any handlers added by the library
        logger.handlers.clear()


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] | None = None,
) -> None:
    """Configure application logging.

    Sets up logging with:
    - Application logs at configured level
    - Third-party library logs suppressed to WARNING+
    - Clean console output format

    Args:
        level: Override log level (defaults to settings.log_level or INFO)
    """
    settings = get_settings()
    log_level = level or getattr(settings, "log_level", "INFO")

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # Capture all, filter at handler level

    # Remove existing handlers
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(getattr(logging, log_level))

    formatter = logging.Formatter(
        "%(levelname)s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Set application loggers to configured level
    for app_logger in ["src", "chatsync"]:
        logging.getLogger(app_logger).setLevel(getattr(logging, log_level))

    suppress_noisy_loggers()

