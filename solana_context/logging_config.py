"""Logging configuration for the Solana context engine."""

import logging
from typing import Optional

from solana_context.utils.config import LoggingSettings, get_logging_settings


def configure_logging_from_settings(settings: Optional[LoggingSettings] = None) -> None:
    """Configure the root logger from ``LoggingSettings``.

    Existing root handlers are replaced.
    """
    settings = settings or get_logging_settings()

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.LOG_LEVEL)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    formatter = logging.Formatter(settings.LOG_FORMAT, settings.LOG_DATE_FORMAT)

    if settings.LOG_TO_CONSOLE:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    if settings.LOG_FILE:
        file_handler = logging.FileHandler(settings.LOG_FILE)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
