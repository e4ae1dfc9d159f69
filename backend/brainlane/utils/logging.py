"""Loguru sink setup."""

from __future__ import annotations

import sys

from loguru import logger

from brainlane.config import Settings


def configure_logging(settings: Settings) -> None:
    """Replace loguru's default sink with the configured ones."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.log_level.upper(),
        serialize=settings.log_format == "json",
        backtrace=settings.debug,
        diagnose=settings.debug,
    )
    if settings.log_file:
        logger.add(
            settings.log_file,
            level=settings.log_level.upper(),
            serialize=settings.log_format == "json",
            rotation="10 MB",
            retention=5,
        )
    logger.debug("Logging configured: level={} format={}", settings.log_level, settings.log_format)
