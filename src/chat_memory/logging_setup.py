"""Loguru sink configuration for hosts that do not configure logging."""

from __future__ import annotations

import os
import sys

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | {message}"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{name}:{function}:{line} | {message}"
)


def configure_logging(level: str | None = None, log_file: str | None = None) -> None:
    """Replace loguru's default handler.

    Args:
        level: Console level; defaults to ``$LOG_LEVEL`` or INFO.
        log_file: Optional path for a rotating DEBUG-level file sink.
    """
    if level is None:
        level = os.environ.get("LOG_LEVEL", "INFO").upper()

    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, colorize=True)

    if log_file:
        logger.add(
            log_file,
            rotation="10 MB",
            retention="30 days",
            level="DEBUG",
            format=FILE_FORMAT,
            backtrace=True,
            diagnose=False,
        )
