"""Logging configuration."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> | <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{line} | {thread.name} | {message}"


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    file_level: str = "DEBUG",
):
    """
    Replace loguru's default sink.

    Args:
        log_level: Console level
        log_file: Optional path for a rotating file sink
        file_level: Level for the file sink (per-frame detail is DEBUG)
    """
    logger.remove()

    logger.add(sys.stderr, level=log_level.upper(), format=CONSOLE_FORMAT, colorize=True)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        # enqueue: worker contexts log from their own threads
        logger.add(
            log_file,
            level=file_level.upper(),
            format=FILE_FORMAT,
            rotation="10 MB",
            retention="7 days",
            enqueue=True,
        )
