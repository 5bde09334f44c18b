"""Logging configuration shared by the CLI and worker processes."""

import sys
from typing import Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", worker_id: Optional[str] = None):
    """Replace loguru's sinks with a single stderr sink."""
    log_format = LOG_FORMAT
    if worker_id:
        log_format = LOG_FORMAT.replace(" - <level>", f" - [{worker_id}] <level>")

    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=log_format)
