"""
Loguru configuration shared by the API and the pipeline workers.

Context passed as keyword arguments (``logger.info("...", batch_id=...)``)
lands in ``record["extra"]`` and is rendered after the message.
"""

import sys
from loguru import logger

from .config import settings

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - "
    "<level>{message}</level> {extra}"
)


def setup_logging(level: str | None = None):
    """
    Replace loguru's default sink with a single stderr sink.

    Args:
        level: Log level override (defaults to LOG_LEVEL setting)

    Returns:
        The configured loguru logger
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or settings.log_level).upper(),
        format=LOG_FORMAT,
        backtrace=False,
        diagnose=False,
    )
    return logger
