"""Loguru sink configuration."""

import sys
from pathlib import Path

from loguru import logger

_CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def configure_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """Replace the default loguru sink with stderr (and optionally a file).

    Args:
        level: Minimum level for the console sink
        log_file: Optional path for a rotating DEBUG-level file sink
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_CONSOLE_FORMAT)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level="DEBUG",
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )
