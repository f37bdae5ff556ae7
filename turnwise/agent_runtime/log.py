"""Logging configuration using loguru.

Execution modules log through stdlib ``logging``; this module routes those
records into loguru so the CLI and embedding applications get one format.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger


class _InterceptHandler(logging.Handler):
    """Bridge stdlib logging records into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk past logging internals so loguru reports the real call-site
        frame = logging.currentframe()
        depth = 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", *, serialize: bool = False) -> None:
    """Configure loguru as the sole logging sink.

    Parameters
    ----------
    level:
        Minimum level name, case-insensitive.
    serialize:
        Emit JSON lines instead of the coloured human format.
    """
    level = level.upper()

    logger.remove()
    if serialize:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(
            sys.stderr,
            level=level,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
                "<level>{message}</level>"
            ),
        )

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    logger.debug("Logging initialised (level={})", level)
