"""
Logging configuration for the sync client
"""
import sys
import logging
from typing import Optional

from loguru import logger

from clinic_sync.core.config import Settings, get_settings


class InterceptHandler(logging.Handler):
    """
    Route standard library log records into loguru
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find the frame that issued the logging call
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(settings: Optional[Settings] = None):
    """
    Configure loguru sinks and send stdlib logging through them
    """
    settings = settings or get_settings()

    # Remove default logger
    logger.remove()

    # Console logging with appropriate level
    logger.add(
        sys.stderr,
        format=settings.log_format,
        level=settings.log_level,
        colorize=settings.environment == "development",
        backtrace=True,
        diagnose=settings.environment == "development",
    )

    # File logging if specified
    if settings.log_file:
        logger.add(
            settings.log_file,
            format=settings.log_format,
            level=settings.log_level,
            rotation=settings.log_rotation,
            retention=settings.log_retention,
            compression="gz",
            backtrace=True,
            diagnose=False,
        )

    # Structured logging for production
    if settings.environment == "production":
        logger.add(
            sys.stdout,
            level=settings.log_level,
            serialize=True,
            backtrace=False,
            diagnose=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("websockets").setLevel(logging.WARNING)

    logger.info(f"Logging configured for {settings.environment} environment")
