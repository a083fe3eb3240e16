"""
Logging utilities for the static IP controller.

All modules obtain their logger through get_logger(__name__), which returns
the shared loguru logger bound to the module name. configure_logging() is
called once at process start (CLI entry point) and replaces loguru's default
sink with one formatted for the selected LogLevel.

Standard library logging (uvicorn, peewee) is routed into loguru via
InterceptHandler so every message ends up in the same sink.
"""

import logging
import sys

from loguru import logger as _logger

from staticip.models.enums import LogLevel


# =============================================================================
# Formats
# =============================================================================

_DEFAULT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - <level>{message}</level>"
)

_FULL_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

_LEVEL_MAP = {
    LogLevel.FULL: "TRACE",
    LogLevel.DEBUG: "DEBUG",
    LogLevel.INFO: "INFO",
    LogLevel.WARNING: "WARNING",
}

_logger.configure(extra={"name": "staticip"})


# =============================================================================
# Standard Library Bridge
# =============================================================================


class InterceptHandler(logging.Handler):
    """Forward standard library log records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = _logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk back to the frame that issued the logging call
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        _logger.bind(name=record.name).opt(
            depth=depth, exception=record.exc_info
        ).log(level, record.getMessage())


# =============================================================================
# Public API
# =============================================================================


def get_logger(name: str):
    """Get a logger bound to the given module name."""
    return _logger.bind(name=name)


def configure_logging(level: LogLevel = LogLevel.INFO, log_file: str = "") -> None:
    """
    Configure the global loguru sinks.

    Args:
        level: Verbosity level.
        log_file: Optional file path for an additional rotating sink.
    """
    level = LogLevel(level)
    loguru_level = _LEVEL_MAP.get(level, "INFO")
    full = level == LogLevel.FULL
    fmt = _FULL_FORMAT if full else _DEFAULT_FORMAT

    _logger.remove()
    _logger.add(
        sys.stderr,
        level=loguru_level,
        format=fmt,
        backtrace=full,
        diagnose=full,
        enqueue=False,
    )
    if log_file:
        _logger.add(
            log_file,
            level=loguru_level,
            format=fmt,
            rotation="50 MB",
            retention=5,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "peewee"):
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False
