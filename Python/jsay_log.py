"""
jsay - logging set-up

The verbosity chosen on the command line is passed to configure_logging()
once at start-up. Only the "jsay" logger hierarchy is touched; the root
logger and other libraries' loggers keep their own settings.
"""

import logging
import sys
from enum import Enum
from typing import Optional, TextIO

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

LOGGER_NAME = "jsay"
LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


class LogLevel(Enum):
    """Verbosity levels accepted by --verbose."""

    TRACE = TRACE
    DEBUG = logging.DEBUG
    INFO = logging.INFO
    WARN = logging.WARNING
    ERROR = logging.ERROR

    @classmethod
    def parse(cls, text: str) -> "LogLevel":
        return cls[text.strip().upper()]


def configure_logging(level: LogLevel, stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Attach a stderr handler to the jsay logger and set its level.

    Calling this again replaces the handler installed by the previous call.

    Args:
        level: Verbosity for every jsay.* logger
        stream: Where records go (default: sys.stderr)

    Returns:
        The configured "jsay" logger
    """
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_jsay_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._jsay_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    logger.setLevel(level.value)
    return logger


def trace(logger: logging.Logger, msg: str, *args) -> None:
    logger.log(TRACE, msg, *args)
