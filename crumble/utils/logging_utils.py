"""
Logging setup helpers

The library itself never installs handlers; hosts call configure_logging()
once at startup if they want crumble's diagnostics on a stream.
"""

import logging
import sys
from typing import Optional, TextIO

from .config import LoggingConfig
from .structured_logging import JSONFormatter

LIBRARY_LOGGER = "crumble"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logging.getLogger(LIBRARY_LOGGER).addHandler(logging.NullHandler())


def configure_logging(
    config: Optional[LoggingConfig] = None,
    stream: Optional[TextIO] = None
) -> logging.Handler:
    """
    Attach a stream handler to the library logger

    Args:
        config: Logging configuration (defaults to LoggingConfig())
        stream: Target stream (defaults to sys.stderr)

    Returns:
        The installed handler, so callers can remove it again
    """
    config = config or LoggingConfig()
    library_logger = logging.getLogger(LIBRARY_LOGGER)

    level_name = str(config.log_level).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.WARNING

    handler = logging.StreamHandler(stream or sys.stderr)
    if config.log_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))

    library_logger.addHandler(handler)
    library_logger.setLevel(level)

    if not isinstance(logging.getLevelName(level_name), int):
        library_logger.warning(
            "Invalid log level '%s'; defaulting to WARNING", config.log_level
        )

    return handler
