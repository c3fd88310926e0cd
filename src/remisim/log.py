# src/remisim/log.py
"""
Logging setup for command-line use.

Library modules only create loggers with `logging.getLogger(__name__)`;
handlers are installed here, by the application.
"""
import logging
import sys

import colorlog

COLOR_FORMAT = "%(log_color)s%(levelname)-8s%(reset)s %(blue)s%(name)s%(reset)s - %(message)s"

LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}


def setup_logging(log_level: str = "INFO", stream=None) -> None:
    """
    Install a colored console handler on the root logger.

    Args:
        log_level: 'DEBUG', 'INFO', 'WARNING' or 'ERROR'
        stream: output stream, stderr by default
    """
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level!r}")

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    handler = colorlog.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(colorlog.ColoredFormatter(COLOR_FORMAT, log_colors=LOG_COLORS, reset=True, style="%"))
    root_logger.addHandler(handler)
