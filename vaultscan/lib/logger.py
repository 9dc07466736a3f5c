"""
Logging for vaultscan.

Library modules log through get_logger(__name__). The command line tools
call setup_logging once; records then reach stderr in the same
"[prefix] message" shape as the tools' own progress lines, so stdout
stays free for reports.
"""

import logging
import os
import sys
from typing import Optional, TextIO

DEFAULT_LEVEL = "WARNING"

# ANSI colours per level, used only on a terminal
LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1;31m",
}
RESET = "\033[0m"


class PrefixFormatter(logging.Formatter):
    """
    Render records as "[module] LEVEL message".

    The prefix is the last part of the logger name (scan_coordinator,
    rpc_client, ...). INFO records carry no level tag.
    """

    def __init__(self, color: bool = False):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        prefix = record.name.rsplit(".", 1)[-1]
        message = record.getMessage()
        if record.levelno != logging.INFO:
            tag = record.levelname
            if self.color and record.levelno in LEVEL_COLORS:
                tag = f"{LEVEL_COLORS[record.levelno]}{tag}{RESET}"
            message = f"{tag} {message}"

        line = f"[{prefix}] {message}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(level: Optional[str] = None, stream: Optional[TextIO] = None) -> logging.Handler:
    """
    Route vaultscan logs to stderr.

    Args:
        level: Level name; defaults to the LOG_LEVEL environment variable,
            then WARNING so progress lines stay readable
        stream: Output stream (stderr)

    Returns:
        The installed handler
    """
    name = (level or os.getenv("LOG_LEVEL") or DEFAULT_LEVEL).upper()
    stream = stream or sys.stderr

    handler = logging.StreamHandler(stream)
    handler.setFormatter(PrefixFormatter(color=hasattr(stream, "isatty") and stream.isatty()))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, name, logging.WARNING))

    # urllib3 logs every connection at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return handler


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
