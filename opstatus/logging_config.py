"""
OpStatus Console Logging
========================

Colorized console logging for the ``opstatus`` command line tool. Library
code only ever calls ``logging.getLogger(__name__)``; handlers are installed
here, by the entry point.
"""

import logging
import sys
from datetime import datetime
from typing import Optional, Union

import colorama
from colorama import Fore, Style


class StatusLogFormatter(logging.Formatter):
    """Timestamp, colored level and the component-prefixed message."""

    LEVEL_COLORS = {
        logging.DEBUG: Fore.CYAN + Style.DIM,
        logging.INFO: Fore.GREEN,
        logging.WARNING: Fore.YELLOW + Style.BRIGHT,
        logging.ERROR: Fore.RED,
        logging.CRITICAL: Fore.RED + Style.BRIGHT,
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record):
        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]
        level = f"{record.levelname:<8}"
        message = record.getMessage()

        if self.use_color:
            color = self.LEVEL_COLORS.get(record.levelno, Fore.WHITE)
            line = (
                f"{Fore.BLUE}{timestamp}{Style.RESET_ALL} "
                f"{color}{level}{Style.RESET_ALL} "
                f"{Style.DIM}{record.name}{Style.RESET_ALL} {message}"
            )
        else:
            line = f"{timestamp} {level} {record.name} {message}"

        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(level: Union[str, int] = "INFO", use_color: Optional[bool] = None) -> logging.Logger:
    """
    Install the console handler on the ``opstatus`` logger.

    Args:
        level: Level name or number
        use_color: Force color on or off; defaults to whether stderr is a TTY
    """
    if use_color is None:
        use_color = sys.stderr.isatty()
    if use_color:
        colorama.init()

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger("opstatus")
    for handler in list(logger.handlers):
        if getattr(handler, "_opstatus_console", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(StatusLogFormatter(use_color=use_color))
    handler._opstatus_console = True
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger
