"""Logging for the dbt44 bridge.

Every module does `logger = get_logger(__name__)`. Lines look like:

    [I 14:23:45.123 session  ] Listening for OSC on port 9001
    [D 14:23:45.130 stream   ] OSC unparsed (3 bytes): fffefd (...)

Level comes from the get_logger argument, else $DBT44_LOG_LEVEL, else INFO.
The CLI's --log-level calls set_level() once the module loggers exist.
"""
import logging
import os
import sys
import threading
from typing import Optional

LEVEL_ENV_VAR = "DBT44_LOG_LEVEL"
MODULE_WIDTH = 9

_handler_lock = threading.Lock()


def _resolve_level(level: Optional[str]) -> int:
    """Level name -> logging constant; unknown names mean INFO."""
    if level is None:
        level = os.getenv(LEVEL_ENV_VAR, "INFO")
    return getattr(logging, str(level).upper(), logging.INFO)


class Dbt44Formatter(logging.Formatter):
    """[{level initial} {HH:MM:SS.mmm} {module basename, 9 wide}] {message}"""

    def format(self, record):
        module = record.name.rsplit('.', 1)[-1][:MODULE_WIDTH].ljust(MODULE_WIDTH)
        stamp = f"{self.formatTime(record, '%H:%M:%S')}.{record.msecs:03.0f}"
        line = f"[{record.levelname[0]} {stamp} {module}] {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """Logger for a dbt44 module, with one stdout handler.

    Args:
        name: Usually __name__
        level: DEBUG/INFO/WARNING/ERROR, overrides $DBT44_LOG_LEVEL
    """
    logger = logging.getLogger(name)
    logger.setLevel(_resolve_level(level))

    with _handler_lock:
        if not logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(Dbt44Formatter())
            logger.addHandler(handler)

    return logger


def set_level(level: str) -> None:
    """Apply a level to every dbt44 logger created so far."""
    numeric = _resolve_level(level)
    for name, logger in list(logging.Logger.manager.loggerDict.items()):
        if isinstance(logger, logging.Logger) and (name == "dbt44" or name.startswith("dbt44.")):
            logger.setLevel(numeric)
