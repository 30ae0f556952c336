"""
Logging setup for the relay.

One named logger (``voice_relay``) is shared by every module. Each line carries
the id of the call it belongs to: the telephony handler binds the call id to the
connection's context when the stream starts, and tasks created afterwards
inherit it. Lines logged outside a call show ``-``.

Environment:
    LOG_LEVEL: Level name, INFO by default
    LOG_DIR: Directory of the rotating log file, ``logs`` by default
    LOG_FILE: Full path of the log file, overrides LOG_DIR
    LOG_TO_FILE: Set to 0/false/no to log to stdout only (containers)
"""

import contextvars
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

from voice_relay.config.constants import LOGGER_NAME

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(call_id)s] %(message)s"

LOG_DIR = Path(os.getenv("LOG_DIR", "logs"))
LOG_FILE = Path(os.getenv("LOG_FILE") or LOG_DIR / "voice_relay.log")
LOG_TO_FILE = os.getenv("LOG_TO_FILE", "1").lower() not in ("0", "false", "no")
MAX_LOG_SIZE = 10 * 1024 * 1024  # 10 MB
BACKUP_COUNT = 5

NO_CALL = "-"

current_call_id: contextvars.ContextVar[str] = contextvars.ContextVar("current_call_id", default=NO_CALL)


def bind_call_id(call_id: Optional[str]) -> contextvars.Token:
    """Tag log lines from the current task (and tasks it creates) with ``call_id``."""
    return current_call_id.set(call_id or NO_CALL)


class CallIdFilter(logging.Filter):
    """Fill ``record.call_id`` from the bound call, unless passed via ``extra``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "call_id"):
            record.call_id = current_call_id.get()
        return True


def configure_logging(
    level: str = LOG_LEVEL,
    log_file: Union[str, Path, None] = LOG_FILE,
    to_file: bool = LOG_TO_FILE,
) -> logging.Logger:
    """
    Configure the relay logger: stdout always, a rotating file unless disabled.

    Safe to call more than once; previous handlers are replaced.

    Args:
        level: Level name, unknown names fall back to INFO
        log_file: Path of the rotating log file
        to_file: False to skip the file handler

    Returns:
        logging.Logger: The configured logger instance
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)
    call_filter = CallIdFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(call_filter)
    logger.addHandler(console_handler)

    if to_file and log_file:
        path = Path(log_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(path, maxBytes=MAX_LOG_SIZE, backupCount=BACKUP_COUNT)
        except OSError as e:
            logger.warning(f"Could not set up file logging at {path}: {e}")
        else:
            file_handler.setFormatter(formatter)
            file_handler.addFilter(call_filter)
            logger.addHandler(file_handler)

    logger.propagate = False

    logger.debug(f"Logging configured at {logging.getLevelName(logger.level)}")
    return logger
