"""Logging for taskrelay: stderr for the operator, a rotating file per project."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

__all__ = ["setup_logger", "get_logger"]

ROOT_LOGGER = "taskrelay"
CONSOLE_FORMAT = "[%(levelname).1s] %(message)s"
# Scheduler and dispatch threads share the file, so records carry the thread.
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024  # 5MB
LOG_BACKUP_COUNT = 3


def setup_logger(verbose: bool = False,
                 log_file: Union[str, Path, None] = None) -> logging.Logger:
    """Attach handlers to the ``taskrelay`` logger.

    The console shows INFO only when ``verbose``; the file, when given,
    always records INFO so every dispatch and failure can be audited later.
    Calling this again replaces the previous handlers.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_level = logging.INFO if verbose else logging.WARNING
    logger.setLevel(logging.INFO if (verbose or log_file) else logging.WARNING)
    logger.propagate = False

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8",
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)

    logging.getLogger("litellm").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
