"""Root logger setup shared by the CLI and the web server."""

from __future__ import annotations

import logging
from logging import Logger
from pathlib import Path
from typing import Iterable, List


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Handlers installed by this module carry this attribute so repeated CLI
# invocations in one process (tests, ``serve`` reloads) replace them.
_MANAGED_ATTRIBUTE = "_langbridge_managed"


def configure_logging(level: int = logging.INFO, *, handlers: Iterable[logging.Handler] | None = None) -> Logger:
    """Install *handlers* (or a stderr handler) on the root logger."""

    logger = logging.getLogger()
    logger.setLevel(level)

    for existing in list(logger.handlers):
        if getattr(existing, _MANAGED_ATTRIBUTE, False):
            logger.removeHandler(existing)
            existing.close()

    if handlers is None:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        handlers = [stream_handler]

    for handler in handlers:
        setattr(handler, _MANAGED_ATTRIBUTE, True)
        logger.addHandler(handler)

    return logger


def get_log_file_path(storage_root: Path) -> Path:
    """Return the default path for the application log file."""

    return storage_root / "langbridge.log"


def configure_file_logging(storage_root: Path, level: int = logging.INFO) -> Path:
    """Log to ``storage_root/langbridge.log`` and stderr; return the log path."""

    log_file = get_log_file_path(storage_root)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    handlers: List[logging.Handler] = []
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    handlers.append(file_handler)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(logging.WARNING)
    handlers.append(stream_handler)
    configure_logging(level, handlers=handlers)
    return log_file


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "configure_file_logging",
    "configure_logging",
    "get_log_file_path",
]
