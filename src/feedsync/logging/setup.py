"""Logging setup for the feedsync service and its scheduler."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "feedsync"
LOG_FILENAME = f"{LOGGER_NAME}.log"
FILE_FORMAT = "%(asctime)s %(process)08x %(levelname).1s %(name)s %(message)s"
CONSOLE_FORMAT = "%(levelname).1s %(name)s: %(message)s"
MAX_BYTES = 2 * 1024 * 1024
BACKUP_COUNT = 5

# Third-party loggers routed into the feedsync log file. httpx logs one INFO line per request,
# which would drown per-account outcomes during a fetch run.
LIBRARY_LOGGERS = ("apscheduler", "httpx", "httpcore")
LIBRARY_MIN_LEVEL = logging.WARNING


def configure_logging(
    log_path: Path | None = None,
    level: str = "INFO",
    mirror_to_console: bool = True,
) -> logging.Logger:
    """Configure the ``feedsync`` logger and return it.

    Every module logs through a child of ``feedsync`` (``logging.getLogger(__name__)``), so the
    handlers installed here receive pipeline, media and lease events alike. Scheduler and HTTP
    library loggers share the file handler but never log below ``WARNING``.

    Calling this again replaces the previously installed handlers.
    """

    numeric_level = _normalize_level(level)
    file_path = _resolve_log_path(log_path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        file_path,
        maxBytes=MAX_BYTES,
        backupCount=BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))

    handlers: list[logging.Handler] = [file_handler]
    if mirror_to_console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        handlers.append(stream_handler)

    logger = _install(LOGGER_NAME, handlers, numeric_level)
    for name in LIBRARY_LOGGERS:
        _install(name, [file_handler], max(numeric_level, LIBRARY_MIN_LEVEL))
    return logger


def reset_logging() -> None:
    """Detach and close every handler installed by :func:`configure_logging`."""

    for name in (LOGGER_NAME, *LIBRARY_LOGGERS):
        _detach(logging.getLogger(name))


def _install(name: str, handlers: list[logging.Handler], level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    _detach(logger)
    logger.setLevel(level)
    logger.propagate = False
    for handler in handlers:
        logger.addHandler(handler)
    return logger


def _detach(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def _normalize_level(level: str) -> int:
    candidate = level.strip().upper()
    if candidate == "WARN":
        candidate = "WARNING"
    numeric = logging.getLevelName(candidate)
    if not isinstance(numeric, int):
        raise ValueError(f"Unsupported log level: {level!r}")
    return numeric


def _resolve_log_path(log_path: Path | None) -> Path:
    """Resolve the log file; a directory or suffix-less path gets ``feedsync.log`` inside it."""

    if log_path is None:
        return Path.cwd() / LOG_FILENAME

    candidate = log_path if log_path.is_absolute() else Path.cwd() / log_path
    if candidate.is_dir() or candidate.suffix == "":
        return candidate / LOG_FILENAME
    return candidate
