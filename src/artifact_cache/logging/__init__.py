from __future__ import annotations

import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import IO, List, Optional

from artifact_cache.config.models import FileLoggingSettings, LoggingSettings

LOG_FORMAT = "[%(asctime)s][%(levelname)s][%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# watchdog logs every raw inotify event at DEBUG.
_NOISY_LOGGERS = ("watchdog",)


def _resolve_level(name: str) -> int:
    level = logging.getLevelNamesMapping().get(name.strip().upper())
    if level is None:
        raise ValueError(f"Invalid logging level: {name}")
    return level


def _daily_file_handler(settings: FileLoggingSettings) -> Optional[logging.Handler]:
    path = Path(settings.path.strip())
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = TimedRotatingFileHandler(
            path,
            when="midnight",
            backupCount=settings.rotation.backup_count,
            encoding="utf-8",
        )
    except OSError:
        logging.getLogger(__name__).error("Cannot open log file, logging to stream only. path=%s", path, exc_info=True)
        return None
    handler.suffix = "%Y-%m-%d"
    return handler


def init_logging(settings: LoggingSettings, *, stream: Optional[IO[str]] = None) -> None:
    """
    Configure the root logger for command line use.

    Existing root handlers are replaced, so calling this twice is safe. A daily
    rotating file handler is added when ``settings.file.path`` is set.
    """
    level = _resolve_level(settings.level)

    handlers: List[logging.Handler] = [logging.StreamHandler(stream)]
    if settings.file.path.strip():
        file_handler = _daily_file_handler(settings.file)
        if file_handler is not None:
            handlers.append(file_handler)

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.setLevel(level)
    for handler in handlers:
        root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.INFO))


__all__ = ["LOG_FORMAT", "init_logging"]
