"""Logging setup for the command-line tool."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from codesign_toolkit.config import LoggingSettings

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATEFMT = "%Y-%m-%dT%H:%M:%S"

_logger = logging.getLogger(__name__)


def configure_logging(settings: LoggingSettings, verbose: bool = False) -> None:
    """Send log records to stderr and, if configured, to a file.

    *verbose* lowers the level to DEBUG regardless of the configured level.
    """
    level = logging.DEBUG if verbose else getattr(logging, settings.level.upper(), logging.INFO)
    formatter = logging.Formatter(_FORMAT, datefmt=_DATEFMT)

    handlers: list[logging.Handler] = []
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    file_error: OSError | None = None
    if settings.file:
        try:
            Path(settings.file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(settings.file)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as exc:
            file_error = exc

    logging.basicConfig(level=level, handlers=handlers, force=True)

    if file_error is not None:
        _logger.warning("Failed to open log file %s: %s", settings.file, file_error)


__all__ = ["configure_logging"]
