"""Tests for codesign_toolkit.logging_utils."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from codesign_toolkit.config import LoggingSettings
from codesign_toolkit.logging_utils import configure_logging

pytestmark = pytest.mark.usefixtures("restore_logging")


def test_level_from_settings() -> None:
    configure_logging(LoggingSettings(level="warning"))
    assert logging.getLogger().level == logging.WARNING


def test_verbose_forces_debug() -> None:
    configure_logging(LoggingSettings(level="ERROR"), verbose=True)
    assert logging.getLogger().level == logging.DEBUG


def test_unknown_level_means_info() -> None:
    configure_logging(LoggingSettings(level="chatty"))
    assert logging.getLogger().level == logging.INFO


def test_file_handler(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "codesign.log"
    configure_logging(LoggingSettings(file=str(log_file)))
    logging.getLogger("codesign_toolkit.test").info("hello file")
    for handler in logging.getLogger().handlers:
        handler.flush()

    line = log_file.read_text().strip()
    assert line.endswith("| INFO | codesign_toolkit.test | hello file")


def test_unwritable_file_is_a_warning(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    configure_logging(LoggingSettings(file=str(blocker / "codesign.log")))
    handlers = logging.getLogger().handlers
    assert not any(isinstance(h, logging.FileHandler) for h in handlers)
