"""Tests for process-wide logging setup."""

from __future__ import annotations

import json
import logging
import sys
from unittest.mock import MagicMock, patch

import pytest

from flexscrape.logging_config import _JsonFormatter, _TaskFilter, configure_logging, current_task


@pytest.fixture()
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def _settings(env: str = "local", json_format: bool = False, level: str = "INFO") -> MagicMock:
    settings = MagicMock()
    settings.env = env
    settings.logging.json_format = json_format
    settings.logging.level = level
    return settings


class TestJsonFormatter:
    def test_entry_fields(self) -> None:
        record = logging.LogRecord("flexscrape.x", logging.WARNING, __file__, 1, "Proxy %s down", ("p1",), None)
        entry = json.loads(_JsonFormatter().format(record))
        assert entry["severity"] == "WARNING"
        assert entry["message"] == "Proxy p1 down"
        assert entry["logger"] == "flexscrape.x"
        assert "time" in entry
        assert entry["task"] == "-"

    def test_exception_included(self) -> None:
        try:
            raise ValueError("bad selector")
        except ValueError:
            record = logging.LogRecord("flexscrape.x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
        entry = json.loads(_JsonFormatter().format(record))
        assert "ValueError: bad selector" in entry["exception"]


class TestTaskFilter:
    def test_record_tagged_with_current_task(self) -> None:
        record = logging.LogRecord("flexscrape.x", logging.INFO, __file__, 1, "hi", (), None)
        token = current_task.set("news")
        try:
            assert _TaskFilter().filter(record)
        finally:
            current_task.reset(token)
        assert record.task == "news"
        assert json.loads(_JsonFormatter().format(record))["task"] == "news"


class TestConfigureLogging:
    def test_json_outside_local(self, restore_root_logger) -> None:
        with patch("flexscrape.logging_config.get_settings", return_value=_settings(env="dev")):
            configure_logging()
        assert isinstance(restore_root_logger.handlers[0].formatter, _JsonFormatter)
        assert any(isinstance(f, _TaskFilter) for f in restore_root_logger.handlers[0].filters)
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_explicit_level_wins(self, restore_root_logger) -> None:
        with patch("flexscrape.logging_config.get_settings", return_value=_settings(env="dev", level="INFO")):
            configure_logging("debug")
        assert restore_root_logger.level == logging.DEBUG
