"""Tests for structured logging utilities."""

import json
import logging
import sys

import pytest

from config.settings import LoggingSettings
from src.utils.logging import (
    InstanceContext,
    JSONFormatter,
    bind_instance_id,
    configure_logging,
    get_instance_id,
)


def make_record(msg="Resume token saved", exc_info=None, **extra):
    record = logging.LogRecord("cafe_sync.test", logging.INFO, __file__, 10, msg, (), exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    level = root.level
    handlers = list(root.handlers)
    yield root
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
    root.setLevel(level)


class TestJSONFormatter:
    """Test JSONFormatter."""

    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["message"] == "Resume token saved"
        assert data["level"] == "INFO"
        assert data["logger"] == "cafe_sync.test"
        assert "instance_id" not in data

    def test_extra_fields_included(self):
        data = json.loads(JSONFormatter().format(make_record(token_id="change-stream-resume-token", attempt=2)))

        assert data["token_id"] == "change-stream-resume-token"
        assert data["attempt"] == 2

    def test_instance_context(self):
        with InstanceContext("worker-1"):
            data = json.loads(JSONFormatter().format(make_record()))

        assert data["instance_id"] == "worker-1"
        assert get_instance_id() is None

    def test_bind_instance_id(self):
        bind_instance_id("worker-2")
        try:
            assert get_instance_id() == "worker-2"
        finally:
            bind_instance_id(None)

    def test_exception_included(self):
        try:
            raise RuntimeError("write failed")
        except RuntimeError:
            record = make_record(exc_info=sys.exc_info())

        data = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: write failed" in data["exception"]


class TestLoggerSetup:
    """Test configure_logging."""

    def test_configure_logging_replaces_handler(self, root_logger):
        configure_logging(LoggingSettings(level="DEBUG"))
        configure_logging(LoggingSettings(level="WARNING", json_format=False))

        handlers = [h for h in root_logger.handlers if getattr(h, "_cafe_sync_handler", False)]
        assert len(handlers) == 1
        assert not isinstance(handlers[0].formatter, JSONFormatter)
        assert root_logger.level == logging.WARNING

    def test_configure_logging_json(self, root_logger):
        configure_logging(LoggingSettings(level="INFO", json_format=True))

        handlers = [h for h in root_logger.handlers if getattr(h, "_cafe_sync_handler", False)]
        assert isinstance(handlers[0].formatter, JSONFormatter)
