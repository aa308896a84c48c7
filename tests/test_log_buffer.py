"""
tests/test_log_buffer.py — In-Memory Log Capture
==================================================
"""

from __future__ import annotations

import logging

import pytest

from huddle.services import log_buffer
from huddle.services.log_buffer import BufferHandler, LogBuffer, LogEntry


def _entry(level: str, logger: str = "huddle.test", message: str = "m") -> LogEntry:
    return LogEntry(timestamp="2026-01-01T00:00:00+00:00", level=level, logger=logger, message=message)


@pytest.fixture
def isolated_logger():
    """A private logger wired to a fresh buffer."""
    buffer = LogBuffer(capacity=5)
    handler = BufferHandler(buffer, level=logging.DEBUG)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger = logging.getLogger("huddle.tests.buffer")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    logger.addHandler(handler)
    yield logger, handler, buffer
    logger.removeHandler(handler)


@pytest.fixture
def restore_root_handlers():
    before = list(logging.getLogger().handlers)
    yield
    for handler in list(logging.getLogger().handlers):
        if handler not in before:
            logging.getLogger().removeHandler(handler)


class TestLogBuffer:
    def test_capacity_keeps_newest(self):
        buffer = LogBuffer(capacity=3)
        for i in range(5):
            buffer.append(_entry("INFO", message=str(i)))
        assert len(buffer) == 3
        assert [e["message"] for e in buffer.tail(10)] == ["2", "3", "4"]

    def test_tail_filters(self):
        buffer = LogBuffer()
        buffer.append(_entry("DEBUG", "huddle.api"))
        buffer.append(_entry("WARNING", "huddle.api"))
        buffer.append(_entry("ERROR", "sqlalchemy.engine"))

        assert [e["level"] for e in buffer.tail(min_level="warning")] == ["WARNING", "ERROR"]
        assert [e["logger"] for e in buffer.tail(logger_prefix="huddle")] == ["huddle.api", "huddle.api"]
        assert len(buffer.tail(1)) == 1

    def test_unknown_min_level_means_everything(self):
        buffer = LogBuffer()
        buffer.append(_entry("DEBUG"))
        assert len(buffer.tail(min_level="chatty")) == 1

    def test_clear(self):
        buffer = LogBuffer()
        buffer.append(_entry("INFO"))
        buffer.clear()
        assert buffer.tail() == []


class TestBufferHandler:
    def test_records_are_captured(self, isolated_logger):
        logger, _, buffer = isolated_logger
        logger.info("user %s joined", 7)
        entries = buffer.tail()
        assert entries[-1]["message"] == "user 7 joined"
        assert entries[-1]["level"] == "INFO"
        assert entries[-1]["logger"] == "huddle.tests.buffer"

    def test_handler_level_filters(self, isolated_logger):
        logger, handler, buffer = isolated_logger
        handler.setLevel(logging.WARNING)
        logger.info("quiet")
        logger.warning("loud")
        assert [e["message"] for e in buffer.tail()] == ["loud"]


class TestCaptureLevel:
    def test_set_and_get(self, restore_root_handlers):
        assert log_buffer.set_capture_level("debug") == "DEBUG"
        assert log_buffer.get_capture_level() == "DEBUG"
        log_buffer.set_capture_level("ERROR")
        assert log_buffer.get_capture_level() == "ERROR"
        handlers = [h for h in logging.getLogger().handlers if isinstance(h, BufferHandler)]
        assert len(handlers) == 1

    @pytest.mark.parametrize("bad", ["LOUD", "", "trace"])
    def test_invalid_level_rejected(self, bad):
        with pytest.raises(ValueError, match="Invalid level"):
            log_buffer.set_capture_level(bad)

    def test_get_logs_reads_shared_buffer(self):
        shared = log_buffer.get_buffer()
        shared.append(_entry("ERROR", "huddle.admin", "disk full"))
        assert log_buffer.get_logs(tail=1, level="ERROR", logger_filter="huddle.admin")[-1]["message"] == "disk full"
