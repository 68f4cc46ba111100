"""Tests for structured log formatting."""

import logging
import sys

from app.core.logging import StructuredFormatter, get_logger, log_with_context


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


def test_formatter_promotes_correlation_fields():
    record = logging.LogRecord("ai", logging.INFO, __file__, 1, "Planned market_analysis", None, None)
    record.tenant_id = "tenant-1"
    record.extra_data = {"sections": 7}

    line = StructuredFormatter().format(record)

    assert "level=INFO" in line
    assert "message=Planned market_analysis" in line
    assert "tenant_id=tenant-1" in line
    assert "sections=7" in line


def test_log_with_context_splits_fields():
    logger = get_logger("tests.log_with_context")
    capture = _Capture()
    logger.addHandler(capture)
    try:
        log_with_context(logger, logging.WARNING, "Quota denied", tenant_id="t1", user_id="u1", planned=500)
    finally:
        logger.removeHandler(capture)

    record = capture.records[0]
    assert record.tenant_id == "t1"
    assert record.user_id == "u1"
    assert record.extra_data == {"planned": 500}
    assert not hasattr(record, "request_id")


def test_get_logger_configures_once():
    first = get_logger("tests.configure_once")
    second = get_logger("tests.configure_once")
    assert first is second
    assert len(first.handlers) == 1


def test_formatter_renders_plain_extra_fields():
    logger = get_logger("tests.plain_extra")
    capture = _Capture()
    logger.addHandler(capture)
    try:
        logger.info("Generated 3 embeddings", extra={"model": "text-embedding-3-small", "count": 3})
    finally:
        logger.removeHandler(capture)

    line = StructuredFormatter().format(capture.records[0])

    assert "model=text-embedding-3-small" in line
    assert "count=3" in line
    assert "tenant_id=" not in line


def test_formatter_keeps_exceptions_on_one_line():
    try:
        raise RuntimeError("provider down")
    except RuntimeError:
        record = logging.LogRecord("ai", logging.ERROR, __file__, 1, "Search failed", None, sys.exc_info())

    line = StructuredFormatter().format(record)

    assert "\n" not in line
    assert "RuntimeError: provider down" in line
