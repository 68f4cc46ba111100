"""Tests for stage timing."""

import logging

import pytest

from app.core import metrics
from app.core.metrics import timer


class _Capture(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def captured():
    capture = _Capture()
    previous = metrics.logger.level
    metrics.logger.addHandler(capture)
    metrics.logger.setLevel(logging.DEBUG)
    yield capture.records
    metrics.logger.removeHandler(capture)
    metrics.logger.setLevel(previous)


def test_timer_yields_elapsed(captured):
    with timer("Executor - finance", "tenant-1") as timing:
        pass

    assert timing.elapsed_ms >= 0
    record = captured[-1]
    assert record.levelno == logging.DEBUG
    assert record.operation == "Executor - finance"
    assert record.tenant_id == "tenant-1"


def test_timer_logs_when_stage_raises(captured):
    with pytest.raises(RuntimeError):
        with timer("Executor - retrieval", log_level="info"):
            raise RuntimeError("boom")

    assert captured[-1].levelno == logging.INFO


def test_slow_stage_logs_warning(captured):
    with timer("Executor - web search", slow_ms=-1):
        pass

    assert captured[-1].levelno == logging.WARNING
