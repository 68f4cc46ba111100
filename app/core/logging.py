"""Structured key=value logging for the orchestration core.

Correlation fields (request_id, tenant_id, user_id, assistant) are rendered
right after the message; any other field passed through ``extra=`` follows.
"""

import logging
import sys
from typing import Any

from pydantic import ValidationError

from app.core.config import get_settings

CORRELATION_FIELDS = ("request_id", "tenant_id", "user_id", "assistant")

# Attributes every LogRecord carries; anything else arrived through extra=
_RECORD_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {
    "message",
    "asctime",
    "extra_data",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """Key=value structured log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key in CORRELATION_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value

        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRS and key not in log_data:
                log_data[key] = value

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            log_data.update(extra_data)

        if record.exc_info:
            log_data["exc"] = self.formatException(record.exc_info).replace("\n", " | ")

        return " ".join(f"{k}={v}" for k, v in log_data.items())


def _level_for_env() -> int:
    try:
        env = get_settings().AI_CORE_ENV
    except ValidationError:
        # Settings incomplete (e.g. no OPENAI_API_KEY yet)
        return logging.INFO
    return logging.DEBUG if env == "dev" else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger writing structured lines to stdout.

    Handlers are attached once per logger name; DEBUG in dev, INFO elsewhere.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter())
        logger.addHandler(handler)
        logger.setLevel(_level_for_env())

    return logger


def log_with_context(logger: logging.Logger, level: int, msg: str, **kwargs: Any) -> None:
    """
    Log with correlation fields promoted onto the record.

    Keys in CORRELATION_FIELDS become record attributes; everything else is
    carried in ``extra_data``.
    """
    extra: dict[str, Any] = {key: kwargs.pop(key) for key in CORRELATION_FIELDS if key in kwargs}
    extra["extra_data"] = kwargs

    logger.log(level, msg, extra=extra)
