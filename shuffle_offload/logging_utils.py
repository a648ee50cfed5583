"""Structured logging utilities for the shuffle transfer engine."""
from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional, TextIO

LOG_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"
_EXTRA_PREFIX = "_shuffle_"
_LOGGER_NAMESPACE = "shuffle_offload"
_default_level = logging.INFO
_default_stream: Optional[TextIO] = None


class JsonFormatter(logging.Formatter):
    """Simple JSON formatter for shuffle transfer logs."""

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, LOG_TIME_FORMAT),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        for key, value in record.__dict__.items():
            if key.startswith(_EXTRA_PREFIX):
                payload[key[len(_EXTRA_PREFIX):]] = value
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(
    name: str,
    *,
    level: Optional[int] = None,
    log_file: Optional[str] = None,
    max_bytes: int = 20 * 1024 * 1024,
    backup_count: int = 5,
) -> logging.Logger:
    """Configure and return a logger with JSON formatting."""

    logger = logging.getLogger(name)
    logger.setLevel(_default_level if level is None else level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = JsonFormatter()
    stream_handler = logging.StreamHandler(_default_stream or sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if log_file:
        rotating = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
        rotating.setFormatter(formatter)
        logger.addHandler(rotating)

    return logger


def set_default_level(level: int) -> None:
    """Apply *level* to every package logger, including ones created later."""

    global _default_level
    _default_level = level
    for logger in _package_loggers():
        logger.setLevel(level)


def set_default_stream(stream: Optional[TextIO]) -> Optional[TextIO]:
    """Send package log output to *stream* (``None`` means stdout).

    Existing package loggers are re-pointed too. Returns the previous stream.
    """

    global _default_stream
    previous = _default_stream
    _default_stream = stream
    for logger in _package_loggers():
        for handler in logger.handlers:
            if type(handler) is logging.StreamHandler:
                handler.setStream(stream or sys.stdout)
    return previous


def _package_loggers():
    for name, logger in list(logging.Logger.manager.loggerDict.items()):
        if name.startswith(_LOGGER_NAMESPACE) and isinstance(logger, logging.Logger):
            yield logger


def log_event(
    logger: logging.Logger,
    message: str,
    *,
    level: int = logging.INFO,
    exc_info: Any = None,
    **fields: Any,
) -> None:
    """Emit a structured log entry; ``None`` valued fields are dropped."""

    extra = {
        f"{_EXTRA_PREFIX}{key}": value for key, value in fields.items() if value is not None
    }
    logger.log(level, message, extra=extra, exc_info=exc_info)


__all__ = [
    "JsonFormatter",
    "setup_logging",
    "set_default_level",
    "set_default_stream",
    "log_event",
    "LOG_TIME_FORMAT",
]
