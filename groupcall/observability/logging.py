"""
Structured Logging: JSON Lines with Request-Scoped Context

Provides:
- One JSON object per log line
- Request-scoped fields (session_id, room_id, user_id) via ContextVar
- Record extras passed with logger.info(..., extra={...})
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Iterator, Optional, TextIO, Union


class LogLevel(IntEnum):
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    CRITICAL = 50

    @classmethod
    def parse(cls, value: Union[str, int, LogLevel]) -> LogLevel:
        if isinstance(value, LogLevel):
            return value
        if isinstance(value, int):
            return cls(value)
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"unknown log level {value!r}") from None


_log_context: ContextVar[dict[str, Any]] = ContextVar("groupcall_log_context", default={})

# Attributes every LogRecord carries; anything else came from extra=
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName", "levelname",
    "levelno", "lineno", "module", "msecs", "pathname", "process",
    "processName", "relativeCreated", "stack_info", "exc_info", "exc_text",
    "thread", "threadName", "taskName", "message", "asctime",
})


def current_context() -> dict[str, Any]:
    return dict(_log_context.get())


@contextmanager
def log_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """
    Attach fields to every record logged inside the block.

    Usage:
        with log_context(session_id=sid, user_id=uid):
            logger.info("joining")
    """
    merged = {**_log_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


class JsonFormatter(logging.Formatter):
    """JSON formatter merging context fields and record extras."""

    def format(self, record: logging.LogRecord) -> str:
        data: dict[str, Any] = {
            "@timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        data.update(_log_context.get())

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                data[key] = value

        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)

        return json.dumps(data, default=str)


class ContextFilter(logging.Filter):
    """Copies context fields onto records for plain-text formatters."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = _log_context.get()
        record.ctx = " ".join(f"{k}={v}" for k, v in ctx.items()) if ctx else "-"
        return True


def setup_logging(
    level: Union[LogLevel, str] = LogLevel.INFO,
    json_output: bool = True,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure the root logger.

    Args:
        level: Minimum log level (LogLevel or name such as "DEBUG")
        json_output: Use JSON formatting
        stream: Output stream (default: stderr)
    """
    lvl = LogLevel.parse(level)
    root = logging.getLogger()
    root.setLevel(lvl.value)
    root.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(lvl.value)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.addFilter(ContextFilter())
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(ctx)s | %(message)s"
        ))
    root.addHandler(handler)

    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
