from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

_cycle_id_ctx: ContextVar[str | None] = ContextVar("cycle_id", default=None)

_RESERVED_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "service",
    "cycle_id",
}


def generate_cycle_id() -> str:
    return uuid.uuid4().hex[:12]


def get_cycle_id() -> str | None:
    return _cycle_id_ctx.get()


def set_cycle_id(value: str | None):
    """Bind a poll cycle id to the current task context; returns the reset token."""
    return _cycle_id_ctx.set(value)


def reset_cycle_id(token) -> None:
    _cycle_id_ctx.reset(token)


class ContextFilter(logging.Filter):
    def __init__(self, service: str) -> None:
        super().__init__()
        self._service = service

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self._service
        record.cycle_id = getattr(record, "cycle_id", None) or get_cycle_id()
        return True


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "service": getattr(record, "service", None),
            "cycle_id": getattr(record, "cycle_id", None),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        extra = {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}
        if extra:
            payload["extra"] = extra
        return json.dumps(payload, default=str)


def configure_logging(service: str, level: str = "INFO") -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(ContextFilter(service))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())

    # paho logs every PINGREQ at DEBUG; keep it one level above ours.
    logging.getLogger("mqtt").setLevel(max(root.level, logging.INFO))


__all__ = [
    "ContextFilter",
    "JsonLogFormatter",
    "configure_logging",
    "generate_cycle_id",
    "get_cycle_id",
    "reset_cycle_id",
    "set_cycle_id",
]
