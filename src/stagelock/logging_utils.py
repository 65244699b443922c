from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from decimal import Decimal
from typing import IO, Any

from stagelock.logging_context import CONTEXT_FIELDS, get_logging_context


def _json_default(value: object) -> object:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def _exception_fields(formatter: logging.Formatter, record: logging.LogRecord) -> dict[str, Any]:
    if record.exc_info:
        exc_type, exc_value, _ = record.exc_info
        return {
            "error_type": exc_type.__name__ if exc_type else "Exception",
            "error_message": str(exc_value) if exc_value is not None else "",
            "traceback": formatter.formatException(record.exc_info),
        }
    if record.exc_text:
        return {"traceback": record.exc_text}
    return {}


class JsonFormatter(logging.Formatter):
    """Renders a record as one JSON line.

    The event name is the message; structured fields come from
    ``extra={"extra": {...}}``. Bound correlation fields override extras of
    the same name, and every correlation field is always present.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = getattr(record, "extra", None)
        if isinstance(extras, dict):
            payload.update(extras)
        payload.update(get_logging_context())
        for field in CONTEXT_FIELDS:
            payload.setdefault(field, None)
        payload.update(_exception_fields(self, record))
        return json.dumps(payload, default=_json_default)


def _resolve_log_level(level: str | int | None) -> int:
    if isinstance(level, int):
        return level
    candidate = level if level is not None else os.getenv("LOG_LEVEL", "INFO")
    resolved = logging.getLevelName(str(candidate).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: str | int | None = None, *, stream: IO[str] | None = None) -> None:
    """Route the root logger through one JSON handler (stderr unless ``stream`` is given)."""
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(_resolve_log_level(level))
