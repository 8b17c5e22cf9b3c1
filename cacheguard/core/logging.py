"""JSON log lines for the access-control layer.

Device ids and guest fingerprints authenticate requests on their own, so the
formatter only ever emits a masked prefix of them.
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

CORRELATION_ID_CTX: ContextVar[str] = ContextVar("correlation_id", default="")

_PLAIN_KEYS = ("path", "method", "status_code", "auth_method", "reason", "client_ip", "count")
_MASKED_KEYS = ("session_id", "device_id")
_VISIBLE_PREFIX = 6


def mask_identifier(value: Any) -> str:
    """Keep a short prefix of a bearer-like identifier."""
    text = str(value)
    if len(text) <= _VISIBLE_PREFIX:
        return "***"
    return f"{text[:_VISIBLE_PREFIX]}***"


class JsonLogFormatter(logging.Formatter):
    """One JSON object per record, carrying the request correlation id."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
            "correlation_id": CORRELATION_ID_CTX.get(),
        }
        for key in _PLAIN_KEYS:
            value = getattr(record, key, None)
            if value not in (None, ""):
                payload[key] = value
        for key in _MASKED_KEYS:
            value = getattr(record, key, None)
            if value not in (None, ""):
                payload[key] = mask_identifier(value)

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logging(level: str = "INFO") -> None:
    """Route the root logger to stdout as JSON lines."""
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.addHandler(handler)


def set_correlation_id(correlation_id: str) -> None:
    CORRELATION_ID_CTX.set(correlation_id)
