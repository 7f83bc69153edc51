"""Structured JSON logging with rate-limit context propagation."""

import contextvars
import json
import logging
import os
import re
from datetime import datetime, timezone

request_ctx: contextvars.ContextVar[dict] = contextvars.ContextVar("request_ctx", default={})

_SECRET_RE = re.compile(r"(token|password|secret)([\s=:]+)\S+", re.IGNORECASE)
_URL_CREDENTIALS_RE = re.compile(r"(rediss?://[^:/@\s]*:)[^@\s]+@")
_DEV = os.getenv("ENV", "development") == "development"


def redact(message: str) -> str:
    """Mask secrets and the password part of Redis URLs."""
    message = _URL_CREDENTIALS_RE.sub(r"\1***@", message)
    return _SECRET_RE.sub(r"\1\2***", message)


class JSONFormatter(logging.Formatter):
    """Emit each log record as a single JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = request_ctx.get()
        obj = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "message": redact(record.getMessage()),
            "logger": record.name,
            "request_id": ctx.get("request_id"),
            "identifier": ctx.get("identifier"),
            "bucket": getattr(record, "bucket", ctx.get("bucket")),
        }
        if hasattr(record, "latency_ms"):
            obj["latency_ms"] = record.latency_ms
        if record.exc_info and record.exc_info[0]:
            obj["exception"] = redact(self.formatException(record.exc_info))
        return json.dumps(obj, indent=2 if _DEV else None, default=str)


def setup_logging(level: str | None = None) -> None:
    """Configure root logger with JSON handler."""
    if level is None:
        from core.config import settings

        level = os.getenv("LOG_LEVEL", settings.log_level)
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not any(isinstance(h, logging.StreamHandler) and isinstance(h.formatter, JSONFormatter) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Return a logger that inherits the JSON formatter from root."""
    return logging.getLogger(name)
