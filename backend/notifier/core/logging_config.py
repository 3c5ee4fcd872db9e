"""
Structured logging configuration.

Provides:
    • JSON-formatted logs for production (one object per line)
    • Pretty console logs for development
    • Request-scoped context (request_id, client_ip, endpoint)
    • Delivery tags: ``message_id``, ``recipient_id``, ``channel``,
      ``rule_id``… passed via ``extra=`` are grouped under ``"delivery"``
      in JSON and appended as ``{msg=… ch=…}`` in the console

Log lines from the delivery pool carry the worker thread name, so the
console shows which of the concurrent sends a line belongs to.

Usage:
    from backend.notifier.core.logging_config import setup_logging, get_logger

    setup_logging(config)
    logger = get_logger(__name__)
    logger.info("Delivered", extra={"message_id": mid, "channel": "sms"})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from backend.notifier.core.config import Settings, settings as default_settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

DELIVERY_KEYS = (
    "message_id", "recipient_id", "family_id", "channel", "rule_id",
    "attempt", "outcome", "error_code",
)
HTTP_KEYS = ("duration_ms", "status_code", "endpoint")

# Console tag → record attribute
_SHORT_TAGS = (("msg", "message_id"), ("rule", "rule_id"), ("to", "recipient_id"), ("ch", "channel"))


def set_request_context(**kwargs: Any) -> None:
    """Replace the request-scoped context; call with no arguments to clear it."""
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def delivery_fields(record: logging.LogRecord) -> Dict[str, Any]:
    """Delivery attributes present on ``record`` (from ``extra=``)."""
    return {k: getattr(record, k) for k in DELIVERY_KEYS if hasattr(record, k)}


# ── JSON Formatter (Production) ──

class JSONFormatter(logging.Formatter):

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        ctx = get_request_context()
        if ctx:
            entry["request"] = ctx

        delivery = delivery_fields(record)
        if delivery:
            entry["delivery"] = delivery

        for key in HTTP_KEYS:
            if hasattr(record, key):
                entry[key] = getattr(record, key)

        if record.exc_info and record.exc_info[1]:
            entry["exception"] = {
                "type": type(record.exc_info[1]).__name__,
                "message": str(record.exc_info[1]),
            }

        return json.dumps(entry, default=str)


# ── Pretty Formatter (Development) ──

class PrettyFormatter(logging.Formatter):
    """Coloured one-liners: time, level, [request] (thread) logger: message {tags}."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    DIM = "\033[2m"
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        parts = [f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}"]

        request_id = get_request_context().get("request_id")
        if request_id:
            parts.append(f"[{request_id[:8]}]")
        if record.threadName != "MainThread":
            parts.append(f"({record.threadName})")
        parts.append(f"{record.name}: {record.getMessage()}")

        tags = [
            f"{short}={str(getattr(record, attr))[:8]}"
            for short, attr in _SHORT_TAGS
            if getattr(record, attr, None)
        ]
        if tags:
            parts.append(f"{self.DIM}{{{' '.join(tags)}}}{self.RESET}")

        formatted = " ".join(parts)
        if record.exc_info and record.exc_info[1]:
            formatted += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return formatted


# ── Setup ──

def setup_logging(config: Optional[Settings] = None) -> None:
    """Install one stdout handler on the root logger for the current environment."""
    config = config or default_settings
    root = logging.getLogger()
    root.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if config.is_production else PrettyFormatter())
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    # Provider calls are logged by the channel adapters themselves
    for noisy in ("httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if config.DATABASE_ECHO else logging.WARNING
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
