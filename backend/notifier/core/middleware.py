"""
Request middleware: correlation IDs, timing and one log line per API call.

The log context also carries the notifier resource a request addresses
(``message_id``, ``rule_id`` or ``recipient_id`` taken from the path), so
engine log lines emitted while serving it can be tied back to the call.

Health checks and docs are timed but not logged. Provider webhooks are
logged at DEBUG; providers send one per status change.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Dict

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.notifier.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

_UNLOGGED_PREFIXES = ("/health", "/docs", "/redoc", "/openapi", "/favicon")
_WEBHOOK_PREFIX = "/api/v1/webhooks"

_RESOURCE_PATH = re.compile(
    r"^/api/v1/(?P<kind>messages|rules|recipients)/(?P<ident>[^/]+)"
)
_RESOURCE_KEYS = {"messages": "message_id", "rules": "rule_id", "recipients": "recipient_id"}
# Collection sub-routes that look like ids
_NOT_IDS = {"upcoming", "digest"}


def resource_ids(path: str) -> Dict[str, str]:
    """``/api/v1/messages/abc/cancel`` → ``{"message_id": "abc"}``."""
    match = _RESOURCE_PATH.match(path)
    if not match or match.group("ident") in _NOT_IDS:
        return {}
    return {_RESOURCE_KEYS[match.group("kind")]: match.group("ident")}


def _log_level(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if path.startswith(_WEBHOOK_PREFIX):
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Inject ``X-Request-ID`` / ``X-Process-Time`` and log the call."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        client_ip = request.client.host if request.client else "unknown"
        path = request.url.path

        set_request_context(
            request_id=request_id,
            client_ip=client_ip,
            endpoint=path,
            method=request.method,
            **resource_ids(path),
        )

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "%s %s → crashed after %.1fms",
                request.method, path, (time.perf_counter() - start) * 1000,
                extra={"status_code": 500, "endpoint": path},
            )
            set_request_context()
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{duration_ms:.1f}ms"

        if not path.startswith(_UNLOGGED_PREFIXES):
            logger.log(
                _log_level(path, response.status_code),
                "%s %s → %d (%.1fms)",
                request.method, path, response.status_code, duration_ms,
                extra={
                    "duration_ms": duration_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                },
            )

        set_request_context()
        return response
