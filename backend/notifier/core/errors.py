"""
Notifier exceptions and the JSON error envelope the API answers with.

Every NotifierError carries its HTTP status and a stable ``error_code``;
the handlers at the bottom turn it, and any other failure, into
``{"error": {...}}``. Outside production the envelope also echoes
the request path and method.

═══════════════════════════════════════════════════════════════════════════
WHERE EACH ERROR SURFACES
═══════════════════════════════════════════════════════════════════════════

    Error                    Raised by                  Reaches caller?
    ─────────────────────    ───────────────────────    ──────────────────
    ValidationError          enqueue / rule creation    yes, 422
    NotFoundError            status / cancel / rules    yes, 404
    AlreadyTerminalError     cancel                     yes, 409
    ThrottledError           rate limiter               no (job deferred)
    ChannelDisabledError     rate limiter (limit 0)     no (falls back)
    ProviderTransientError   channel providers          no (retried)
    ProviderPermanentError   channel providers          via status API
    ExhaustedError           worker pool                via status API

Usage:
    from backend.notifier.core.errors import NotFoundError

    raise NotFoundError("ScheduledMessage", message_id="...")
"""

from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from backend.notifier.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class NotifierError(Exception):
    """Root of every error the notifier raises on purpose."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(NotifierError):
    """A message, rule or recipient id that the stores do not know (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(NotifierError):
    """Rejected request input; ``field`` names the offending attribute (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        if field:
            details["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=details,
        )


class AlreadyTerminalError(NotifierError):
    """Operation needs a pending message but it already finished (409)."""

    def __init__(self, message_id: str, status: str):
        super().__init__(
            message=f"Message {message_id} is already {status}",
            status_code=409,
            error_code="ALREADY_TERMINAL",
            details={"message_id": message_id, "status": status},
        )
        self.message_id = message_id
        self.status = status


class ThrottledError(NotifierError):
    """Recipient/channel window is full; the job is deferred, never failed."""

    def __init__(self, recipient_id: str, channel: str, retry_at: datetime):
        super().__init__(
            message=f"Throttled {recipient_id}/{channel} until {retry_at.isoformat()}",
            status_code=429,
            error_code="THROTTLED",
            details={
                "recipient_id": recipient_id,
                "channel": channel,
                "retry_at": retry_at.isoformat(),
            },
        )
        self.retry_at = retry_at


class ChannelDisabledError(NotifierError):
    """The channel's throttle limit is 0; the worker falls back to the next one."""

    def __init__(self, recipient_id: str, channel: str):
        super().__init__(
            message=f"Channel {channel} is disabled (throttle limit 0)",
            status_code=409,
            error_code="CHANNEL_DISABLED",
            details={"recipient_id": recipient_id, "channel": channel},
        )
        self.channel = channel


class ProviderError(NotifierError):
    """A channel provider rejected or could not complete a send."""

    transient = False

    def __init__(
        self,
        channel: str,
        message: str = "",
        *,
        error_code: Optional[str] = None,
        status_code: int = 502,
    ):
        super().__init__(
            message=f"Provider '{channel}' failed: {message}",
            status_code=status_code,
            error_code="PROVIDER_ERROR",
            details={"channel": channel, "provider_code": error_code},
        )
        self.channel = channel
        self.provider_code = error_code


class ProviderTransientError(ProviderError):
    """Timeout, 5xx, rate-limited or transport failure — worth retrying."""

    transient = True


class ProviderPermanentError(ProviderError):
    """Invalid address, unsubscribed, rejected content — fall back at once."""


class ExhaustedError(NotifierError):
    """Every channel in the fallback list failed."""

    def __init__(self, message_id: str, channels: Optional[list] = None):
        super().__init__(
            message=f"Message {message_id} exhausted all channels",
            status_code=500,
            error_code="CHANNELS_EXHAUSTED",
            details={"message_id": message_id, "channels": channels or []},
        )
        self.message_id = message_id


# ═══════════════════════════════════════════════════════════════════════════
# Error envelope
# ═══════════════════════════════════════════════════════════════════════════

def error_body(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> Dict[str, Any]:
    """
    ``{"error": {"code", "message", "status", "details"?, "path"?, "method"?}}``

    ``path`` / ``method`` are included only when ``request`` is given.
    """
    error: Dict[str, Any] = {"code": error_code, "message": message, "status": status_code}
    if details:
        error["details"] = details
    if request is not None:
        error["path"] = request.url.path
        error["method"] = request.method
    return {"error": error}


def _field_of(loc: Sequence[Any]) -> str:
    # ("body", "recipientId") → "recipientId"; ("query", "window") → "window"
    parts = [str(p) for p in loc if p not in ("body", "query", "path")]
    return ".".join(parts) or "body"


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI, config: Optional[Settings] = None) -> None:
    """
    Map every error the API can raise onto the JSON envelope.

    Request path and method are echoed back outside production only.
    """
    config = config or default_settings
    echo_request = not config.is_production

    def respond(status_code, error_code, message, details=None, request=None, headers=None):
        return JSONResponse(
            status_code=status_code,
            content=error_body(
                status_code, error_code, message, details,
                request if echo_request else None,
            ),
            headers=headers,
        )

    @app.exception_handler(NotifierError)
    async def handle_notifier_error(request: Request, exc: NotifierError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(level, "%s [%s]: %s", request.url.path, exc.error_code, exc.message)
        headers = None
        if isinstance(exc, ThrottledError):
            wait = max(0, int((exc.retry_at - datetime.now(timezone.utc)).total_seconds()))
            headers = {"Retry-After": str(wait)}
        return respond(
            exc.status_code, exc.error_code, exc.message, exc.details, request, headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        problems = [
            {"field": _field_of(e.get("loc", ())), "message": e.get("msg", "")}
            for e in exc.errors()
        ]
        first = problems[0] if problems else {"field": "body", "message": "invalid request"}
        return respond(
            422, "VALIDATION_ERROR", f"{first['field']}: {first['message']}",
            {"field": first["field"], "errors": problems}, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return respond(422, "VALIDATION_ERROR", str(exc), request=request)

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception on %s %s: %s\n%s",
            request.method, request.url.path, exc, traceback.format_exc(),
        )
        if config.DEBUG:
            return respond(
                500, "INTERNAL_ERROR", str(exc),
                {"traceback": traceback.format_exc().split("\n")}, request,
            )
        return respond(500, "INTERNAL_ERROR", "Internal server error", request=request)
