"""
Request-scoped access to the NotificationEngine kept on ``app.state``.
"""

from __future__ import annotations

from fastapi import Request

from backend.notifier.core.errors import NotifierError
from backend.notifier.scheduling.engine import NotificationEngine


def get_engine(request: Request) -> NotificationEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise NotifierError(
            "Notification engine is not running",
            status_code=503,
            error_code="ENGINE_UNAVAILABLE",
        )
    return engine
