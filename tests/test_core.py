"""
test_core.py — request middleware, log formatting, error envelope, health.

Covers:
    • Resource ids extracted from API paths for the log context
    • X-Request-ID / X-Process-Time headers
    • JSON and console log formatters with delivery tags
    • Error envelope: NotifierError, request validation, Retry-After, crashes
    • Health report aggregation
    • Stats cache: keys, read-back, disabled and unreachable Redis

Run with:
    pytest tests/test_core.py -v
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel

from backend.notifier.core import cache
from backend.notifier.core.cache import get_cached_stats, ping_redis, stats_cache_key, store_stats
from backend.notifier.core.errors import (
    NotFoundError,
    ThrottledError,
    error_body,
    register_error_handlers,
)
from backend.notifier.core.health import ComponentHealth, HealthReport, HealthStatus
from backend.notifier.core.logging_config import (
    JSONFormatter,
    PrettyFormatter,
    delivery_fields,
    set_request_context,
)
from backend.notifier.core.middleware import RequestLoggingMiddleware, resource_ids

from fakes import make_settings


class _Chore(BaseModel):
    title: str
    points: int


def _make_app(**overrides) -> FastAPI:
    """Tiny app exercising every handler path."""
    app = FastAPI()
    app.add_middleware(RequestLoggingMiddleware)
    register_error_handlers(app, make_settings(**overrides))

    @app.get("/api/v1/messages/{message_id}")
    def missing(message_id: str):
        raise NotFoundError("ScheduledMessage", message_id=message_id)

    @app.get("/throttled")
    def throttled():
        retry_at = datetime.now(timezone.utc) + timedelta(seconds=120)
        raise ThrottledError("kid-1", "sms", retry_at)

    @app.post("/chores")
    def create(body: _Chore):
        return body

    @app.get("/crash")
    def crash():
        raise RuntimeError("provider table corrupted")

    return app


def _record(msg: str = "Delivered", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        "backend.notifier.scheduling.worker", logging.INFO, "worker.py", 42, msg, None, None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture(autouse=True)
def _clear_request_context():
    set_request_context()
    yield
    set_request_context()


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Middleware
# ═══════════════════════════════════════════════════════════════════════════

class TestResourceIds:
    """Path → log context ids."""

    @pytest.mark.parametrize("path,expected", [
        ("/api/v1/messages/abc123", {"message_id": "abc123"}),
        ("/api/v1/messages/abc123/cancel", {"message_id": "abc123"}),
        ("/api/v1/rules/r-9", {"rule_id": "r-9"}),
        ("/api/v1/recipients/kid-1", {"recipient_id": "kid-1"}),
        ("/api/v1/messages/upcoming", {}),
        ("/api/v1/rules/digest", {}),
        ("/api/v1/stats", {}),
        ("/health", {}),
    ])
    def test_paths(self, path, expected):
        assert resource_ids(path) == expected


class TestRequestHeaders:
    """Correlation and timing headers."""

    def test_incoming_request_id_echoed(self):
        client = TestClient(_make_app())
        resp = client.get("/api/v1/messages/m-1", headers={"X-Request-ID": "req-abc"})
        assert resp.headers["X-Request-ID"] == "req-abc"
        assert resp.headers["X-Process-Time"].endswith("ms")

    def test_request_id_generated(self):
        client = TestClient(_make_app())
        resp = client.post("/chores", json={"title": "Dishes", "points": 3})
        assert resp.status_code == 200
        assert len(resp.headers["X-Request-ID"]) == 16


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Log formatting
# ═══════════════════════════════════════════════════════════════════════════

class TestFormatters:
    """Delivery tags in JSON and console output."""

    def test_delivery_fields_only_known_keys(self):
        record = _record(message_id="m-1", channel="sms", unrelated=True)
        assert delivery_fields(record) == {"message_id": "m-1", "channel": "sms"}

    def test_json_groups_delivery_and_request(self):
        set_request_context(request_id="req-1", endpoint="/api/v1/messages")
        record = _record(message_id="m-1", channel="sms", attempt=2, duration_ms=12.5)
        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "Delivered"
        assert entry["level"] == "INFO"
        assert entry["delivery"] == {"message_id": "m-1", "channel": "sms", "attempt": 2}
        assert entry["request"]["request_id"] == "req-1"
        assert entry["duration_ms"] == 12.5
        assert entry["location"].startswith("worker:")

    def test_json_without_context(self):
        entry = json.loads(JSONFormatter().format(_record()))
        assert "request" not in entry
        assert "delivery" not in entry

    def test_pretty_tags(self):
        record = _record(message_id="0123456789abcdef", channel="email")
        line = PrettyFormatter().format(record)
        assert "Delivered" in line
        assert "msg=01234567" in line
        assert "ch=email" in line


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Error envelope
# ═══════════════════════════════════════════════════════════════════════════

class TestErrorEnvelope:
    """Every failure answers with {"error": {...}}."""

    def test_error_body_minimal(self):
        body = error_body(404, "NOT_FOUND", "gone")
        assert body == {"error": {"code": "NOT_FOUND", "message": "gone", "status": 404}}

    def test_not_found(self):
        resp = TestClient(_make_app()).get("/api/v1/messages/m-404")
        assert resp.status_code == 404
        error = resp.json()["error"]
        assert error["code"] == "NOT_FOUND"
        assert error["details"] == {"resource": "ScheduledMessage", "message_id": "m-404"}
        assert error["path"] == "/api/v1/messages/m-404"
        assert error["method"] == "GET"

    def test_production_hides_request(self):
        client = TestClient(_make_app(ENVIRONMENT="production"))
        error = client.get("/api/v1/messages/m-404").json()["error"]
        assert "path" not in error
        assert "method" not in error

    def test_throttled_sets_retry_after(self):
        resp = TestClient(_make_app()).get("/throttled")
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "THROTTLED"
        assert 0 <= int(resp.headers["Retry-After"]) <= 120

    def test_request_validation_names_field(self):
        resp = TestClient(_make_app()).post("/chores", json={"title": "Dishes"})
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["field"] == "points"
        assert error["message"].startswith("points:")

    def test_crash_hidden_without_debug(self):
        client = TestClient(_make_app(DEBUG=False), raise_server_exceptions=False)
        resp = client.get("/crash")
        assert resp.status_code == 500
        error = resp.json()["error"]
        assert error["code"] == "INTERNAL_ERROR"
        assert error["message"] == "Internal server error"
        assert "details" not in error

    def test_crash_traceback_in_debug(self):
        client = TestClient(_make_app(DEBUG=True), raise_server_exceptions=False)
        error = client.get("/crash").json()["error"]
        assert error["message"] == "provider table corrupted"
        assert "traceback" in error["details"]


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Health aggregation
# ═══════════════════════════════════════════════════════════════════════════

class TestHealthReport:
    """Worst component wins."""

    def test_all_healthy(self):
        report = HealthReport(components=[ComponentHealth("database"), ComponentHealth("redis")])
        assert report.status is HealthStatus.HEALTHY

    def test_degraded(self):
        report = HealthReport(components=[
            ComponentHealth("database"),
            ComponentHealth("redis", status=HealthStatus.DEGRADED),
        ])
        assert report.to_dict()["status"] == "degraded"

    def test_unhealthy_beats_degraded(self):
        report = HealthReport(components=[
            ComponentHealth("redis", status=HealthStatus.DEGRADED),
            ComponentHealth("database", status=HealthStatus.UNHEALTHY, message="down"),
        ])
        body = report.to_dict()
        assert body["status"] == "unhealthy"
        assert body["components"][1] == {
            "name": "database", "status": "unhealthy", "latency_ms": 0.0, "message": "down",
        }


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Stats cache
# ═══════════════════════════════════════════════════════════════════════════

def _key(generation: int = 1, **scope) -> str:
    scope.setdefault("recipient_id", "kid-1")
    scope.setdefault("family_id", None)
    scope.setdefault("window", "day")
    return stats_cache_key(generation=generation, **scope)


class TestStatsCache:
    """Test the Redis-backed stats cache helpers."""

    def test_key_depends_on_scope_and_generation(self):
        assert _key() == _key()
        assert _key(generation=1) != _key(generation=2)
        assert _key(window="day") != _key(window="week")
        assert _key(recipient_id="kid-1") != _key(recipient_id="kid-2")
        assert _key().startswith("notifier:stats:g1:day:")

    def test_store_and_read_back(self, stats_cache):
        payload = {"total": 3, "success_rate": "66.7%"}
        assert asyncio.run(store_stats(_key(), payload, ttl=15)) is True
        assert asyncio.run(get_cached_stats(_key())) == payload
        assert stats_cache.ttls[_key()] == 15
        assert asyncio.run(get_cached_stats(_key(generation=2))) is None

    def test_default_ttl_from_settings(self, stats_cache):
        asyncio.run(store_stats(_key(), {"total": 0}))
        assert stats_cache.ttls[_key()] == cache.settings.STATS_CACHE_TTL

    def test_unreadable_entry_is_a_miss(self, stats_cache):
        stats_cache.data[_key()] = "{not json"
        assert asyncio.run(get_cached_stats(_key())) is None

    def test_unreachable_redis_degrades(self, stats_cache):
        stats_cache.down = True
        assert asyncio.run(store_stats(_key(), {"total": 1})) is False
        assert asyncio.run(get_cached_stats(_key())) is None
        assert asyncio.run(ping_redis()) is False

    def test_disabled_without_redis_url(self, monkeypatch):
        monkeypatch.setattr(cache.settings, "REDIS_URL", None)
        monkeypatch.setattr(cache, "_client", None)
        assert asyncio.run(store_stats(_key(), {"total": 1})) is False
        assert asyncio.run(get_cached_stats(_key())) is None
        assert asyncio.run(ping_redis()) is None
