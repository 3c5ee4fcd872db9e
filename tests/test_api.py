"""
test_api.py — HTTP API tests against an injected engine.

Covers:
    • Recipients (PUT / GET, 404)
    • Messages (202 enqueue, status, cancel + 409, reminders, upcoming)
    • Rules (create, digest, pause)
    • Provider webhooks → tracker
    • Stats, scheduler stats, health and the error response shape

The app is built around the test's engine and used without entering the
lifespan, so no dispatcher loop runs; tests tick the engine themselves.

Run with:
    pytest tests/test_api.py -v
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from backend.notifier.main import create_app

from fakes import REMINDER_DATA, T0, make_settings

API = "/api/v1"


def _make_client(engine, **overrides) -> TestClient:
    return TestClient(create_app(make_settings(**overrides), engine=engine))


def _message_body(**overrides) -> dict:
    body = {
        "recipientId": "kid-1",
        "notificationType": "reminder",
        "templateId": "chore_reminder",
        "data": REMINDER_DATA,
    }
    body.update(overrides)
    return body


@pytest.fixture()
def client(engine) -> TestClient:
    return _make_client(engine)


@pytest.fixture()
def kid(client) -> dict:
    resp = client.put(f"{API}/recipients/kid-1", json={
        "name": "Sam",
        "familyId": "fam-1",
        "phone": "+15551230001",
        "email": "sam@example.com",
        "channels": ["sms", "email"],
    })
    assert resp.status_code == 200
    return resp.json()


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Recipients
# ═══════════════════════════════════════════════════════════════════════════

class TestRecipients:
    """Test the recipient endpoints."""

    def test_put_and_get(self, client, kid):
        assert kid["recipientId"] == "kid-1"
        assert kid["preference"]["channels"] == ["sms", "email"]
        assert "reminder" in kid["preference"]["enabledTypes"]

        resp = client.get(f"{API}/recipients/kid-1")
        assert resp.status_code == 200
        assert resp.json()["familyId"] == "fam-1"

    def test_quiet_hours_round_trip(self, client):
        resp = client.put(f"{API}/recipients/kid-2", json={
            "phone": "+15551230002",
            "quietHours": {"start": "22:00", "end": "07:00", "timezone": "Europe/Berlin"},
        })
        assert resp.status_code == 200
        quiet = resp.json()["preference"]["quietHours"]
        assert quiet == {"start": "22:00", "end": "07:00", "timezone": "Europe/Berlin", "enabled": True}
        # channels default to the configured order
        assert resp.json()["preference"]["channels"] == ["whatsapp", "sms", "email"]

    def test_no_preference_when_not_customised(self, client):
        resp = client.put(f"{API}/recipients/kid-3", json={"email": "k3@example.com"})
        assert resp.json()["preference"] is None

    def test_unknown_recipient_404(self, client):
        resp = client.get(f"{API}/recipients/nobody")
        assert resp.status_code == 404
        error = resp.json()["error"]
        assert error["code"] == "NOT_FOUND"
        assert error["details"] == {"resource": "Recipient", "recipient_id": "nobody"}

    def test_bad_timezone_422(self, client):
        resp = client.put(f"{API}/recipients/kid-4", json={
            "quietHours": {"start": "22:00", "end": "07:00", "timezone": "Mars/Olympus"},
        })
        assert resp.status_code == 422


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Messages
# ═══════════════════════════════════════════════════════════════════════════

class TestMessages:
    """Test scheduling, status and cancellation."""

    def test_enqueue_then_deliver(self, client, engine, kid):
        resp = client.post(f"{API}/messages", json=_message_body())
        assert resp.status_code == 202
        mid = resp.json()["messageId"]

        pending = client.get(f"{API}/messages/{mid}").json()
        assert pending["status"] == "pending"
        assert pending["deliveryStatus"] is None

        engine.tick()

        sent = client.get(f"{API}/messages/{mid}").json()
        assert sent["status"] == "sent"
        assert sent["deliveryStatus"] == "sent"
        assert sent["currentChannel"] == "sms"
        assert sent["attemptHistory"][0]["providerMessageId"].startswith("FAKE-SMS-")

    def test_snake_case_accepted(self, client):
        resp = client.post(f"{API}/messages", json={
            "recipient_id": "kid-1",
            "notification_type": "reminder",
            "template_id": "chore_reminder",
            "data": REMINDER_DATA,
        })
        assert resp.status_code == 202

    def test_cancel_and_conflict(self, client):
        body = _message_body(scheduleAt=(T0 + timedelta(hours=1)).isoformat())
        mid = client.post(f"{API}/messages", json=body).json()["messageId"]

        resp = client.post(f"{API}/messages/{mid}/cancel")
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"

        again = client.post(f"{API}/messages/{mid}/cancel")
        assert again.status_code == 409
        error = again.json()["error"]
        assert error["code"] == "ALREADY_TERMINAL"
        assert error["details"]["status"] == "cancelled"

    def test_unknown_message_404(self, client):
        assert client.get(f"{API}/messages/missing").status_code == 404

    def test_unknown_template_422(self, client):
        resp = client.post(f"{API}/messages", json=_message_body(templateId="nope"))
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["field"] == "template_id"
        assert error["path"] == f"{API}/messages"
        assert error["method"] == "POST"

    def test_missing_field_422(self, client):
        resp = client.post(f"{API}/messages", json={"templateId": "chore_reminder"})
        assert resp.status_code == 422

    def test_production_hides_request(self, engine):
        client = _make_client(engine, ENVIRONMENT="production", DEBUG=False)
        error = client.post(f"{API}/messages", json=_message_body(templateId="nope")).json()["error"]
        assert "path" not in error
        assert "method" not in error

    def test_reminders_and_upcoming(self, client):
        resp = client.post(f"{API}/reminders", json={
            "recipientId": "kid-1",
            "choreTitle": "Dishes",
            "dueAt": (T0 + timedelta(hours=30)).isoformat(),
            "recipientName": "Sam",
            "points": 3,
        })
        assert resp.status_code == 202
        assert len(resp.json()["messageIds"]) == 3

        day = client.get(f"{API}/messages/upcoming", params={"hours": 24}).json()
        assert day["count"] == 1
        assert day["messages"][0]["priority"] == "medium"

        two_days = client.get(
            f"{API}/messages/upcoming", params={"hours": 48, "recipientId": "kid-1"},
        ).json()
        assert two_days["count"] == 3

        other = client.get(f"{API}/messages/upcoming", params={"recipientId": "kid-9"}).json()
        assert other["count"] == 0


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Rules
# ═══════════════════════════════════════════════════════════════════════════

class TestRules:
    """Test the recurring rule endpoints."""

    def test_create_get_and_pause(self, client):
        resp = client.post(f"{API}/rules", json={
            "recipientId": "kid-1",
            "notificationType": "reminder",
            "templateId": "chore_reminder",
            "cadence": "weekly",
            "daysOfWeek": [1, 3],
            "startAt": (T0 + timedelta(hours=1)).isoformat(),
            "data": REMINDER_DATA,
        })
        assert resp.status_code == 201
        rule_id = resp.json()["ruleId"]
        assert resp.json()["nextFireAt"].startswith("2024-06-10T13:00:00")

        rule = client.get(f"{API}/rules/{rule_id}").json()
        assert rule["daysOfWeek"] == [1, 3]
        assert rule["enabled"] is True

        paused = client.patch(f"{API}/rules/{rule_id}", json={"enabled": False}).json()
        assert paused["enabled"] is False

    def test_type_taken_from_template(self, client):
        resp = client.post(f"{API}/rules", json={
            "recipientId": "kid-1",
            "cadence": "daily",
            "interval": 1,
            "templateId": "chore_reminder",
            "data": REMINDER_DATA,
        })
        assert resp.status_code == 201
        rule = client.get(f"{API}/rules/{resp.json()['ruleId']}").json()
        assert rule["notificationType"] == "reminder"
        assert rule["cadence"] == "daily"

    def test_explicit_type_kept(self, client):
        resp = client.post(f"{API}/rules", json={
            "recipientId": "kid-1",
            "notificationType": "update",
            "cadence": "daily",
            "templateId": "chore_reminder",
            "data": REMINDER_DATA,
        })
        rule = client.get(f"{API}/rules/{resp.json()['ruleId']}").json()
        assert rule["notificationType"] == "update"

    def test_digest(self, client):
        resp = client.post(f"{API}/rules/digest", json={
            "recipientId": "parent-1", "frequency": "daily", "timeOfDay": "09:00",
        })
        assert resp.status_code == 201
        assert resp.json()["nextFireAt"].startswith("2024-06-11T09:00:00")

    def test_bad_weekday_422(self, client):
        resp = client.post(f"{API}/rules", json={
            "recipientId": "kid-1",
            "notificationType": "reminder",
            "templateId": "chore_reminder",
            "cadence": "weekly",
            "daysOfWeek": [8],
            "data": REMINDER_DATA,
        })
        assert resp.status_code == 422

    def test_unknown_rule_404(self, client):
        assert client.get(f"{API}/rules/missing").status_code == 404


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Webhooks & stats
# ═══════════════════════════════════════════════════════════════════════════

class TestWebhooksAndStats:
    """Test provider receipts and statistics."""

    def _deliver(self, client, engine) -> tuple:
        mid = client.post(f"{API}/messages", json=_message_body()).json()["messageId"]
        engine.tick()
        pid = client.get(f"{API}/messages/{mid}").json()["attemptHistory"][0]["providerMessageId"]
        return mid, pid

    def test_read_receipt(self, client, engine, clock, kid):
        mid, pid = self._deliver(client, engine)
        clock.advance(minutes=1)

        resp = client.post(f"{API}/webhooks/delivery", json={"providerMessageId": pid, "event": "read"})

        assert resp.status_code == 202
        assert resp.json() == {"accepted": True, "event": "opened"}
        assert engine.process_callbacks() == 1
        assert client.get(f"{API}/messages/{mid}").json()["deliveryStatus"] == "opened"

    def test_intermediate_event_ignored(self, client, engine):
        resp = client.post(f"{API}/webhooks/delivery", json={"providerMessageId": "SM1", "event": "queued"})
        assert resp.status_code == 202
        assert resp.json()["accepted"] is False
        assert engine.process_callbacks() == 0

    def test_delivery_stats(self, client, engine, clock, kid):
        self._deliver(client, engine)
        clock.advance(seconds=1)

        stats = client.get(f"{API}/stats", params={"recipientId": "kid-1"}).json()

        assert stats["total"] == 1
        assert stats["successRate"] == "100.0%"
        assert stats["byChannel"]["sms"] == {"attempts": 1, "sent": 1, "failed": 0}

        family = client.get(f"{API}/stats", params={"familyId": "fam-1", "window": "week"}).json()
        assert family["total"] == 1

    def test_cached_stats_follow_new_attempts(self, client, engine, clock, kid, stats_cache):
        params = {"recipientId": "kid-1"}
        _, pid = self._deliver(client, engine)
        clock.advance(seconds=1)

        assert client.get(f"{API}/stats", params=params).json()["total"] == 1
        assert client.get(f"{API}/stats", params=params).json()["total"] == 1
        assert stats_cache.hits == 1
        assert len(stats_cache.data) == 1

        # A dispatcher send lands after the cached answer
        self._deliver(client, engine)
        clock.advance(seconds=1)
        assert client.get(f"{API}/stats", params=params).json()["total"] == 2

        # So does a provider receipt once the tracker applies it
        client.post(f"{API}/webhooks/delivery", json={"providerMessageId": pid, "event": "read"})
        assert engine.process_callbacks() == 1
        assert client.get(f"{API}/stats", params=params).json()["opened"] == 1
        assert stats_cache.hits == 1
        assert len(stats_cache.data) == 3

    def test_bad_window_422(self, client):
        assert client.get(f"{API}/stats", params={"window": "decade"}).status_code == 422

    def test_scheduler_stats(self, client, engine, kid):
        self._deliver(client, engine)
        stats = client.get(f"{API}/scheduler/stats").json()
        assert stats["messages"]["sent"] == 1
        assert stats["providers"] == ["email", "sms", "whatsapp"]
        assert stats["lastTick"]["sent"] == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Service endpoints
# ═══════════════════════════════════════════════════════════════════════════

class TestService:
    """Test root and health endpoints."""

    def test_root(self, client):
        body = client.get("/").json()
        assert body["service"] == "ChoreMinder Notifier"
        assert "delivery-tracking" in body["modules"]

    def test_liveness(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}

    def test_deep_health(self, client):
        body = client.get("/health").json()
        names = [c["name"] for c in body["components"]]
        assert names == ["database", "redis", "channel_providers", "dispatcher", "disk_space"]
        components = {c["name"]: c for c in body["components"]}
        assert components["database"]["status"] == "healthy"
        assert components["redis"]["status"] == "healthy"

    def test_engine_unavailable(self):
        client = TestClient(create_app(make_settings(), engine=None))
        resp = client.get(f"{API}/scheduler/stats")
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "ENGINE_UNAVAILABLE"
