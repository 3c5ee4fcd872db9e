"""
test_stores.py — Tests for the persistence layer and the admission logic
built on it.

Covers:
    • ScheduleStore: enqueue grace period, due ordering, claim leases,
      cancellation, materialized idempotency, delivery-state updates
    • Rule storage: creation checks, compare-and-set advance, pause/resume
    • RecipientDirectory: upsert, preferences round-trip, family members
    • ThrottleStore + RateLimiter: fixed windows, deferral, expiry, CAS
    • RetryManager: backoff growth, cap, jitter bounds, persistence
    • ChannelRouter: ordering, snapshots, disabled types, quiet hours

Run with:
    pytest tests/test_stores.py -v
"""

from __future__ import annotations

import random
import threading
from concurrent.futures import Future
from datetime import time, timedelta

import pytest

from backend.notifier.core.errors import (
    AlreadyTerminalError,
    ChannelDisabledError,
    NotFoundError,
    ThrottledError,
    ValidationError,
)
from backend.notifier.scheduling.models import (
    AdmitDecision,
    Cadence,
    Channel,
    MessageStatus,
    NotificationType,
    Priority,
    QuietHours,
    RecurringRule,
    ScheduledMessage,
)
from backend.notifier.scheduling.rate_limiter import RateLimiter
from backend.notifier.scheduling.recipients import RecipientDirectory, parse_clock
from backend.notifier.scheduling.retry import RetryManager, RetryPolicy
from backend.notifier.scheduling.router import ChannelRouter
from backend.notifier.scheduling.schedule_store import ScheduleStore
from backend.notifier.scheduling.throttle_store import ThrottleStore

from fakes import REMINDER_DATA, T0, make_recipient

HOUR = timedelta(hours=1)


def _make_message(schedule_at=T0, **kwargs) -> ScheduledMessage:
    defaults = dict(
        recipient_id="kid-1",
        notification_type=NotificationType.REMINDER,
        template_id="chore_reminder",
        data=dict(REMINDER_DATA),
        channels=[Channel.WHATSAPP, Channel.SMS],
    )
    defaults.update(kwargs)
    return ScheduledMessage(schedule_at=schedule_at, **defaults)


def _make_rule(next_fire_at=T0 + HOUR, cadence=Cadence.DAILY, **kwargs) -> RecurringRule:
    return RecurringRule(
        recipient_id="kid-1",
        notification_type=NotificationType.DIGEST,
        template_id="digest",
        cadence=cadence,
        next_fire_at=next_fire_at,
        data={"recipient_name": "Sam"},
        **kwargs,
    )


@pytest.fixture()
def store(session_factory) -> ScheduleStore:
    return ScheduleStore(session_factory, grace_seconds=60)


@pytest.fixture()
def directory(session_factory) -> RecipientDirectory:
    return RecipientDirectory(session_factory)


@pytest.fixture()
def limiter(session_factory) -> RateLimiter:
    return RateLimiter(
        ThrottleStore(session_factory),
        {Channel.SMS: 2, Channel.EMAIL: 0},
        window_seconds=3600,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Messages
# ═══════════════════════════════════════════════════════════════════════════

class TestEnqueue:
    """Test message creation."""

    def test_roundtrip(self, store):
        mid = store.enqueue(_make_message(T0 + HOUR), now=T0)
        msg = store.get(mid)
        assert msg.status == MessageStatus.PENDING
        assert msg.schedule_at == T0 + HOUR
        assert msg.channels == [Channel.WHATSAPP, Channel.SMS]
        assert msg.data == REMINDER_DATA
        assert msg.version == 1

    def test_within_grace_period_accepted(self, store):
        mid = store.enqueue(_make_message(T0 - timedelta(seconds=30)), now=T0)
        assert store.get(mid) is not None

    def test_past_beyond_grace_rejected(self, store):
        with pytest.raises(ValidationError) as exc:
            store.enqueue(_make_message(T0 - timedelta(minutes=5)), now=T0)
        assert exc.value.details["field"] == "schedule_at"

    def test_naive_time_rejected(self, store):
        with pytest.raises(ValidationError):
            store.enqueue(_make_message(T0.replace(tzinfo=None)), now=T0)

    def test_zero_attempts_rejected(self, store):
        with pytest.raises(ValidationError):
            store.enqueue(_make_message(T0, max_attempts=0), now=T0)

    def test_require_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.require("missing")


class TestDueAndClaim:
    """Test due scans and claim leases."""

    def test_due_ordered_by_schedule(self, store):
        late = store.enqueue(_make_message(T0 + timedelta(minutes=2)), now=T0)
        early = store.enqueue(_make_message(T0 + timedelta(minutes=1)), now=T0)
        store.enqueue(_make_message(T0 + HOUR), now=T0)
        due = store.due_messages(T0 + timedelta(minutes=5))
        assert [m.message_id for m in due] == [early, late]

    def test_claim_is_compare_and_set(self, store):
        mid = store.enqueue(_make_message(), now=T0)
        msg = store.get(mid)
        assert store.claim(mid, expected_version=msg.version, lease_until=T0 + HOUR) is True
        assert store.claim(mid, expected_version=msg.version, lease_until=T0 + HOUR) is False

    def test_leased_message_hidden_until_lease_ends(self, store):
        mid = store.enqueue(_make_message(), now=T0)
        store.claim(mid, expected_version=1, lease_until=T0 + timedelta(minutes=5))
        assert store.due_messages(T0 + timedelta(minutes=1)) == []
        assert [m.message_id for m in store.due_messages(T0 + timedelta(minutes=5))] == [mid]

    def test_update_delivery_state_releases_lease(self, store):
        mid = store.enqueue(_make_message(), now=T0)
        store.claim(mid, expected_version=1, lease_until=T0 + HOUR)
        ok = store.update_delivery_state(
            mid, schedule_at=T0 + timedelta(minutes=2), attempts=1, total_attempts=1,
            last_error="sms: busy",
        )
        assert ok is True
        msg = store.get(mid)
        assert msg.leased_until is None
        assert msg.attempts == 1
        assert msg.last_error == "sms: busy"
        assert [m.message_id for m in store.due_messages(T0 + timedelta(minutes=2))] == [mid]

    def test_mark_status_only_from_pending(self, store):
        mid = store.enqueue(_make_message(), now=T0)
        assert store.mark_status(mid, MessageStatus.SENT, total_attempts=1) is True
        assert store.mark_status(mid, MessageStatus.FAILED) is False
        assert store.get(mid).status == MessageStatus.SENT
        assert store.update_delivery_state(mid, attempts=3) is False


class TestCancel:
    """Test cancellation."""

    def test_cancel_pending(self, store):
        mid = store.enqueue(_make_message(T0 + HOUR), now=T0)
        assert store.cancel(mid).status == MessageStatus.CANCELLED
        assert store.due_messages(T0 + 2 * HOUR) == []

    def test_cancel_terminal_raises_and_keeps_state(self, store):
        mid = store.enqueue(_make_message(), now=T0)
        store.mark_status(mid, MessageStatus.SENT)
        with pytest.raises(AlreadyTerminalError) as exc:
            store.cancel(mid)
        assert exc.value.status_code == 409
        assert store.get(mid).status == MessageStatus.SENT

    def test_cancel_unknown(self, store):
        with pytest.raises(NotFoundError):
            store.cancel("missing")


class TestMaterialized:
    """Test idempotent occurrence inserts."""

    def test_duplicate_key_ignored(self, store):
        key = f"rule-1:{T0.isoformat()}"
        assert store.insert_materialized(_make_message(idempotency_key=key)) is True
        assert store.insert_materialized(_make_message(idempotency_key=key)) is False
        assert store.status_counts()["pending"] == 1

    def test_key_required(self, store):
        with pytest.raises(ValueError):
            store.insert_materialized(_make_message())


class TestUpcomingAndCounts:
    """Test reporting queries."""

    def test_upcoming_window_and_recipient(self, store):
        soon = store.enqueue(_make_message(T0 + HOUR), now=T0)
        store.enqueue(_make_message(T0 + 2 * HOUR, recipient_id="kid-2"), now=T0)
        store.enqueue(_make_message(T0 + 30 * HOUR), now=T0)
        assert len(store.upcoming(T0, T0 + 24 * HOUR)) == 2
        only = store.upcoming(T0, T0 + 24 * HOUR, recipient_id="kid-1")
        assert [m.message_id for m in only] == [soon]

    def test_status_counts(self, store):
        a = store.enqueue(_make_message(T0 + HOUR), now=T0)
        store.enqueue(_make_message(T0 + HOUR), now=T0)
        store.cancel(a)
        counts = store.status_counts()
        assert counts == {"pending": 1, "sent": 0, "failed": 0, "cancelled": 1}


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Rules
# ═══════════════════════════════════════════════════════════════════════════

class TestRuleStorage:
    """Test rule persistence."""

    def test_roundtrip(self, store):
        rid = store.enqueue_rule(_make_rule(cadence=Cadence.WEEKLY, days_of_week=[1, 3]), now=T0)
        rule = store.get_rule(rid)
        assert rule.days_of_week == [1, 3]
        assert rule.next_fire_at == T0 + HOUR
        assert rule.enabled is True

    def test_past_first_fire_rejected(self, store):
        with pytest.raises(ValidationError):
            store.enqueue_rule(_make_rule(next_fire_at=T0 - HOUR), now=T0)

    def test_bad_pattern_rejected(self, store):
        with pytest.raises(ValidationError):
            store.enqueue_rule(_make_rule(interval=0), now=T0)

    def test_advance_is_compare_and_set(self, store):
        rid = store.enqueue_rule(_make_rule(), now=T0)
        assert store.advance_rule(rid, expected_version=1, next_fire_at=T0 + 25 * HOUR) is True
        assert store.advance_rule(rid, expected_version=1, next_fire_at=T0 + 49 * HOUR) is False
        assert store.get_rule(rid).next_fire_at == T0 + 25 * HOUR

    def test_due_rules_skip_disabled(self, store):
        rid = store.enqueue_rule(_make_rule(), now=T0)
        store.set_rule_enabled(rid, False)
        assert store.due_rules(T0 + 2 * HOUR) == []
        store.set_rule_enabled(rid, True)
        assert [r.rule_id for r in store.due_rules(T0 + 2 * HOUR)] == [rid]

    def test_toggle_unknown_rule(self, store):
        with pytest.raises(NotFoundError):
            store.set_rule_enabled("missing", False)

    def test_rule_counts(self, store):
        rid = store.enqueue_rule(_make_rule(), now=T0)
        store.enqueue_rule(_make_rule(), now=T0)
        store.set_rule_enabled(rid, False)
        assert store.rule_counts() == {"total": 2, "enabled": 1, "disabled": 1}


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Recipients
# ═══════════════════════════════════════════════════════════════════════════

class TestRecipientDirectory:
    """Test recipient storage."""

    def test_roundtrip_with_preferences(self, directory):
        qh = QuietHours(start=time(21, 0), end=time(7, 0), timezone="Europe/Berlin")
        directory.upsert(make_recipient(
            channels=[Channel.SMS, Channel.EMAIL],
            enabled_types={NotificationType.REMINDER},
            quiet_hours=qh,
        ))
        pref = directory.preference_for("kid-1")
        assert pref.channels == [Channel.SMS, Channel.EMAIL]
        assert pref.enabled_types == frozenset({NotificationType.REMINDER})
        assert pref.quiet_hours == qh

    def test_no_preference_means_default(self, directory):
        directory.upsert(make_recipient())
        assert directory.preference_for("kid-1") is None
        assert directory.preference_for("nobody") is None

    def test_upsert_replaces(self, directory):
        directory.upsert(make_recipient(email="old@example.com"))
        directory.upsert(make_recipient(email="new@example.com"))
        assert directory.get("kid-1").email == "new@example.com"

    def test_family_members(self, directory):
        directory.upsert(make_recipient("kid-1"))
        directory.upsert(make_recipient("parent-1"))
        directory.upsert(make_recipient("other", family_id="fam-2"))
        assert sorted(directory.members_of("fam-1")) == ["kid-1", "parent-1"]

    def test_parse_clock(self):
        assert parse_clock("7:05") == time(7, 5)
        with pytest.raises(ValidationError):
            parse_clock("25:99")
        with pytest.raises(ValidationError):
            parse_clock("noon")


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Rate limiting
# ═══════════════════════════════════════════════════════════════════════════

class TestRateLimiter:
    """Test the fixed-window limiter."""

    def test_allows_up_to_limit_then_defers(self, limiter):
        assert limiter.admit("kid-1", Channel.SMS, T0).allowed
        assert limiter.admit("kid-1", Channel.SMS, T0 + timedelta(minutes=10)).allowed
        result = limiter.admit("kid-1", Channel.SMS, T0 + timedelta(minutes=20))
        assert result.decision == AdmitDecision.DEFERRED
        assert result.retry_at == T0 + HOUR

    def test_sixth_send_in_a_minute_deferred(self, session_factory):
        minute = RateLimiter(ThrottleStore(session_factory), {Channel.SMS: 5}, window_seconds=60)
        for i in range(5):
            assert minute.admit("kid-1", Channel.SMS, T0 + timedelta(seconds=i)).allowed
        sixth = minute.admit("kid-1", Channel.SMS, T0 + timedelta(seconds=30))
        assert sixth.decision == AdmitDecision.DEFERRED
        assert sixth.retry_at == T0 + timedelta(seconds=60)
        assert minute.admit("kid-1", Channel.SMS, sixth.retry_at).allowed

    def test_window_resets_after_expiry(self, limiter):
        for _ in range(2):
            limiter.admit("kid-1", Channel.SMS, T0)
        assert limiter.admit("kid-1", Channel.SMS, T0 + HOUR).allowed

    def test_limits_are_per_recipient(self, limiter):
        for _ in range(2):
            limiter.admit("kid-1", Channel.SMS, T0)
        assert limiter.admit("kid-2", Channel.SMS, T0).allowed

    def test_zero_limit_disables_channel(self, limiter):
        result = limiter.admit("kid-1", Channel.EMAIL, T0)
        assert result.decision == AdmitDecision.DISABLED
        assert result.retry_at is None
        with pytest.raises(ChannelDisabledError):
            limiter.acquire("kid-1", Channel.EMAIL, T0)

    def test_acquire_raises_throttled(self, limiter):
        limiter.acquire("kid-1", Channel.SMS, T0)
        limiter.acquire("kid-1", Channel.SMS, T0)
        with pytest.raises(ThrottledError) as exc:
            limiter.acquire("kid-1", Channel.SMS, T0)
        assert exc.value.retry_at == T0 + HOUR

    def test_hold_is_exclusive_per_key(self, limiter):
        entered = threading.Event()

        def contend():
            with limiter.hold("kid-1", Channel.SMS):
                entered.set()

        with limiter.hold("kid-1", Channel.SMS):
            assert limiter.busy("kid-1", Channel.SMS)
            assert not limiter.busy("kid-1", Channel.EMAIL)
            other = threading.Thread(target=contend)
            other.start()
            assert not entered.wait(0.2)
        other.join(2)
        assert entered.is_set()

    def test_idle_keys_forgotten(self, limiter):
        for rid in ("kid-1", "kid-2", "kid-3"):
            with limiter.hold(rid, Channel.SMS):
                assert limiter.tracked_keys == 1
        assert limiter.tracked_keys == 0

    def test_hold_outlives_block_until_call_finishes(self, limiter):
        call: Future = Future()
        with limiter.hold("kid-1", Channel.SMS) as hold:
            hold.release_when_done(call)
        assert limiter.busy("kid-1", Channel.SMS)
        call.set_result(None)
        assert not limiter.busy("kid-1", Channel.SMS)
        assert limiter.tracked_keys == 0


class TestThrottleStore:
    """Test throttle persistence."""

    def test_delete_expired(self, session_factory, limiter):
        throttles = ThrottleStore(session_factory)
        limiter.admit("kid-1", Channel.SMS, T0)
        limiter.admit("kid-2", Channel.SMS, T0 + timedelta(minutes=30))
        assert throttles.count() == 2
        assert throttles.delete_expired(T0 + HOUR) == 1
        assert throttles.get("kid-1", Channel.SMS) is None
        assert throttles.active_by_channel(T0 + HOUR)["sms"] == 1

    def test_stale_version_loses(self, session_factory, limiter):
        throttles = ThrottleStore(session_factory)
        limiter.admit("kid-1", Channel.SMS, T0)
        state = throttles.get("kid-1", Channel.SMS)
        state.count = 5
        assert throttles.compare_and_set(state, expected_version=state.version + 1) is False
        assert throttles.get("kid-1", Channel.SMS).count == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Retry
# ═══════════════════════════════════════════════════════════════════════════

class TestRetryManager:
    """Test backoff computation and persistence."""

    def test_exponential_growth_and_cap(self, store):
        retry = RetryManager(store, RetryPolicy(base_delay_seconds=30, max_delay_seconds=200, jitter=0.0))
        assert retry.compute_delay(1) == 60
        assert retry.compute_delay(2) == 120
        assert retry.compute_delay(3) == 200

    def test_jitter_bounds(self, store):
        retry = RetryManager(store, RetryPolicy(jitter=0.2), rng=random.Random(1))
        for _ in range(50):
            assert 48 <= retry.compute_delay(1) <= 72

    def test_successive_delays_increase(self, store):
        retry = RetryManager(store, RetryPolicy(jitter=0.2), rng=random.Random(3))
        delays = [retry.compute_delay(n) for n in (1, 2, 3, 4)]
        assert delays == sorted(delays)

    def test_should_retry(self):
        assert RetryManager.should_retry(1, 3) is True
        assert RetryManager.should_retry(3, 3) is False

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            RetryPolicy(jitter=1.5)
        with pytest.raises(ValueError):
            RetryPolicy(base_delay_seconds=100, max_delay_seconds=10)

    def test_schedule_retry_persists(self, store):
        retry = RetryManager(store, RetryPolicy(jitter=0.0))
        mid = store.enqueue(_make_message(), now=T0)
        msg = store.get(mid)
        next_at = retry.schedule_retry(msg, Channel.SMS, 1, T0, channel_index=1, total_attempts=2)
        assert next_at == T0 + timedelta(seconds=60)
        saved = store.get(mid)
        assert saved.schedule_at == next_at
        assert saved.attempts == 1
        assert saved.channel_index == 1
        assert saved.total_attempts == 2


# ═══════════════════════════════════════════════════════════════════════════
# Section 6: Routing
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture()
def router(directory) -> ChannelRouter:
    return ChannelRouter(
        directory,
        default_channels=[Channel.WHATSAPP, Channel.SMS, Channel.EMAIL],
        available_channels=[Channel.SMS, Channel.EMAIL],
    )


class TestChannelRouter:
    """Test channel ordering and deferral."""

    def test_default_order_filtered_by_provider(self, router):
        decision = router.route("nobody", NotificationType.REMINDER, T0)
        assert decision.channels == [Channel.SMS, Channel.EMAIL]
        assert decision.deferred is False

    def test_recipient_order(self, router, directory):
        directory.upsert(make_recipient(channels=[Channel.EMAIL, Channel.SMS]))
        assert router.ordered_channels("kid-1") == [Channel.EMAIL, Channel.SMS]

    def test_snapshot_wins_over_current_preference(self, router, directory):
        directory.upsert(make_recipient(channels=[Channel.EMAIL]))
        decision = router.route(
            "kid-1", NotificationType.REMINDER, T0, snapshot=[Channel.SMS, Channel.EMAIL],
        )
        assert decision.channels == [Channel.SMS, Channel.EMAIL]

    def test_disabled_type(self, router, directory):
        directory.upsert(make_recipient(enabled_types={NotificationType.DIGEST}))
        decision = router.route("kid-1", NotificationType.REMINDER, T0)
        assert decision.channels == []
        assert decision.reason == "type_disabled"

    def test_no_provider(self, router, directory):
        directory.upsert(make_recipient(channels=[Channel.WHATSAPP]))
        decision = router.route("kid-1", NotificationType.REMINDER, T0)
        assert decision.channels == []
        assert decision.reason == "no_provider"

    def test_quiet_hours_defer(self, router, directory):
        directory.upsert(make_recipient(quiet_hours=QuietHours(time(11, 0), time(13, 0))))
        decision = router.route("kid-1", NotificationType.REMINDER, T0)
        assert decision.deferred is True
        assert decision.defer_until == T0 + HOUR

    def test_urgent_bypasses_quiet_hours(self, router, directory):
        directory.upsert(make_recipient(quiet_hours=QuietHours(time(11, 0), time(13, 0))))
        decision = router.route("kid-1", NotificationType.REMINDER, T0, priority=Priority.URGENT)
        assert decision.channels == [Channel.SMS, Channel.EMAIL]
