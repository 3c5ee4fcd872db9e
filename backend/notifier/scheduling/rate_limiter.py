"""
rate_limiter.py — Fixed-window throttling per (recipient, channel).

═══════════════════════════════════════════════════════════════════════════
ALGORITHM
═══════════════════════════════════════════════════════════════════════════

    if limit == 0:                                # channel switched off
        → DISABLED (the worker falls back)
    state = load(recipient, channel)              # or a fresh window at now
    if now ≥ state.window_start + window:         # window over → reset
        state = (count=0, window_start=now)
    if state.count < limit:
        state.count += 1  → ALLOWED
    else:
        → DEFERRED, retry_at = window end

The read-modify-write is one compare-and-set on the stored version; on a
lost race the limiter re-reads and decides again. A deferred job is
rescheduled at ``retry_at`` by the worker; it is never dropped.

Default limits (per hour):  whatsapp 20 · sms 10 · email 50

The limiter also hands out per-key holds that keep at most one provider
call in flight per (recipient, channel) within this process. A hold whose
call outlived the send timeout stays taken until that call returns; holds
nobody uses any more are forgotten.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import replace
from datetime import datetime
from typing import Dict, Mapping, Tuple

from backend.notifier.core.errors import ChannelDisabledError, ThrottledError
from backend.notifier.scheduling.models import (
    AdmitDecision,
    AdmitResult,
    Channel,
    ThrottleState,
)
from backend.notifier.scheduling.throttle_store import ThrottleStore

logger = logging.getLogger(__name__)

_MAX_CAS_ROUNDS = 8

_Key = Tuple[str, Channel]


class _Slot:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0  # holders plus waiters


class KeyHold:
    """
    Exclusive use of one (recipient, channel) key, as a context manager.

    Leaving the ``with`` block releases the key unless
    :meth:`release_when_done` handed it to a still-running provider call.
    """

    def __init__(self, limiter: "RateLimiter", key: _Key):
        self._limiter = limiter
        self._key = key
        self._handed_off = False
        self._released = False
        self._guard = threading.Lock()

    def __enter__(self) -> "KeyHold":
        self._limiter._enter(self._key)
        return self

    def __exit__(self, *exc_info) -> None:
        if not self._handed_off:
            self.release()

    def release_when_done(self, future: Future) -> None:
        """Keep the key taken until ``future`` finishes."""
        self._handed_off = True
        future.add_done_callback(lambda _f: self.release())

    def release(self) -> None:
        with self._guard:
            if self._released:
                return
            self._released = True
        self._limiter._leave(self._key)


class RateLimiter:
    """Admits or defers sends against per-channel fixed windows."""

    def __init__(
        self,
        store: ThrottleStore,
        limits: Mapping[Channel, int],
        *,
        window_seconds: int = 3600,
    ):
        self._store = store
        self._limits: Dict[Channel, int] = {Channel(k): int(v) for k, v in limits.items()}
        self.window_seconds = window_seconds
        self._slots: Dict[_Key, _Slot] = {}
        self._slots_lock = threading.Lock()

    def limit_for(self, channel: Channel) -> int:
        return self._limits.get(channel, 0)

    def hold(self, recipient_id: str, channel: Channel) -> KeyHold:
        """Serialise provider calls to one recipient on one channel."""
        return KeyHold(self, (recipient_id, channel))

    def busy(self, recipient_id: str, channel: Channel) -> bool:
        with self._slots_lock:
            slot = self._slots.get((recipient_id, channel))
            return slot is not None and slot.lock.locked()

    @property
    def tracked_keys(self) -> int:
        """Keys currently held or waited on."""
        with self._slots_lock:
            return len(self._slots)

    def _enter(self, key: _Key) -> None:
        with self._slots_lock:
            slot = self._slots.get(key)
            if slot is None:
                slot = self._slots[key] = _Slot()
            slot.users += 1
        slot.lock.acquire()

    def _leave(self, key: _Key) -> None:
        with self._slots_lock:
            slot = self._slots[key]
            slot.lock.release()
            slot.users -= 1
            if slot.users == 0:
                del self._slots[key]

    def admit(self, recipient_id: str, channel: Channel, now: datetime) -> AdmitResult:
        """
        Count one send against the window, or say when to come back.

        Returns
        -------
        AdmitResult
            ``ALLOWED`` (the send is counted), ``DEFERRED`` with
            ``retry_at`` set to the end of the current window, or
            ``DISABLED`` when the channel's limit is 0.
        """
        limit = self.limit_for(channel)
        if limit <= 0:
            return AdmitResult(AdmitDecision.DISABLED)

        for _ in range(_MAX_CAS_ROUNDS):
            state = self._store.get(recipient_id, channel)
            expected = state.version if state else 0
            if state is None or state.is_expired(now):
                state = ThrottleState(
                    recipient_id=recipient_id,
                    channel=channel,
                    window_start=now,
                    window_seconds=self.window_seconds,
                    limit=limit,
                    count=0,
                    version=expected,
                )

            if state.count >= limit:
                logger.info(
                    "Throttled %s/%s (%d/%d) until %s",
                    recipient_id, channel.value, state.count, limit,
                    state.window_end.isoformat(),
                    extra={"recipient_id": recipient_id, "channel": channel.value},
                )
                return AdmitResult(AdmitDecision.DEFERRED, retry_at=state.window_end)

            updated = replace(state, count=state.count + 1, limit=limit)
            if self._store.compare_and_set(updated, expected_version=expected):
                return AdmitResult(AdmitDecision.ALLOWED)

            logger.debug("Throttle CAS lost for %s/%s, retrying", recipient_id, channel.value)

        raise RuntimeError(
            f"Could not update throttle window for {recipient_id}/{channel.value} "
            f"after {_MAX_CAS_ROUNDS} attempts"
        )

    def acquire(self, recipient_id: str, channel: Channel, now: datetime) -> None:
        """``admit`` that raises instead of returning a deferral or a disabled channel."""
        result = self.admit(recipient_id, channel, now)
        if result.decision == AdmitDecision.DISABLED:
            raise ChannelDisabledError(recipient_id, channel.value)
        if not result.allowed:
            raise ThrottledError(recipient_id, channel.value, result.retry_at)
