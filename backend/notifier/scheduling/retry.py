"""
retry.py — Exponential backoff for transient delivery failures.

Backoff formula:
    delay = min(base × 2^attempt_number, max_delay) × (1 ± jitter)

    Example (base=30s, max=3600s, jitter=0.2):
        after attempt 1:  60s  (48–72s)
        after attempt 2: 120s  (96–144s)
        after attempt 3: 240s  (192–288s)

With jitter ≤ 1/3 consecutive delays never overlap below the cap, so
re-attempts of one channel are strictly spaced out.

A channel receives ``max_attempts`` attempts in total. The retry is
persisted as a new ``schedule_at`` on the message; the next dispatcher tick
picks it up like any other due message.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from backend.notifier.scheduling.models import Channel, ScheduledMessage
from backend.notifier.scheduling.schedule_store import ScheduleStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters."""
    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 3600.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if not 0.0 <= self.jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")
        if self.base_delay_seconds <= 0 or self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("need 0 < base_delay_seconds <= max_delay_seconds")


class RetryManager:
    """Computes backoff delays and writes retries back to the schedule."""

    def __init__(
        self,
        store: ScheduleStore,
        policy: Optional[RetryPolicy] = None,
        *,
        rng: Optional[random.Random] = None,
    ):
        self._store = store
        self.policy = policy or RetryPolicy()
        self._rng = rng or random.Random()

    def compute_delay(self, attempt_number: int) -> float:
        """
        Delay in seconds before the next attempt.

        Parameters
        ----------
        attempt_number : int
            Attempts already made on the channel (1 after the first failure).
        """
        p = self.policy
        raw = min(p.base_delay_seconds * (2 ** attempt_number), p.max_delay_seconds)
        factor = 1.0 + self._rng.uniform(-p.jitter, p.jitter)
        return raw * factor

    @staticmethod
    def should_retry(attempts: int, max_attempts: int) -> bool:
        return attempts < max_attempts

    def schedule_retry(
        self,
        message: ScheduledMessage,
        channel: Channel,
        attempt_number: int,
        now: datetime,
        *,
        channel_index: Optional[int] = None,
        total_attempts: Optional[int] = None,
        last_error: Optional[str] = None,
    ) -> datetime:
        """
        Reschedule ``message`` on the same channel.

        Returns
        -------
        datetime
            The new ``schedule_at``.
        """
        delay = self.compute_delay(attempt_number)
        new_schedule_at = now + timedelta(seconds=delay)
        self._store.update_delivery_state(
            message.message_id,
            schedule_at=new_schedule_at,
            channel_index=channel_index,
            attempts=attempt_number,
            total_attempts=total_attempts,
            last_error=last_error,
        )
        logger.info(
            "Retry %d/%d for %s via %s in %.1fs",
            attempt_number, message.max_attempts,
            message.message_id, channel.value, delay,
            extra={
                "message_id": message.message_id,
                "channel": channel.value,
                "attempt": attempt_number,
            },
        )
        return new_schedule_at
