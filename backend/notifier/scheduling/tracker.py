"""
tracker.py — Append-only delivery log, status folding and statistics.

═══════════════════════════════════════════════════════════════════════════
STATUS FOLDING
═══════════════════════════════════════════════════════════════════════════

A message's displayed delivery status is the outcome of its most recent
attempt, with one exception: engagement events only refine success.

    attempts (oldest → newest)             folded status
    ───────────────────────────────────    ─────────────
    failed(whatsapp), sent(sms)            sent
    sent(sms), opened                      opened
    sent(sms), opened, clicked             clicked
    sent(sms), clicked, opened             clicked   (never downgraded)
    failed(sms), opened                    failed    (opened is ignored)

═══════════════════════════════════════════════════════════════════════════
PROVIDER CALLBACKS
═══════════════════════════════════════════════════════════════════════════

Webhook handlers never touch the log directly. They ``submit_event`` onto a
bounded queue; a single consumer thread maps ``provider_message_id`` back
to the attempt it belongs to and applies the event. Callbacks therefore
cannot block the HTTP request or race each other on the same message.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Union

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from backend.notifier.core.database import session_scope
from backend.notifier.core.errors import NotifierError, ValidationError
from backend.notifier.scheduling.models import (
    Channel,
    DeliveryAttempt,
    DeliveryOutcome,
    DeliveryStats,
    ErrorClass,
    _now,
)
from backend.notifier.scheduling.recipients import RecipientDirectory
from backend.notifier.scheduling.tables import DeliveryAttemptRow

logger = logging.getLogger(__name__)

STATS_WINDOWS: Dict[str, timedelta] = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
}

_SUCCESS = (DeliveryOutcome.SENT, DeliveryOutcome.OPENED, DeliveryOutcome.CLICKED)
_RANK = {DeliveryOutcome.SENT: 0, DeliveryOutcome.OPENED: 1, DeliveryOutcome.CLICKED: 2}


@dataclass(frozen=True)
class CallbackEvent:
    """Provider delivery/engagement receipt."""
    provider_message_id: str
    event: DeliveryOutcome
    error_code: Optional[str] = None
    received_at: datetime = field(default_factory=_now)


def fold_status(attempts: Iterable[DeliveryAttempt]) -> Optional[DeliveryOutcome]:
    """Displayed status for a message's attempts (see module docstring)."""
    status: Optional[DeliveryOutcome] = None
    for attempt in sorted(attempts, key=lambda a: a.timestamp):
        outcome = attempt.outcome
        if outcome in (DeliveryOutcome.OPENED, DeliveryOutcome.CLICKED):
            if status in _RANK and _RANK[outcome] > _RANK[status]:
                status = outcome
            continue
        if outcome == DeliveryOutcome.SENT and status in (DeliveryOutcome.OPENED, DeliveryOutcome.CLICKED):
            continue
        status = outcome
    return status


def resolve_window(window: Union[str, timedelta]) -> timedelta:
    if isinstance(window, timedelta):
        return window
    try:
        return STATS_WINDOWS[window]
    except KeyError:
        raise ValidationError(
            f"Invalid window '{window}'. Must be one of: {list(STATS_WINDOWS)}",
            field="window",
        ) from None


def _row_to_attempt(row: DeliveryAttemptRow) -> DeliveryAttempt:
    return DeliveryAttempt(
        attempt_id=row.attempt_id,
        message_id=row.message_id,
        recipient_id=row.recipient_id,
        channel=Channel(row.channel),
        outcome=DeliveryOutcome(row.outcome),
        timestamp=row.timestamp,
        error_class=ErrorClass(row.error_class) if row.error_class else None,
        error_code=row.error_code,
        error_message=row.error_message,
        latency_ms=row.latency_ms,
        provider_message_id=row.provider_message_id,
    )


class DeliveryTracker:
    """Single writer of DeliveryAttempt rows."""

    def __init__(
        self,
        session_factory: sessionmaker,
        directory: RecipientDirectory,
        *,
        queue_maxsize: int = 10_000,
    ):
        self._sessions = session_factory
        self._directory = directory
        self._events: "queue.Queue[Optional[CallbackEvent]]" = queue.Queue(maxsize=queue_maxsize)
        self._engagement_lock = threading.Lock()
        self._consumer: Optional[threading.Thread] = None
        self._generation = 0
        self._generation_lock = threading.Lock()

    @property
    def generation(self) -> int:
        """Bumped after every recorded attempt; cached statistics key on it."""
        return self._generation

    # ── Writing ──

    def record(self, attempt: DeliveryAttempt) -> DeliveryAttempt:
        with session_scope(self._sessions) as session:
            session.add(DeliveryAttemptRow(
                attempt_id=attempt.attempt_id,
                message_id=attempt.message_id,
                recipient_id=attempt.recipient_id,
                channel=attempt.channel.value,
                outcome=attempt.outcome.value,
                timestamp=attempt.timestamp,
                error_class=attempt.error_class.value if attempt.error_class else None,
                error_code=attempt.error_code,
                error_message=attempt.error_message,
                latency_ms=attempt.latency_ms,
                provider_message_id=attempt.provider_message_id,
            ))
        with self._generation_lock:
            self._generation += 1
        logger.debug(
            "Attempt %s: %s via %s → %s",
            attempt.attempt_id, attempt.message_id,
            attempt.channel.value, attempt.outcome.value,
            extra={
                "message_id": attempt.message_id,
                "channel": attempt.channel.value,
                "outcome": attempt.outcome.value,
            },
        )
        return attempt

    def _mark_engagement(
        self,
        message_id: str,
        outcome: DeliveryOutcome,
        at: Optional[datetime] = None,
    ) -> bool:
        with self._engagement_lock:
            attempts = self.attempts_for(message_id)
            if fold_status(attempts) not in _SUCCESS:
                logger.info(
                    "Ignoring %s for %s: no successful delivery",
                    outcome.value, message_id,
                    extra={"message_id": message_id},
                )
                return False
            delivered = [a for a in attempts if a.outcome == DeliveryOutcome.SENT][-1]
            timestamp = at or _now()
            if timestamp <= delivered.timestamp:
                timestamp = delivered.timestamp + timedelta(microseconds=1)
            self.record(DeliveryAttempt(
                message_id=message_id,
                recipient_id=delivered.recipient_id,
                channel=delivered.channel,
                outcome=outcome,
                timestamp=timestamp,
                provider_message_id=delivered.provider_message_id,
            ))
            return True

    def mark_opened(self, message_id: str, at: Optional[datetime] = None) -> bool:
        """Record an open; ignored (False) unless the message was delivered."""
        return self._mark_engagement(message_id, DeliveryOutcome.OPENED, at)

    def mark_clicked(self, message_id: str, at: Optional[datetime] = None) -> bool:
        """Record a click; ignored (False) unless the message was delivered."""
        return self._mark_engagement(message_id, DeliveryOutcome.CLICKED, at)

    # ── Reading ──

    def attempts_for(self, message_id: str) -> List[DeliveryAttempt]:
        with session_scope(self._sessions) as session:
            rows = session.execute(
                select(DeliveryAttemptRow)
                .where(DeliveryAttemptRow.message_id == message_id)
                .order_by(DeliveryAttemptRow.timestamp)
            ).scalars().all()
            return [_row_to_attempt(r) for r in rows]

    def folded_status(self, message_id: str) -> Optional[DeliveryOutcome]:
        return fold_status(self.attempts_for(message_id))

    def find_by_provider_message_id(self, provider_message_id: str) -> Optional[DeliveryAttempt]:
        with session_scope(self._sessions) as session:
            row = session.execute(
                select(DeliveryAttemptRow)
                .where(DeliveryAttemptRow.provider_message_id == provider_message_id)
                .order_by(DeliveryAttemptRow.timestamp.desc())
                .limit(1)
            ).scalars().first()
            return _row_to_attempt(row) if row else None

    def stats_for(
        self,
        *,
        recipient_id: Optional[str] = None,
        family_id: Optional[str] = None,
        window: Union[str, timedelta] = "day",
        now: Optional[datetime] = None,
    ) -> DeliveryStats:
        """
        Delivery statistics for a recipient, a family, or everyone.

        Counts every message with at least one attempt inside the window.
        ``avg_attempts`` counts send attempts only (not opens/clicks).
        """
        now = now or _now()
        since = now - resolve_window(window)

        query = select(DeliveryAttemptRow).where(
            DeliveryAttemptRow.timestamp >= since,
            DeliveryAttemptRow.timestamp <= now,
        )
        if recipient_id:
            query = query.where(DeliveryAttemptRow.recipient_id == recipient_id)
        elif family_id:
            members = self._directory.members_of(family_id)
            if not members:
                return DeliveryStats()
            query = query.where(DeliveryAttemptRow.recipient_id.in_(members))

        with session_scope(self._sessions) as session:
            attempts = [_row_to_attempt(r) for r in session.execute(query).scalars()]

        return summarise(attempts)

    # ── Callback queue ──

    def submit_event(self, event: CallbackEvent) -> None:
        try:
            self._events.put_nowait(event)
        except queue.Full:
            raise NotifierError(
                "Delivery event queue is full",
                status_code=503,
                error_code="EVENT_QUEUE_FULL",
            ) from None

    def apply_event(self, event: CallbackEvent) -> bool:
        """Apply one callback; False when it was ignored."""
        attempt = self.find_by_provider_message_id(event.provider_message_id)
        if attempt is None:
            logger.warning("Callback for unknown provider id %s", event.provider_message_id)
            return False

        if event.event in (DeliveryOutcome.OPENED, DeliveryOutcome.CLICKED):
            return self._mark_engagement(attempt.message_id, event.event, event.received_at)

        if event.event == DeliveryOutcome.SENT:
            if self.folded_status(attempt.message_id) in _SUCCESS:
                return False
            self.record(DeliveryAttempt(
                message_id=attempt.message_id,
                recipient_id=attempt.recipient_id,
                channel=attempt.channel,
                outcome=DeliveryOutcome.SENT,
                timestamp=event.received_at,
                provider_message_id=event.provider_message_id,
            ))
            return True

        self.record(DeliveryAttempt(
            message_id=attempt.message_id,
            recipient_id=attempt.recipient_id,
            channel=attempt.channel,
            outcome=DeliveryOutcome.FAILED,
            timestamp=event.received_at,
            error_class=ErrorClass.PERMANENT,
            error_code=event.error_code,
            error_message="provider reported delivery failure",
            provider_message_id=event.provider_message_id,
        ))
        logger.warning(
            "Provider reported failure for %s (%s, code=%s)",
            attempt.message_id, attempt.channel.value, event.error_code,
            extra={"message_id": attempt.message_id, "error_code": event.error_code},
        )
        return True

    def process_pending_events(self, max_events: Optional[int] = None) -> int:
        """Drain queued callbacks on the calling thread; returns events applied."""
        applied = 0
        while max_events is None or applied < max_events:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                break
            if event is None:
                continue
            self._apply_safely(event)
            applied += 1
        return applied

    def _apply_safely(self, event: CallbackEvent) -> None:
        try:
            self.apply_event(event)
        except Exception:
            logger.exception("Failed to apply callback %s", event)

    def _consume(self) -> None:
        while True:
            event = self._events.get()
            if event is None:
                break
            self._apply_safely(event)

    def start(self) -> None:
        if self._consumer and self._consumer.is_alive():
            return
        self._consumer = threading.Thread(
            target=self._consume, name="delivery-tracker", daemon=True,
        )
        self._consumer.start()
        logger.info("Delivery tracker consumer started")

    def stop(self, timeout: float = 5.0) -> None:
        if not self._consumer:
            return
        self._events.put(None)
        self._consumer.join(timeout)
        self._consumer = None
        logger.info("Delivery tracker consumer stopped")


def summarise(attempts: Sequence[DeliveryAttempt]) -> DeliveryStats:
    """Fold attempts per message and aggregate."""
    by_message: Dict[str, List[DeliveryAttempt]] = {}
    for attempt in attempts:
        by_message.setdefault(attempt.message_id, []).append(attempt)

    stats = DeliveryStats()
    send_attempts = 0
    for message_attempts in by_message.values():
        folded = fold_status(message_attempts)
        stats.total += 1
        if folded in _SUCCESS:
            stats.successful += 1
        elif folded == DeliveryOutcome.FAILED:
            stats.failed += 1
        if folded in (DeliveryOutcome.OPENED, DeliveryOutcome.CLICKED):
            stats.opened += 1
        if folded == DeliveryOutcome.CLICKED:
            stats.clicked += 1

        for a in message_attempts:
            if a.outcome not in (DeliveryOutcome.SENT, DeliveryOutcome.FAILED):
                continue
            send_attempts += 1
            bucket = stats.by_channel.setdefault(
                a.channel.value, {"attempts": 0, "sent": 0, "failed": 0}
            )
            bucket["attempts"] += 1
            bucket["sent" if a.outcome == DeliveryOutcome.SENT else "failed"] += 1

    stats.avg_attempts = send_attempts / stats.total if stats.total else 0.0
    return stats
