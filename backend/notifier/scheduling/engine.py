"""
engine.py — NotificationEngine: the one object the HTTP layer talks to.

Wires the stores, router, rate limiter, retry manager, worker pool, tracker
and dispatcher together and exposes the operations the API needs:

    Messages    enqueue · cancel · message_status · upcoming
    Rules       enqueue_rule · set_rule_enabled · rule
    Helpers     schedule_due_reminders · schedule_digest
    Recipients  upsert_recipient · recipient
    Tracking    handle_callback · process_callbacks · stats · scheduler_stats
    Lifecycle   tick · start · shutdown · close

Constructed once per process (``NotificationEngine.from_settings``) in the
FastAPI lifespan and kept on ``app.state``; nothing here is a module-level
singleton, so tests build as many isolated engines as they like.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import random
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Type, TypeVar

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from backend.notifier.channels.base import ChannelProvider
from backend.notifier.channels.registry import build_providers, needs_http
from backend.notifier.core.config import Settings, get_settings
from backend.notifier.core.database import (
    close_db,
    create_session_factory,
    engine_from_settings,
    init_db,
)
from backend.notifier.core.errors import ValidationError
from backend.notifier.scheduling.dispatcher import Dispatcher, TickReport
from backend.notifier.scheduling.models import (
    Cadence,
    Channel,
    DeliveryOutcome,
    DeliveryStats,
    NotificationType,
    Priority,
    Recipient,
    RecurringRule,
    ScheduledMessage,
    _now,
    ensure_aware,
    load_timezone,
)
from backend.notifier.scheduling.rate_limiter import RateLimiter
from backend.notifier.scheduling.recipients import RecipientDirectory, parse_clock
from backend.notifier.scheduling.recurrence import first_on_or_after, validate_pattern
from backend.notifier.scheduling.retry import RetryManager, RetryPolicy
from backend.notifier.scheduling.router import ChannelRouter
from backend.notifier.scheduling.schedule_store import ScheduleStore
from backend.notifier.scheduling.templates import build_payload, notification_type_for
from backend.notifier.scheduling.throttle_store import ThrottleStore
from backend.notifier.scheduling.tracker import CallbackEvent, DeliveryTracker, fold_status
from backend.notifier.scheduling.worker import DeliveryWorkerPool

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Enum)

# Chore reminders go out this long before the due time
REMINDER_OFFSETS = (
    (timedelta(hours=24), "24 hours"),
    (timedelta(hours=4), "4 hours"),
    (timedelta(hours=1), "1 hour"),
)
_HIGH_PRIORITY_WITHIN = timedelta(hours=4)


def _coerce(enum_cls: Type[E], value: Any, field_name: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(
            f"Invalid {field_name} '{value}'. Must be one of: {[e.value for e in enum_cls]}",
            field=field_name,
        ) from None


class NotificationEngine:
    """
    Scheduling and delivery engine.

    Parameters
    ----------
    config : Settings
    session_factory : sessionmaker
        Bound to a database whose tables already exist.
    providers : dict
        Channel → ChannelProvider. Channels without a provider are skipped.
    clock : callable | None
        Returns aware UTC "now"; injectable for tests.
    rng : random.Random | None
        Jitter source for retry backoff.
    http_client : httpx.Client | None
        Closed by ``close()`` when given.
    db_engine : Engine | None
        Disposed by ``close()`` when given.
    """

    def __init__(
        self,
        config: Settings,
        session_factory: sessionmaker,
        providers: Dict[Channel, ChannelProvider],
        *,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
        http_client: Optional[httpx.Client] = None,
        db_engine: Optional[Engine] = None,
    ):
        self.settings = config
        self._clock = clock or _now
        self._http_client = http_client
        self._db_engine = db_engine
        self._session_factory = session_factory
        self._loop_task: Optional[asyncio.Task] = None
        self._closed = False

        self.providers: Dict[Channel, ChannelProvider] = dict(providers)
        self.store = ScheduleStore(session_factory, grace_seconds=config.ENQUEUE_GRACE_SECONDS)
        self.throttle_store = ThrottleStore(session_factory)
        self.directory = RecipientDirectory(session_factory)
        self.router = ChannelRouter(
            self.directory,
            default_channels=[Channel(c) for c in config.DEFAULT_CHANNEL_ORDER],
            available_channels=self.providers.keys(),
        )
        self.rate_limiter = RateLimiter(
            self.throttle_store,
            {Channel(name): limit for name, limit in config.throttle_limits.items()},
            window_seconds=config.THROTTLE_WINDOW_SECONDS,
        )
        self.retry_manager = RetryManager(
            self.store,
            RetryPolicy(
                base_delay_seconds=config.RETRY_BASE_DELAY_SECONDS,
                max_delay_seconds=config.RETRY_MAX_DELAY_SECONDS,
                jitter=config.RETRY_JITTER,
            ),
            rng=rng,
        )
        self.tracker = DeliveryTracker(
            session_factory, self.directory, queue_maxsize=config.EVENT_QUEUE_MAXSIZE,
        )
        self.worker_pool = DeliveryWorkerPool(
            self.store,
            self.directory,
            self.providers,
            self.rate_limiter,
            self.retry_manager,
            self.tracker,
            pool_size=config.WORKER_POOL_SIZE,
            send_timeout=config.PROVIDER_TIMEOUT_SECONDS,
            clock=self._clock,
        )
        self.dispatcher = Dispatcher(
            self.store,
            self.router,
            self.worker_pool,
            self.throttle_store,
            clock=self._clock,
            batch_limit=config.DISPATCH_BATCH_LIMIT,
            rule_catchup_limit=config.RULE_CATCHUP_LIMIT,
            lease_seconds=config.CLAIM_LEASE_SECONDS,
            default_max_attempts=config.DEFAULT_MAX_ATTEMPTS,
        )

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "NotificationEngine":
        """Build the database, providers and engine described by ``config``."""
        config = config or get_settings()
        db_engine = engine_from_settings(config)
        init_db(db_engine)
        http_client = (
            httpx.Client(timeout=config.PROVIDER_TIMEOUT_SECONDS) if needs_http(config) else None
        )
        providers = build_providers(config, http_client)
        return cls(
            config,
            create_session_factory(db_engine),
            providers,
            http_client=http_client,
            db_engine=db_engine,
        )

    def now(self) -> datetime:
        return self._clock()

    @property
    def db_engine(self) -> Optional[Engine]:
        return self._db_engine or self._session_factory.kw.get("bind")

    # ═══════════════════════════════════════════════════════════════════
    # Messages
    # ═══════════════════════════════════════════════════════════════════

    def enqueue(
        self,
        recipient_id: str,
        notification_type: Any,
        template_id: str,
        data: Optional[Dict[str, Any]] = None,
        *,
        schedule_at: Optional[datetime] = None,
        priority: Any = Priority.MEDIUM,
        force_channel: Optional[Any] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        """
        Schedule a one-off notification.

        Parameters
        ----------
        recipient_id : str
        notification_type : NotificationType | str
        template_id : str
        data : dict
            Template payload; validated against the template's fields.
        schedule_at : datetime | None
            Aware send time; None means "as soon as possible".
        priority : Priority | str
        force_channel : Channel | str | None
            Restrict delivery to this single channel (no fallback).
        max_attempts : int | None
            Attempts per channel; defaults to ``DEFAULT_MAX_ATTEMPTS``.

        Returns
        -------
        str
            The new message id.
        """
        data = dict(data or {})
        build_payload(template_id, data)
        now = self._clock()

        if force_channel is not None:
            channel = _coerce(Channel, force_channel, "force_channel")
            if not self.router.is_available(channel):
                raise ValidationError(
                    f"No provider configured for channel '{channel.value}'",
                    field="force_channel",
                )
            channels = [channel]
        else:
            channels = self.router.ordered_channels(recipient_id)

        message = ScheduledMessage(
            recipient_id=recipient_id,
            notification_type=_coerce(NotificationType, notification_type, "notification_type"),
            template_id=template_id,
            data=data,
            schedule_at=schedule_at if schedule_at is not None else now,
            priority=_coerce(Priority, priority, "priority"),
            channels=channels,
            max_attempts=max_attempts if max_attempts is not None else self.settings.DEFAULT_MAX_ATTEMPTS,
        )
        return self.store.enqueue(message, now=now)

    def cancel(self, message_id: str) -> ScheduledMessage:
        """Cancel a pending message; raises AlreadyTerminalError otherwise."""
        return self.store.cancel(message_id)

    def message(self, message_id: str) -> ScheduledMessage:
        return self.store.require(message_id)

    def message_status(self, message_id: str) -> Dict[str, Any]:
        """Message state plus folded delivery status and attempt history."""
        message = self.store.require(message_id)
        attempts = self.tracker.attempts_for(message_id)
        folded: Optional[DeliveryOutcome] = fold_status(attempts)
        result = message.to_dict()
        result["delivery_status"] = folded.value if folded else None
        result["attempt_history"] = [a.to_dict() for a in attempts]
        return result

    def upcoming(
        self,
        hours: float = 24.0,
        *,
        recipient_id: Optional[str] = None,
        limit: int = 500,
    ) -> List[ScheduledMessage]:
        if hours <= 0:
            raise ValidationError("hours must be positive", field="hours")
        now = self._clock()
        return self.store.upcoming(
            now, now + timedelta(hours=hours), recipient_id=recipient_id, limit=limit,
        )

    # ═══════════════════════════════════════════════════════════════════
    # Rules
    # ═══════════════════════════════════════════════════════════════════

    def enqueue_rule(
        self,
        recipient_id: str,
        notification_type: Optional[Any],
        template_id: str,
        cadence: Any,
        data: Optional[Dict[str, Any]] = None,
        *,
        interval: int = 1,
        days_of_week: Optional[Iterable[int]] = None,
        day_of_month: Optional[int] = None,
        start_at: Optional[datetime] = None,
        timezone: str = "UTC",
        priority: Any = Priority.MEDIUM,
        enabled: bool = True,
    ) -> str:
        """
        Create a recurring rule; returns its id.

        ``start_at`` fixes the local time of day of every occurrence. When
        omitted the rule starts now. Weekly rules without ``days_of_week``
        repeat on the start's weekday; monthly rules without
        ``day_of_month`` on the start's day (clamped in short months).
        Without ``notification_type`` the template's own type is used.
        """
        data = dict(data or {})
        build_payload(template_id, data)
        if notification_type is None:
            notification_type = notification_type_for(template_id)
        cadence = _coerce(Cadence, cadence, "cadence")
        tz = load_timezone(timezone)
        now = self._clock()
        start = ensure_aware(start_at, "start_at") if start_at is not None else now
        local_start = start.astimezone(tz)

        days = sorted({int(d) for d in (days_of_week or [])})
        if cadence == Cadence.WEEKLY and not days:
            days = [local_start.isoweekday()]
        if cadence == Cadence.MONTHLY and day_of_month is None:
            day_of_month = local_start.day
        validate_pattern(cadence, interval, days, day_of_month)

        rule = RecurringRule(
            recipient_id=recipient_id,
            notification_type=_coerce(NotificationType, notification_type, "notification_type"),
            template_id=template_id,
            cadence=cadence,
            next_fire_at=start,
            interval=interval,
            days_of_week=days,
            day_of_month=day_of_month,
            timezone=timezone,
            data=data,
            priority=_coerce(Priority, priority, "priority"),
            enabled=enabled,
        )
        rule.next_fire_at = first_on_or_after(rule, max(start, now))
        return self.store.enqueue_rule(rule, now=now)

    def rule(self, rule_id: str) -> RecurringRule:
        return self.store.require_rule(rule_id)

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> RecurringRule:
        """
        Pause or resume a rule.

        Resuming moves ``next_fire_at`` to the first occurrence at or after
        now; occurrences missed while paused are not sent.
        """
        rule = self.store.require_rule(rule_id)
        next_fire_at = None
        now = self._clock()
        if enabled and rule.next_fire_at < now:
            next_fire_at = first_on_or_after(rule, now)
        return self.store.set_rule_enabled(rule_id, enabled, next_fire_at=next_fire_at)

    # ═══════════════════════════════════════════════════════════════════
    # Chore helpers
    # ═══════════════════════════════════════════════════════════════════

    def schedule_due_reminders(
        self,
        recipient_id: str,
        chore_title: str,
        due_at: datetime,
        *,
        recipient_name: str = "",
        points: int = 0,
    ) -> List[str]:
        """
        Schedule reminders 24 h, 4 h and 1 h before ``due_at``.

        Reminder times already in the past are skipped; those within four
        hours of the due time go out at HIGH priority.
        """
        due_at = ensure_aware(due_at, "due_at")
        now = self._clock()
        ids: List[str] = []
        for offset, label in REMINDER_OFFSETS:
            send_at = due_at - offset
            if send_at <= now:
                continue
            ids.append(self.enqueue(
                recipient_id,
                NotificationType.REMINDER,
                "chore_reminder",
                {
                    "recipient_name": recipient_name,
                    "chore_title": chore_title,
                    "points": points,
                    "due_in": label,
                },
                schedule_at=send_at,
                priority=Priority.HIGH if offset <= _HIGH_PRIORITY_WITHIN else Priority.MEDIUM,
            ))
        logger.info(
            "Scheduled %d reminder(s) for '%s' due %s",
            len(ids), chore_title, due_at.isoformat(),
            extra={"recipient_id": recipient_id},
        )
        return ids

    def schedule_digest(
        self,
        recipient_id: str,
        *,
        frequency: str = "daily",
        time_of_day: str = "09:00",
        timezone: str = "UTC",
        recipient_name: str = "",
    ) -> str:
        """Daily digest, or weekly on Mondays, at ``time_of_day`` local time."""
        if frequency not in ("daily", "weekly"):
            raise ValidationError("frequency must be 'daily' or 'weekly'", field="frequency")
        at = parse_clock(time_of_day, "time_of_day")
        tz = load_timezone(timezone)
        local_now = self._clock().astimezone(tz)
        start = datetime.combine(local_now.date(), at, tzinfo=tz)

        weekly = frequency == "weekly"
        return self.enqueue_rule(
            recipient_id,
            NotificationType.DIGEST,
            "digest",
            Cadence.WEEKLY if weekly else Cadence.DAILY,
            {"recipient_name": recipient_name, "period": frequency},
            days_of_week=[1] if weekly else None,
            start_at=start,
            timezone=timezone,
            priority=Priority.LOW,
        )

    # ═══════════════════════════════════════════════════════════════════
    # Recipients
    # ═══════════════════════════════════════════════════════════════════

    def upsert_recipient(self, recipient: Recipient) -> Recipient:
        return self.directory.upsert(recipient)

    def recipient(self, recipient_id: str) -> Optional[Recipient]:
        return self.directory.get(recipient_id)

    # ═══════════════════════════════════════════════════════════════════
    # Tracking
    # ═══════════════════════════════════════════════════════════════════

    def handle_callback(
        self,
        provider_message_id: str,
        event: Any,
        error_code: Optional[str] = None,
    ) -> None:
        """Queue a provider receipt for the tracker."""
        self.tracker.submit_event(CallbackEvent(
            provider_message_id=provider_message_id,
            event=_coerce(DeliveryOutcome, event, "event"),
            error_code=error_code,
            received_at=self._clock(),
        ))

    def process_callbacks(self) -> int:
        return self.tracker.process_pending_events()

    def stats(
        self,
        *,
        recipient_id: Optional[str] = None,
        family_id: Optional[str] = None,
        window: str = "day",
    ) -> DeliveryStats:
        return self.tracker.stats_for(
            recipient_id=recipient_id,
            family_id=family_id,
            window=window,
            now=self._clock(),
        )

    def scheduler_stats(self) -> Dict[str, Any]:
        now = self._clock()
        report = self.dispatcher.last_report
        return {
            "messages": self.store.status_counts(),
            "rules": self.store.rule_counts(),
            "active_throttles": self.throttle_store.active_by_channel(now),
            "providers": sorted(c.value for c in self.providers),
            "last_tick_at": (
                self.dispatcher.last_tick_at.isoformat() if self.dispatcher.last_tick_at else None
            ),
            "last_tick": report.to_dict() if report else None,
        }

    # ═══════════════════════════════════════════════════════════════════
    # Lifecycle
    # ═══════════════════════════════════════════════════════════════════

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        return self.dispatcher.tick(now)

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self, *, run_dispatcher: bool = True) -> None:
        """Start the callback consumer and, optionally, the dispatch loop."""
        self.tracker.start()
        if run_dispatcher and not self.running:
            self._loop_task = asyncio.create_task(
                self.dispatcher.run_forever(self.settings.DISPATCH_INTERVAL_SECONDS),
                name="notifier-dispatcher",
            )

    async def shutdown(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
        # Cancelling the loop does not stop a tick already running in its thread
        await asyncio.to_thread(self.close)

    def close(self) -> None:
        """
        Release threads, HTTP connections and database connections.

        A tick in progress is allowed to finish first, so messages it has
        claimed are delivered rather than left leased.
        """
        if self._closed:
            return
        self._closed = True
        grace = self.settings.SHUTDOWN_GRACE_SECONDS
        if not self.dispatcher.stop(timeout=grace):
            logger.warning("Tick still running after %.0fs, closing anyway", grace)
        self.tracker.stop()
        self.worker_pool.shutdown()
        if self._http_client is not None:
            self._http_client.close()
        if self._db_engine is not None:
            close_db(self._db_engine)
        logger.info("Notification engine stopped")
