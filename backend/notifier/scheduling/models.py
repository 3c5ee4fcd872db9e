"""
models.py — Shared data structures for notification scheduling and delivery.

Defines:
    • Channel, MessageStatus, DeliveryOutcome, ErrorClass — delivery enums
    • NotificationType, Priority, Cadence — what is sent and how often
    • QuietHours, ChannelPreference, Recipient — who receives it and how
    • ScheduledMessage, RecurringRule — what the schedule store holds
    • ThrottleState, AdmitResult — rate limiter bookkeeping
    • DeliveryAttempt, DeliveryStats — tracker records
    • RouteDecision, DeliveryJob, JobResult — dispatcher ↔ worker hand-off

═══════════════════════════════════════════════════════════════════════════
MESSAGE LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    enqueue ──► PENDING ──► (claimed by a tick) ──► worker
                  ▲   │                              │
                  │   └── cancel ──► CANCELLED       ├── success ──► SENT
                  │                                  ├── all channels failed ──► FAILED
                  └──── retry / throttle / quiet ────┘

SENT, FAILED and CANCELLED are terminal. A message never leaves a terminal
state; later provider callbacks only add DeliveryAttempt rows.

═══════════════════════════════════════════════════════════════════════════
CHANNEL FALLBACK STATE
═══════════════════════════════════════════════════════════════════════════

A message carries its own ordered channel snapshot and a cursor into it:

    channels      = [whatsapp, sms, email]
    channel_index = 1            → currently trying sms
    attempts      = 2            → two attempts on sms so far
    total_attempts= 5            → three on whatsapp + two on sms

Retries keep ``channel_index`` and bump ``attempts``; a fallback moves the
cursor and resets ``attempts`` to zero.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.notifier.core.errors import ValidationError


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Channel(str, Enum):
    """Outbound delivery channels."""
    WHATSAPP = "whatsapp"
    SMS      = "sms"
    EMAIL    = "email"


class MessageStatus(str, Enum):
    """Scheduled message state machine."""
    PENDING   = "pending"
    SENT      = "sent"
    FAILED    = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not MessageStatus.PENDING


class DeliveryOutcome(str, Enum):
    """Outcome of one attempt, or a later engagement event."""
    SENT    = "sent"
    OPENED  = "opened"
    CLICKED = "clicked"
    FAILED  = "failed"


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class NotificationType(str, Enum):
    """What happened in the household that triggers a message."""
    ASSIGNED  = "assigned"
    REMINDER  = "reminder"
    COMPLETED = "completed"
    APPROVED  = "approved"
    REJECTED  = "rejected"
    DIGEST    = "digest"
    UPDATE    = "update"


class Priority(str, Enum):
    LOW    = "low"
    MEDIUM = "medium"
    HIGH   = "high"
    URGENT = "urgent"  # bypasses quiet hours


class Cadence(str, Enum):
    DAILY   = "daily"
    WEEKLY  = "weekly"
    MONTHLY = "monthly"


class AdmitDecision(str, Enum):
    ALLOWED  = "allowed"
    DEFERRED = "deferred"
    DISABLED = "disabled"    # limit 0: the channel is switched off


class JobOutcome(str, Enum):
    """How a worker left a message after processing one job."""
    SENT      = "sent"
    FAILED    = "failed"      # channels exhausted
    RETRY     = "retry"       # transient failure, rescheduled on same channel
    DEFERRED  = "deferred"    # throttled, rescheduled at window end
    CANCELLED = "cancelled"   # cancelled while queued


TERMINAL_STATUSES: FrozenSet[MessageStatus] = frozenset(
    {MessageStatus.SENT, MessageStatus.FAILED, MessageStatus.CANCELLED}
)


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id() -> str:
    return uuid.uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


def load_timezone(name: str) -> ZoneInfo:
    """Resolve an IANA zone name, raising ValidationError for unknown zones."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone '{name}'", field="timezone") from exc


def ensure_aware(value: datetime, field_name: str = "timestamp") -> datetime:
    """Reject naive datetimes; normalise aware ones to UTC."""
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(f"{field_name} must be timezone-aware", field=field_name)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Recipient preferences
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class QuietHours:
    """
    Local-time window in which non-urgent messages are held back.

    ``start`` > ``end`` means the window wraps past midnight
    (22:00 → 07:00). ``start == end`` is an empty window.
    """
    start: time
    end: time
    timezone: str = "UTC"
    enabled: bool = True

    def __post_init__(self) -> None:
        load_timezone(self.timezone)

    @property
    def wraps_midnight(self) -> bool:
        return self.start > self.end

    def contains(self, now: datetime) -> bool:
        if not self.enabled or self.start == self.end:
            return False
        local = now.astimezone(load_timezone(self.timezone)).time().replace(tzinfo=None)
        if self.wraps_midnight:
            return local >= self.start or local < self.end
        return self.start <= local < self.end

    def window_end(self, now: datetime) -> datetime:
        """UTC instant at which the window containing ``now`` closes."""
        tz = load_timezone(self.timezone)
        local = now.astimezone(tz)
        end_date = local.date()
        if self.wraps_midnight and local.time().replace(tzinfo=None) >= self.start:
            end_date = end_date + timedelta(days=1)
        end_local = datetime.combine(end_date, self.end, tzinfo=tz)
        return end_local.astimezone(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.strftime("%H:%M"),
            "end": self.end.strftime("%H:%M"),
            "timezone": self.timezone,
            "enabled": self.enabled,
        }


@dataclass
class ChannelPreference:
    """Ordered channel list (primary first), enabled types and quiet hours."""
    channels: List[Channel]
    enabled_types: FrozenSet[NotificationType] = field(
        default_factory=lambda: frozenset(NotificationType)
    )
    quiet_hours: Optional[QuietHours] = None

    def __post_init__(self) -> None:
        self.channels = [Channel(c) for c in self.channels]
        if not self.channels:
            raise ValidationError("Channel preference needs at least one channel", field="channels")
        if len(set(self.channels)) != len(self.channels):
            raise ValidationError("Channel preference lists a channel twice", field="channels")
        self.enabled_types = frozenset(NotificationType(t) for t in self.enabled_types)

    def allows(self, notification_type: NotificationType) -> bool:
        return notification_type in self.enabled_types

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channels": [c.value for c in self.channels],
            "enabled_types": sorted(t.value for t in self.enabled_types),
            "quiet_hours": self.quiet_hours.to_dict() if self.quiet_hours else None,
        }


@dataclass
class Recipient:
    """
    A household member that can receive notifications.

    Attributes
    ----------
    recipient_id : str
        User id in the chore app.
    family_id : str | None
        Household the user belongs to; used for family statistics.
    phone : str | None
        SMS number (normalised to E.164 by the SMS provider).
    email : str | None
    whatsapp : str | None
        WhatsApp number; falls back to ``phone`` when unset.
    preference : ChannelPreference | None
        None means "use the configured default order".
    """
    recipient_id: str
    name: str = ""
    family_id: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    whatsapp: Optional[str] = None
    preference: Optional[ChannelPreference] = None

    def address_for(self, channel: Channel) -> Optional[str]:
        if channel == Channel.SMS:
            return self.phone
        if channel == Channel.EMAIL:
            return self.email
        if channel == Channel.WHATSAPP:
            return self.whatsapp or self.phone
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recipient_id": self.recipient_id,
            "name": self.name,
            "family_id": self.family_id,
            "phone": self.phone,
            "email": self.email,
            "whatsapp": self.whatsapp,
            "preference": self.preference.to_dict() if self.preference else None,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Schedule store records
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ScheduledMessage:
    """One notification waiting for, or done with, delivery."""
    recipient_id: str
    notification_type: NotificationType
    template_id: str
    schedule_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)
    message_id: str = field(default_factory=_generate_id)
    priority: Priority = Priority.MEDIUM
    status: MessageStatus = MessageStatus.PENDING
    channels: List[Channel] = field(default_factory=list)
    channel_index: int = 0
    attempts: int = 0
    max_attempts: int = 3
    total_attempts: int = 0
    rule_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    leased_until: Optional[datetime] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def current_channel(self) -> Optional[Channel]:
        if 0 <= self.channel_index < len(self.channels):
            return self.channels[self.channel_index]
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "recipient_id": self.recipient_id,
            "notification_type": self.notification_type.value,
            "template_id": self.template_id,
            "data": self.data,
            "priority": self.priority.value,
            "schedule_at": self.schedule_at.isoformat(),
            "status": self.status.value,
            "channels": [c.value for c in self.channels],
            "current_channel": self.current_channel.value if self.current_channel else None,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "total_attempts": self.total_attempts,
            "rule_id": self.rule_id,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class RecurringRule:
    """
    A recurrence that materializes ScheduledMessages on each occurrence.

    ``days_of_week`` uses ISO numbering (1 = Monday … 7 = Sunday).
    Occurrences keep the local wall-clock time of ``next_fire_at`` in
    ``timezone`` across DST changes.
    """
    recipient_id: str
    notification_type: NotificationType
    template_id: str
    cadence: Cadence
    next_fire_at: datetime
    interval: int = 1
    days_of_week: List[int] = field(default_factory=list)
    day_of_month: Optional[int] = None
    timezone: str = "UTC"
    data: Dict[str, Any] = field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    enabled: bool = True
    rule_id: str = field(default_factory=_generate_id)
    last_fired_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_now)
    version: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "recipient_id": self.recipient_id,
            "notification_type": self.notification_type.value,
            "template_id": self.template_id,
            "cadence": self.cadence.value,
            "interval": self.interval,
            "days_of_week": list(self.days_of_week),
            "day_of_month": self.day_of_month,
            "timezone": self.timezone,
            "data": self.data,
            "priority": self.priority.value,
            "enabled": self.enabled,
            "next_fire_at": self.next_fire_at.isoformat(),
            "last_fired_at": _iso(self.last_fired_at),
            "created_at": self.created_at.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Rate limiting
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ThrottleState:
    """Fixed-window counter for one (recipient, channel) pair."""
    recipient_id: str
    channel: Channel
    window_start: datetime
    window_seconds: int
    limit: int
    count: int = 0
    version: int = 0  # 0 = not yet persisted

    @property
    def window_end(self) -> datetime:
        return self.window_start + timedelta(seconds=self.window_seconds)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.window_end


@dataclass(frozen=True)
class AdmitResult:
    decision: AdmitDecision
    retry_at: Optional[datetime] = None

    @property
    def allowed(self) -> bool:
        return self.decision == AdmitDecision.ALLOWED


# ═══════════════════════════════════════════════════════════════════════════
# Delivery tracking
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DeliveryAttempt:
    """Immutable record of one attempt (or engagement event) for a message."""
    message_id: str
    recipient_id: str
    channel: Channel
    outcome: DeliveryOutcome
    timestamp: datetime = field(default_factory=_now)
    attempt_id: str = field(default_factory=_generate_id)
    error_class: Optional[ErrorClass] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    latency_ms: Optional[float] = None
    provider_message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "message_id": self.message_id,
            "recipient_id": self.recipient_id,
            "channel": self.channel.value,
            "outcome": self.outcome.value,
            "timestamp": self.timestamp.isoformat(),
            "error_class": self.error_class.value if self.error_class else None,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "latency_ms": round(self.latency_ms, 1) if self.latency_ms is not None else None,
            "provider_message_id": self.provider_message_id,
        }


@dataclass
class DeliveryStats:
    """Aggregated outcomes over a time window."""
    total: int = 0
    successful: int = 0
    failed: int = 0
    by_channel: Dict[str, Dict[str, int]] = field(default_factory=dict)
    avg_attempts: float = 0.0
    opened: int = 0
    clicked: int = 0

    @property
    def success_rate(self) -> float:
        return self.successful / self.total if self.total else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "by_channel": self.by_channel,
            "avg_attempts": round(self.avg_attempts, 2),
            "opened": self.opened,
            "clicked": self.clicked,
            "success_rate": f"{self.success_rate:.1%}",
        }


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher ↔ worker hand-off
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RouteDecision:
    """
    Router output: either an ordered channel list or a deferral.

    Empty ``channels`` with no ``defer_until`` means nothing may be sent
    (the recipient disabled this notification type).
    """
    channels: List[Channel] = field(default_factory=list)
    defer_until: Optional[datetime] = None
    reason: Optional[str] = None

    @property
    def deferred(self) -> bool:
        return self.defer_until is not None


@dataclass
class DeliveryJob:
    """A claimed message plus the channel list it will walk."""
    message: ScheduledMessage
    channels: List[Channel]
    now: datetime = field(default_factory=_now)


@dataclass
class JobResult:
    message_id: str
    outcome: JobOutcome
    attempts: List[DeliveryAttempt] = field(default_factory=list)
    next_attempt_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def last_attempt(self) -> Optional[DeliveryAttempt]:
        return self.attempts[-1] if self.attempts else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "outcome": self.outcome.value,
            "attempts": [a.to_dict() for a in self.attempts],
            "next_attempt_at": _iso(self.next_attempt_at),
            "error": self.error,
        }
