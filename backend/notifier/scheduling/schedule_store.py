"""
schedule_store.py — Durable storage for scheduled messages and recurring rules.

The store is plain data access plus the invariants that must hold no matter
who calls it:

    • enqueue rejects messages scheduled in the past (beyond a grace period)
    • an enabled rule always has ``next_fire_at ≥ now`` when it is created
    • cancel only moves PENDING → CANCELLED; terminal messages are untouched
    • claims, rule advances and status moves are compare-and-set on
      ``version`` (or on ``status``), so two ticks cannot both own a row
    • a rule occurrence is materialized at most once (unique idempotency key)

Rows come back as dataclasses from ``models``; ORM objects never leave a
session.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from backend.notifier.core.database import session_scope
from backend.notifier.core.errors import AlreadyTerminalError, NotFoundError, ValidationError
from backend.notifier.scheduling.models import (
    Cadence,
    Channel,
    MessageStatus,
    NotificationType,
    Priority,
    RecurringRule,
    ScheduledMessage,
    _now,
    ensure_aware,
)
from backend.notifier.scheduling.recurrence import validate_pattern
from backend.notifier.scheduling.tables import RecurringRuleRow, ScheduledMessageRow

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Row ↔ dataclass conversion
# ═══════════════════════════════════════════════════════════════════════════

def _row_to_message(row: ScheduledMessageRow) -> ScheduledMessage:
    return ScheduledMessage(
        message_id=row.message_id,
        recipient_id=row.recipient_id,
        notification_type=NotificationType(row.notification_type),
        template_id=row.template_id,
        data=dict(row.data or {}),
        priority=Priority(row.priority),
        schedule_at=row.schedule_at,
        status=MessageStatus(row.status),
        channels=[Channel(c) for c in (row.channels or [])],
        channel_index=row.channel_index,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        total_attempts=row.total_attempts,
        rule_id=row.rule_id,
        idempotency_key=row.idempotency_key,
        last_error=row.last_error,
        created_at=row.created_at,
        updated_at=row.updated_at,
        leased_until=row.leased_until,
        version=row.version,
    )


def _message_to_row(msg: ScheduledMessage) -> ScheduledMessageRow:
    return ScheduledMessageRow(
        message_id=msg.message_id,
        recipient_id=msg.recipient_id,
        notification_type=msg.notification_type.value,
        template_id=msg.template_id,
        data=msg.data,
        priority=msg.priority.value,
        schedule_at=msg.schedule_at,
        status=msg.status.value,
        channels=[c.value for c in msg.channels],
        channel_index=msg.channel_index,
        attempts=msg.attempts,
        max_attempts=msg.max_attempts,
        total_attempts=msg.total_attempts,
        rule_id=msg.rule_id,
        idempotency_key=msg.idempotency_key,
        last_error=msg.last_error,
        created_at=msg.created_at,
        updated_at=msg.updated_at,
        leased_until=None,
        version=1,
    )


def _row_to_rule(row: RecurringRuleRow) -> RecurringRule:
    return RecurringRule(
        rule_id=row.rule_id,
        recipient_id=row.recipient_id,
        notification_type=NotificationType(row.notification_type),
        template_id=row.template_id,
        data=dict(row.data or {}),
        priority=Priority(row.priority),
        cadence=Cadence(row.cadence),
        interval=row.interval,
        days_of_week=list(row.days_of_week or []),
        day_of_month=row.day_of_month,
        timezone=row.timezone,
        enabled=row.enabled,
        next_fire_at=row.next_fire_at,
        last_fired_at=row.last_fired_at,
        created_at=row.created_at,
        version=row.version,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class ScheduleStore:
    """SQL-backed schedule of messages and recurring rules."""

    def __init__(self, session_factory: sessionmaker, *, grace_seconds: int = 60):
        self._sessions = session_factory
        self.grace = timedelta(seconds=grace_seconds)

    # ── Messages ──

    def enqueue(self, message: ScheduledMessage, *, now: Optional[datetime] = None) -> str:
        """
        Persist a new pending message.

        Raises
        ------
        ValidationError
            ``schedule_at`` is more than the grace period in the past,
            or ``max_attempts`` is below 1.
        """
        now = now or _now()
        message.schedule_at = ensure_aware(message.schedule_at, "schedule_at")
        if message.schedule_at < now - self.grace:
            raise ValidationError(
                "schedule_at is in the past",
                field="schedule_at",
                schedule_at=message.schedule_at.isoformat(),
                now=now.isoformat(),
            )
        if message.max_attempts < 1:
            raise ValidationError("max_attempts must be at least 1", field="max_attempts")

        message.status = MessageStatus.PENDING
        message.created_at = message.updated_at = now
        with session_scope(self._sessions) as session:
            session.add(_message_to_row(message))
        message.version = 1

        logger.info(
            "Enqueued %s (%s/%s) for %s at %s",
            message.message_id, message.notification_type.value,
            message.template_id, message.recipient_id,
            message.schedule_at.isoformat(),
            extra={"message_id": message.message_id, "recipient_id": message.recipient_id},
        )
        return message.message_id

    def insert_materialized(self, message: ScheduledMessage) -> bool:
        """
        Insert a rule occurrence; False if its idempotency key already exists.

        No past-time check: occurrences are due by definition.
        """
        if not message.idempotency_key:
            raise ValueError("materialized messages need an idempotency key")
        with session_scope(self._sessions) as session:
            existing = session.execute(
                select(ScheduledMessageRow.message_id).where(
                    ScheduledMessageRow.idempotency_key == message.idempotency_key
                )
            ).first()
            if existing is not None:
                return False
        try:
            with session_scope(self._sessions) as session:
                session.add(_message_to_row(message))
        except IntegrityError:
            # Lost the race to a concurrent tick; the other insert wins
            return False
        return True

    def get(self, message_id: str) -> Optional[ScheduledMessage]:
        with session_scope(self._sessions) as session:
            row = session.get(ScheduledMessageRow, message_id)
            return _row_to_message(row) if row else None

    def require(self, message_id: str) -> ScheduledMessage:
        message = self.get(message_id)
        if message is None:
            raise NotFoundError("ScheduledMessage", message_id=message_id)
        return message

    def due_messages(self, now: datetime, limit: int = 200) -> List[ScheduledMessage]:
        """Pending, due and unclaimed messages, oldest ``schedule_at`` first."""
        with session_scope(self._sessions) as session:
            rows = session.execute(
                select(ScheduledMessageRow)
                .where(
                    ScheduledMessageRow.status == MessageStatus.PENDING.value,
                    ScheduledMessageRow.schedule_at <= now,
                    or_(
                        ScheduledMessageRow.leased_until.is_(None),
                        ScheduledMessageRow.leased_until <= now,
                    ),
                )
                .order_by(ScheduledMessageRow.schedule_at, ScheduledMessageRow.created_at)
                .limit(limit)
            ).scalars().all()
            return [_row_to_message(r) for r in rows]

    def claim(self, message_id: str, *, expected_version: int, lease_until: datetime) -> bool:
        """
        Take a short lease on a due message.

        Succeeds only if nobody changed the row since it was read and it is
        still pending.
        """
        with session_scope(self._sessions) as session:
            result = session.execute(
                update(ScheduledMessageRow)
                .where(
                    ScheduledMessageRow.message_id == message_id,
                    ScheduledMessageRow.version == expected_version,
                    ScheduledMessageRow.status == MessageStatus.PENDING.value,
                )
                .values(
                    leased_until=lease_until,
                    version=ScheduledMessageRow.version + 1,
                    updated_at=_now(),
                )
            )
            return result.rowcount == 1

    def cancel(self, message_id: str) -> ScheduledMessage:
        """
        PENDING → CANCELLED.

        Raises
        ------
        NotFoundError
            Unknown id.
        AlreadyTerminalError
            The message is already sent, failed or cancelled; nothing changes.
        """
        with session_scope(self._sessions) as session:
            result = session.execute(
                update(ScheduledMessageRow)
                .where(
                    ScheduledMessageRow.message_id == message_id,
                    ScheduledMessageRow.status == MessageStatus.PENDING.value,
                )
                .values(
                    status=MessageStatus.CANCELLED.value,
                    version=ScheduledMessageRow.version + 1,
                    updated_at=_now(),
                )
            )
            changed = result.rowcount == 1

        message = self.require(message_id)
        if not changed:
            raise AlreadyTerminalError(message_id, message.status.value)
        logger.info("Cancelled %s", message_id, extra={"message_id": message_id})
        return message

    def mark_status(
        self,
        message_id: str,
        status: MessageStatus,
        *,
        last_error: Optional[str] = None,
        channel_index: Optional[int] = None,
        total_attempts: Optional[int] = None,
    ) -> bool:
        """Move a pending message to ``status``; False if it already left pending."""
        values: Dict[str, Any] = {
            "status": status.value,
            "leased_until": None,
            "version": ScheduledMessageRow.version + 1,
            "updated_at": _now(),
        }
        if last_error is not None:
            values["last_error"] = last_error
        if channel_index is not None:
            values["channel_index"] = channel_index
        if total_attempts is not None:
            values["total_attempts"] = total_attempts
        with session_scope(self._sessions) as session:
            result = session.execute(
                update(ScheduledMessageRow)
                .where(
                    ScheduledMessageRow.message_id == message_id,
                    ScheduledMessageRow.status == MessageStatus.PENDING.value,
                )
                .values(**values)
            )
            return result.rowcount == 1

    def update_delivery_state(
        self,
        message_id: str,
        *,
        schedule_at: Optional[datetime] = None,
        channels: Optional[List[Channel]] = None,
        channel_index: Optional[int] = None,
        attempts: Optional[int] = None,
        total_attempts: Optional[int] = None,
        last_error: Optional[str] = None,
        release: bool = True,
    ) -> bool:
        """
        Persist the worker's progress on a still-pending message.

        ``release`` drops the claim lease so the row becomes due again at
        ``schedule_at``.
        """
        values: Dict[str, Any] = {
            "version": ScheduledMessageRow.version + 1,
            "updated_at": _now(),
        }
        if schedule_at is not None:
            values["schedule_at"] = schedule_at
        if channels is not None:
            values["channels"] = [c.value for c in channels]
        if channel_index is not None:
            values["channel_index"] = channel_index
        if attempts is not None:
            values["attempts"] = attempts
        if total_attempts is not None:
            values["total_attempts"] = total_attempts
        if last_error is not None:
            values["last_error"] = last_error
        if release:
            values["leased_until"] = None

        with session_scope(self._sessions) as session:
            result = session.execute(
                update(ScheduledMessageRow)
                .where(
                    ScheduledMessageRow.message_id == message_id,
                    ScheduledMessageRow.status == MessageStatus.PENDING.value,
                )
                .values(**values)
            )
            return result.rowcount == 1

    def upcoming(
        self,
        now: datetime,
        until: datetime,
        *,
        recipient_id: Optional[str] = None,
        limit: int = 500,
    ) -> List[ScheduledMessage]:
        """Pending messages due in ``(now, until]``."""
        query = select(ScheduledMessageRow).where(
            ScheduledMessageRow.status == MessageStatus.PENDING.value,
            ScheduledMessageRow.schedule_at > now,
            ScheduledMessageRow.schedule_at <= until,
        )
        if recipient_id:
            query = query.where(ScheduledMessageRow.recipient_id == recipient_id)
        with session_scope(self._sessions) as session:
            rows = session.execute(
                query.order_by(ScheduledMessageRow.schedule_at).limit(limit)
            ).scalars().all()
            return [_row_to_message(r) for r in rows]

    def status_counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in MessageStatus}
        with session_scope(self._sessions) as session:
            for status, n in session.execute(
                select(ScheduledMessageRow.status, func.count())
                .group_by(ScheduledMessageRow.status)
            ):
                counts[status] = n
        return counts

    # ── Rules ──

    def enqueue_rule(self, rule: RecurringRule, *, now: Optional[datetime] = None) -> str:
        """
        Persist a recurring rule.

        Raises
        ------
        ValidationError
            Bad recurrence pattern, or an enabled rule whose first
            occurrence is already in the past.
        """
        now = now or _now()
        validate_pattern(rule.cadence, rule.interval, rule.days_of_week, rule.day_of_month)
        rule.next_fire_at = ensure_aware(rule.next_fire_at, "next_fire_at")
        if rule.enabled and rule.next_fire_at < now:
            raise ValidationError(
                "next_fire_at must not be in the past for an enabled rule",
                field="next_fire_at",
            )
        rule.created_at = now
        with session_scope(self._sessions) as session:
            session.add(RecurringRuleRow(
                rule_id=rule.rule_id,
                recipient_id=rule.recipient_id,
                notification_type=rule.notification_type.value,
                template_id=rule.template_id,
                data=rule.data,
                priority=rule.priority.value,
                cadence=rule.cadence.value,
                interval=rule.interval,
                days_of_week=list(rule.days_of_week),
                day_of_month=rule.day_of_month,
                timezone=rule.timezone,
                enabled=rule.enabled,
                next_fire_at=rule.next_fire_at,
                last_fired_at=None,
                created_at=now,
                version=1,
            ))
        rule.version = 1
        logger.info(
            "Rule %s created (%s every %d, next %s)",
            rule.rule_id, rule.cadence.value, rule.interval,
            rule.next_fire_at.isoformat(),
            extra={"rule_id": rule.rule_id, "recipient_id": rule.recipient_id},
        )
        return rule.rule_id

    def get_rule(self, rule_id: str) -> Optional[RecurringRule]:
        with session_scope(self._sessions) as session:
            row = session.get(RecurringRuleRow, rule_id)
            return _row_to_rule(row) if row else None

    def require_rule(self, rule_id: str) -> RecurringRule:
        rule = self.get_rule(rule_id)
        if rule is None:
            raise NotFoundError("RecurringRule", rule_id=rule_id)
        return rule

    def due_rules(self, now: datetime, limit: int = 200) -> List[RecurringRule]:
        with session_scope(self._sessions) as session:
            rows = session.execute(
                select(RecurringRuleRow)
                .where(
                    RecurringRuleRow.enabled.is_(True),
                    RecurringRuleRow.next_fire_at <= now,
                )
                .order_by(RecurringRuleRow.next_fire_at)
                .limit(limit)
            ).scalars().all()
            return [_row_to_rule(r) for r in rows]

    def advance_rule(
        self,
        rule_id: str,
        *,
        expected_version: int,
        next_fire_at: datetime,
        last_fired_at: Optional[datetime] = None,
    ) -> bool:
        """Compare-and-set the rule's next occurrence."""
        values: Dict[str, Any] = {
            "next_fire_at": next_fire_at,
            "version": RecurringRuleRow.version + 1,
        }
        if last_fired_at is not None:
            values["last_fired_at"] = last_fired_at
        with session_scope(self._sessions) as session:
            result = session.execute(
                update(RecurringRuleRow)
                .where(
                    RecurringRuleRow.rule_id == rule_id,
                    RecurringRuleRow.version == expected_version,
                )
                .values(**values)
            )
            return result.rowcount == 1

    def set_rule_enabled(
        self,
        rule_id: str,
        enabled: bool,
        *,
        next_fire_at: Optional[datetime] = None,
    ) -> RecurringRule:
        """Pause or resume a rule. Already-materialized messages are untouched."""
        values: Dict[str, Any] = {
            "enabled": enabled,
            "version": RecurringRuleRow.version + 1,
        }
        if next_fire_at is not None:
            values["next_fire_at"] = next_fire_at
        with session_scope(self._sessions) as session:
            result = session.execute(
                update(RecurringRuleRow)
                .where(RecurringRuleRow.rule_id == rule_id)
                .values(**values)
            )
            if result.rowcount == 0:
                raise NotFoundError("RecurringRule", rule_id=rule_id)
        logger.info(
            "Rule %s %s", rule_id, "resumed" if enabled else "paused",
            extra={"rule_id": rule_id},
        )
        return self.require_rule(rule_id)

    def rule_counts(self) -> Dict[str, int]:
        with session_scope(self._sessions) as session:
            total = session.execute(select(func.count()).select_from(RecurringRuleRow)).scalar_one()
            enabled = session.execute(
                select(func.count()).select_from(RecurringRuleRow)
                .where(RecurringRuleRow.enabled.is_(True))
            ).scalar_one()
        return {"total": total, "enabled": enabled, "disabled": total - enabled}
