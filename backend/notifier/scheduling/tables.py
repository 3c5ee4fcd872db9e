"""
tables.py — SQLAlchemy table mappings for the notification engine.

Every mutable row carries a ``version`` column. Stores update those rows
with ``UPDATE … WHERE version = :expected`` and treat a zero rowcount as a
lost race, so concurrent ticks/workers never overwrite each other blindly.

    scheduled_messages   (recipient_id, schedule_at), (status, schedule_at)
                         unique idempotency_key for rule materializations
    recurring_rules      (enabled, next_fire_at)
    delivery_attempts    message_id, provider_message_id — append-only
    throttle_states      PK (recipient_id, channel)
    recipients           contact addresses + channel preferences
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.notifier.core.database import Base, UTCDateTime


class ScheduledMessageRow(Base):
    __tablename__ = "scheduled_messages"

    message_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    recipient_id: Mapped[str] = mapped_column(String(128), nullable=False)
    notification_type: Mapped[str] = mapped_column(String(32), nullable=False)
    template_id: Mapped[str] = mapped_column(String(64), nullable=False)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    priority: Mapped[str] = mapped_column(String(16), default="medium")
    schedule_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    channels: Mapped[List[str]] = mapped_column(JSON, default=list)
    channel_index: Mapped[int] = mapped_column(Integer, default=0)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    total_attempts: Mapped[int] = mapped_column(Integer, default=0)
    rule_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(160), nullable=True, unique=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    leased_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_messages_recipient_schedule", "recipient_id", "schedule_at"),
        Index("ix_messages_status_schedule", "status", "schedule_at"),
    )


class RecurringRuleRow(Base):
    __tablename__ = "recurring_rules"

    rule_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    recipient_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    notification_type: Mapped[str] = mapped_column(String(32), nullable=False)
    template_id: Mapped[str] = mapped_column(String(64), nullable=False)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    priority: Mapped[str] = mapped_column(String(16), default="medium")
    cadence: Mapped[str] = mapped_column(String(16), nullable=False)
    interval: Mapped[int] = mapped_column(Integer, default=1)
    days_of_week: Mapped[List[int]] = mapped_column(JSON, default=list)
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    next_fire_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_fired_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_rules_enabled_next_fire", "enabled", "next_fire_at"),
    )


class DeliveryAttemptRow(Base):
    __tablename__ = "delivery_attempts"

    attempt_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    message_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    recipient_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    error_class: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    latency_ms: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)


class ThrottleStateRow(Base):
    __tablename__ = "throttle_states"

    recipient_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    channel: Mapped[str] = mapped_column(String(16), primary_key=True)
    count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    window_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    window_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    limit: Mapped[int] = mapped_column("limit_", Integer, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)


class RecipientRow(Base):
    __tablename__ = "recipients"

    recipient_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(128), default="")
    family_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(254), nullable=True)
    whatsapp: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    # NULL channels means "no stored preference"
    channels: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    enabled_types: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    quiet_hours: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
