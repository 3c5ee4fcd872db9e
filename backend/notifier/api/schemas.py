"""
Pydantic schemas for the notifier HTTP API.

Bodies are camelCase on the wire (``recipientId``); snake_case is accepted
on input too, so internal callers and tests can use either. Responses are
always serialised camelCase.

Separated from the route handlers so they are reusable across the
codebase (background jobs, tests).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from backend.notifier.scheduling.models import (
    Cadence,
    Channel,
    NotificationType,
    Priority,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class EnqueueRequest(CamelModel):
    """Schedule a one-off notification."""
    recipient_id: str = Field(..., min_length=1, examples=["user-42"])
    notification_type: NotificationType = Field(..., examples=["reminder"])
    template_id: str = Field(..., examples=["chore_reminder"])
    data: Dict[str, Any] = Field(
        default_factory=dict,
        examples=[{"recipient_name": "Sam", "chore_title": "Feed the cat", "due_in": "1 hour"}],
    )
    schedule_at: Optional[datetime] = Field(
        None, description="Timezone-aware send time; omitted means now",
    )
    priority: Priority = Priority.MEDIUM
    force_channel: Optional[Channel] = Field(None, description="Deliver on this channel only")
    max_attempts: Optional[int] = Field(None, ge=1, le=10)


class EnqueueResponse(CamelModel):
    message_id: str


class ReminderRequest(CamelModel):
    """Chore reminders 24 h / 4 h / 1 h before the due time."""
    recipient_id: str = Field(..., min_length=1)
    chore_title: str = Field(..., min_length=1, examples=["Take out the bins"])
    due_at: datetime
    recipient_name: str = ""
    points: int = Field(0, ge=0)


class ReminderResponse(CamelModel):
    message_ids: List[str]


class AttemptView(CamelModel):
    attempt_id: str
    channel: str
    outcome: str
    timestamp: datetime
    error_class: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    latency_ms: Optional[float] = None
    provider_message_id: Optional[str] = None


class MessageView(CamelModel):
    message_id: str
    recipient_id: str
    notification_type: str
    template_id: str
    data: Dict[str, Any]
    priority: str
    schedule_at: datetime
    status: str
    channels: List[str]
    current_channel: Optional[str] = None
    attempts: int
    max_attempts: int
    total_attempts: int
    rule_id: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    delivery_status: Optional[str] = None
    attempt_history: List[AttemptView] = Field(default_factory=list)


class UpcomingResponse(CamelModel):
    count: int
    hours: float
    messages: List[MessageView]


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

class RuleRequest(CamelModel):
    """Create a recurring rule."""
    recipient_id: str = Field(..., min_length=1)
    notification_type: Optional[NotificationType] = Field(
        None, description="Defaults to the type the template is written for",
    )
    template_id: str
    cadence: Cadence
    interval: int = Field(1, ge=1, le=365)
    days_of_week: Optional[List[int]] = Field(None, description="ISO weekdays, 1 = Monday")
    day_of_month: Optional[int] = Field(None, ge=1, le=31)
    start_at: Optional[datetime] = None
    timezone: str = Field("UTC", examples=["Europe/Berlin"])
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.MEDIUM


class RuleToggleRequest(CamelModel):
    enabled: bool


class DigestRequest(CamelModel):
    recipient_id: str = Field(..., min_length=1)
    frequency: Literal["daily", "weekly"] = "daily"
    time_of_day: str = Field("09:00", pattern=r"^\d{1,2}:\d{2}$")
    timezone: str = "UTC"
    recipient_name: str = ""


class RuleCreatedResponse(CamelModel):
    rule_id: str
    next_fire_at: datetime


class RuleView(CamelModel):
    rule_id: str
    recipient_id: str
    notification_type: str
    template_id: str
    cadence: str
    interval: int
    days_of_week: List[int]
    day_of_month: Optional[int] = None
    timezone: str
    data: Dict[str, Any]
    priority: str
    enabled: bool
    next_fire_at: datetime
    last_fired_at: Optional[datetime] = None
    created_at: datetime


# ---------------------------------------------------------------------------
# Recipients
# ---------------------------------------------------------------------------

class QuietHoursInput(CamelModel):
    start: str = Field(..., pattern=r"^\d{1,2}:\d{2}$", examples=["22:00"])
    end: str = Field(..., pattern=r"^\d{1,2}:\d{2}$", examples=["07:00"])
    timezone: str = "UTC"
    enabled: bool = True


class RecipientInput(CamelModel):
    """Addresses and channel preferences for one recipient."""
    name: str = ""
    family_id: Optional[str] = None
    phone: Optional[str] = Field(None, examples=["+15551234567"])
    email: Optional[str] = Field(None, examples=["parent@example.com"])
    whatsapp: Optional[str] = None
    channels: Optional[List[Channel]] = Field(
        None, description="Fallback order, primary first; omitted means the default order",
    )
    enabled_types: Optional[List[NotificationType]] = None
    quiet_hours: Optional[QuietHoursInput] = None


class PreferenceView(CamelModel):
    channels: List[str]
    enabled_types: List[str]
    quiet_hours: Optional[QuietHoursInput] = None


class RecipientView(CamelModel):
    recipient_id: str
    name: str
    family_id: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    whatsapp: Optional[str] = None
    preference: Optional[PreferenceView] = None


# ---------------------------------------------------------------------------
# Stats & webhooks
# ---------------------------------------------------------------------------

class StatsView(CamelModel):
    total: int
    successful: int
    failed: int
    by_channel: Dict[str, Dict[str, int]]
    avg_attempts: float
    opened: int
    clicked: int
    success_rate: str


class SchedulerStatsView(CamelModel):
    messages: Dict[str, int]
    rules: Dict[str, int]
    active_throttles: Dict[str, int]
    providers: List[str]
    last_tick_at: Optional[datetime] = None
    last_tick: Optional[Dict[str, Any]] = None


class DeliveryWebhook(CamelModel):
    """Provider receipt, already normalised by the provider adapter."""
    provider_message_id: str = Field(..., min_length=1)
    event: str = Field(..., examples=["delivered", "read", "failed", "clicked"])
    error_code: Optional[str] = None


class WebhookAck(CamelModel):
    accepted: bool
    event: Optional[str] = None
