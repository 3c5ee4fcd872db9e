"""
templates.py — Typed message payloads and per-channel rendering.

Every template id maps to a frozen dataclass describing exactly the fields
its text may reference. Template strings are checked against that
dataclass when this module is imported, so a typo such as ``{chore_tittle}``
fails at start-up instead of at 3 a.m. in a worker thread.

═══════════════════════════════════════════════════════════════════════════
CHANNEL VARIANTS
═══════════════════════════════════════════════════════════════════════════

    Channel     Shape                                Limit
    ────────    ─────────────────────────────────    ─────────────────────
    whatsapp    friendly text, emoji allowed         4096 chars
    sms         "ChoreMinder: …", plain GSM text     160 chars (1 segment)
    email       subject + plain text + HTML          —

Usage:
    content = render("chore_reminder", {"chore_title": "Dishes", "points": 5}, Channel.SMS)
    content.body   # 'ChoreMinder: Reminder - "Dishes" is pending. 5 points ...'
"""

from __future__ import annotations

import html
import string
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional, Type

from backend.notifier.core.errors import ValidationError
from backend.notifier.scheduling.models import Channel, NotificationType

SMS_MAX_CHARS = 160
WHATSAPP_MAX_CHARS = 4096


class TemplateError(ValueError):
    """A template references a placeholder its payload does not define."""


# ═══════════════════════════════════════════════════════════════════════════
# Payload types
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ChoreAssigned:
    recipient_name: str
    chore_title: str
    points: int = 0
    due_date: str = "No deadline"
    assigned_by: str = "A parent"


@dataclass(frozen=True)
class ChoreReminder:
    recipient_name: str
    chore_title: str
    points: int = 0
    due_in: str = "soon"


@dataclass(frozen=True)
class ChoreCompleted:
    recipient_name: str
    child_name: str
    chore_title: str
    points: int = 0


@dataclass(frozen=True)
class ChoreApproved:
    recipient_name: str
    chore_title: str
    points: int = 0


@dataclass(frozen=True)
class ChoreRejected:
    recipient_name: str
    chore_title: str
    reason: str = "It needs another go"


@dataclass(frozen=True)
class Digest:
    recipient_name: str
    period: str = "daily"
    pending_count: int = 0
    completed_count: int = 0
    points_earned: int = 0


@dataclass(frozen=True)
class FamilyUpdate:
    recipient_name: str
    family_name: str
    update_text: str


@dataclass(frozen=True)
class MessageTemplate:
    template_id: str
    payload_type: Type
    subject: str
    whatsapp: str
    sms: str
    email_text: str
    # Type assumed for rules created without an explicit notification type
    notification_type: NotificationType = NotificationType.UPDATE


@dataclass(frozen=True)
class RenderedContent:
    """Channel-ready content handed to a provider."""
    body: str
    subject: Optional[str] = None
    html: Optional[str] = None


# ═══════════════════════════════════════════════════════════════════════════
# Registry
# ═══════════════════════════════════════════════════════════════════════════

TEMPLATES: Dict[str, MessageTemplate] = {}


def _placeholders(text: str) -> set:
    return {name for _, name, _, _ in string.Formatter().parse(text) if name}


def register(template: MessageTemplate) -> MessageTemplate:
    """Add a template after checking every placeholder against its payload."""
    allowed = {f.name for f in fields(template.payload_type)}
    for part in ("subject", "whatsapp", "sms", "email_text"):
        unknown = _placeholders(getattr(template, part)) - allowed
        if unknown:
            raise TemplateError(
                f"Template '{template.template_id}' ({part}) uses unknown "
                f"placeholders: {sorted(unknown)}"
            )
    TEMPLATES[template.template_id] = template
    return template


register(MessageTemplate(
    template_id="chore_assigned",
    payload_type=ChoreAssigned,
    notification_type=NotificationType.ASSIGNED,
    subject="New chore: {chore_title}",
    whatsapp=(
        "Hi {recipient_name}! 🧹 {assigned_by} assigned you \"{chore_title}\" "
        "worth {points} points. Due: {due_date}. Open ChoreMinder for details."
    ),
    sms=(
        "ChoreMinder: New chore \"{chore_title}\" assigned. {points} points. "
        "Due: {due_date}. Check app for details."
    ),
    email_text=(
        "Hi {recipient_name},\n\n{assigned_by} assigned you a new chore: "
        "\"{chore_title}\" ({points} points).\nDue: {due_date}\n\n"
        "Open ChoreMinder to get started."
    ),
))

register(MessageTemplate(
    template_id="chore_reminder",
    payload_type=ChoreReminder,
    notification_type=NotificationType.REMINDER,
    subject="Reminder: {chore_title} is due {due_in}",
    whatsapp=(
        "⏰ Hey {recipient_name}, \"{chore_title}\" is due {due_in}. "
        "{points} points are waiting for you!"
    ),
    sms=(
        "ChoreMinder: Reminder - \"{chore_title}\" is pending. "
        "{points} points available. Complete in app."
    ),
    email_text=(
        "Hi {recipient_name},\n\nJust a reminder that \"{chore_title}\" is due "
        "{due_in}. Finish it to earn {points} points."
    ),
))

register(MessageTemplate(
    template_id="chore_completed",
    payload_type=ChoreCompleted,
    notification_type=NotificationType.COMPLETED,
    subject="{child_name} finished {chore_title}",
    whatsapp=(
        "✅ {child_name} completed \"{chore_title}\" ({points} points). "
        "Review it in ChoreMinder to approve."
    ),
    sms=(
        "ChoreMinder: {child_name} completed \"{chore_title}\" ({points} points). "
        "Review in app to approve."
    ),
    email_text=(
        "Hi {recipient_name},\n\n{child_name} marked \"{chore_title}\" as done "
        "({points} points). Review and approve it in ChoreMinder."
    ),
))

register(MessageTemplate(
    template_id="chore_approved",
    payload_type=ChoreApproved,
    notification_type=NotificationType.APPROVED,
    subject="Approved: {chore_title}",
    whatsapp="🎉 Great job {recipient_name}! \"{chore_title}\" was approved. You earned {points} points!",
    sms="ChoreMinder: Great job! \"{chore_title}\" approved. You earned {points} points!",
    email_text=(
        "Hi {recipient_name},\n\n\"{chore_title}\" was approved and "
        "{points} points were added to your total. Keep it up!"
    ),
))

register(MessageTemplate(
    template_id="chore_rejected",
    payload_type=ChoreRejected,
    notification_type=NotificationType.REJECTED,
    subject="{chore_title} needs another look",
    whatsapp=(
        "🔁 {recipient_name}, \"{chore_title}\" needs attention. "
        "Reason: {reason}. Please redo and resubmit."
    ),
    sms="ChoreMinder: \"{chore_title}\" needs attention. Reason: {reason}. Please redo and resubmit.",
    email_text=(
        "Hi {recipient_name},\n\n\"{chore_title}\" was sent back.\n"
        "Reason: {reason}\n\nPlease redo it and submit again."
    ),
))

register(MessageTemplate(
    template_id="digest",
    payload_type=Digest,
    notification_type=NotificationType.DIGEST,
    subject="Your {period} ChoreMinder summary",
    whatsapp=(
        "📋 {recipient_name}, your {period} summary: {pending_count} pending, "
        "{completed_count} completed, {points_earned} points earned."
    ),
    sms=(
        "ChoreMinder {period} summary: {pending_count} pending, "
        "{completed_count} done, {points_earned} pts."
    ),
    email_text=(
        "Hi {recipient_name},\n\nHere is your {period} summary:\n"
        "  Pending chores:   {pending_count}\n"
        "  Completed chores: {completed_count}\n"
        "  Points earned:    {points_earned}\n"
    ),
))

register(MessageTemplate(
    template_id="family_update",
    payload_type=FamilyUpdate,
    notification_type=NotificationType.UPDATE,
    subject="{family_name}: family update",
    whatsapp="🏠 {family_name}: {update_text}",
    sms="ChoreMinder ({family_name}): {update_text}",
    email_text="Hi {recipient_name},\n\nNews from {family_name}:\n\n{update_text}",
))


# ═══════════════════════════════════════════════════════════════════════════
# Building & rendering
# ═══════════════════════════════════════════════════════════════════════════

def get_template(template_id: str) -> MessageTemplate:
    template = TEMPLATES.get(template_id)
    if template is None:
        raise ValidationError(
            f"Unknown template '{template_id}'. Must be one of: {sorted(TEMPLATES)}",
            field="template_id",
        )
    return template


def notification_type_for(template_id: str) -> NotificationType:
    """The notification type a template is written for."""
    return get_template(template_id).notification_type


def build_payload(template_id: str, data: Dict[str, Any]) -> Any:
    """Construct the typed payload; unknown or missing fields are rejected."""
    template = get_template(template_id)
    allowed = {f.name for f in fields(template.payload_type)}
    unknown = set(data) - allowed
    if unknown:
        raise ValidationError(
            f"Unknown fields for template '{template_id}': {sorted(unknown)}",
            field="data",
        )
    try:
        return template.payload_type(**data)
    except TypeError as exc:
        raise ValidationError(
            f"Invalid data for template '{template_id}': {exc}",
            field="data",
        ) from exc


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _html_body(subject: str, text: str) -> str:
    paragraphs = "".join(
        f"<p style=\"margin:0 0 12px;\">{html.escape(p).replace(chr(10), '<br>')}</p>"
        for p in text.split("\n\n")
    )
    return (
        "<div style=\"font-family:Arial,sans-serif;max-width:600px;margin:auto;\">"
        "<div style=\"background:#4F46E5;color:white;padding:16px;border-radius:8px 8px 0 0;\">"
        f"<h2 style=\"margin:0;\">{html.escape(subject)}</h2></div>"
        "<div style=\"border:1px solid #ddd;border-top:none;padding:16px;border-radius:0 0 8px 8px;\">"
        f"{paragraphs}</div></div>"
    )


def render(template_id: str, data: Dict[str, Any], channel: Channel) -> RenderedContent:
    """Render the channel variant of a template."""
    template = get_template(template_id)
    values = asdict(build_payload(template_id, data))

    if channel == Channel.SMS:
        return RenderedContent(body=_truncate(template.sms.format(**values), SMS_MAX_CHARS))
    if channel == Channel.WHATSAPP:
        return RenderedContent(
            body=_truncate(template.whatsapp.format(**values), WHATSAPP_MAX_CHARS)
        )
    if channel == Channel.EMAIL:
        subject = template.subject.format(**values)
        text = template.email_text.format(**values)
        return RenderedContent(body=text, subject=subject, html=_html_body(subject, text))
    raise ValidationError(f"No renderer for channel {channel}", field="channel")
