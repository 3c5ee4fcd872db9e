"""
recipients.py — Contact addresses and channel preferences per recipient.

The chore app owns user accounts; it pushes the notification-relevant part
(addresses, channel order, enabled types, quiet hours) here through the
recipients API so the router and workers never call back into it.
"""

from __future__ import annotations

import logging
from datetime import time
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from backend.notifier.core.database import session_scope
from backend.notifier.core.errors import ValidationError
from backend.notifier.scheduling.models import (
    ChannelPreference,
    NotificationType,
    QuietHours,
    Recipient,
    _now,
)
from backend.notifier.scheduling.tables import RecipientRow

logger = logging.getLogger(__name__)


def parse_clock(value: str, field_name: str = "time") -> time:
    """Parse ``HH:MM`` into a ``time``."""
    try:
        hours, minutes = value.split(":")
        return time(int(hours), int(minutes))
    except (ValueError, AttributeError) as exc:
        raise ValidationError(f"Expected HH:MM, got {value!r}", field=field_name) from exc


def _quiet_hours_from_json(raw: Optional[Dict[str, Any]]) -> Optional[QuietHours]:
    if not raw:
        return None
    return QuietHours(
        start=parse_clock(raw["start"], "quiet_hours.start"),
        end=parse_clock(raw["end"], "quiet_hours.end"),
        timezone=raw.get("timezone", "UTC"),
        enabled=raw.get("enabled", True),
    )


def _row_to_recipient(row: RecipientRow) -> Recipient:
    preference = None
    if row.channels:
        types = row.enabled_types if row.enabled_types is not None else [t.value for t in NotificationType]
        preference = ChannelPreference(
            channels=row.channels,
            enabled_types=frozenset(NotificationType(t) for t in types),
            quiet_hours=_quiet_hours_from_json(row.quiet_hours),
        )
    return Recipient(
        recipient_id=row.recipient_id,
        name=row.name or "",
        family_id=row.family_id,
        phone=row.phone,
        email=row.email,
        whatsapp=row.whatsapp,
        preference=preference,
    )


class RecipientDirectory:
    """SQL-backed lookup of recipients and their channel preferences."""

    def __init__(self, session_factory: sessionmaker):
        self._sessions = session_factory

    def upsert(self, recipient: Recipient) -> Recipient:
        pref = recipient.preference
        with session_scope(self._sessions) as session:
            row = session.get(RecipientRow, recipient.recipient_id)
            if row is None:
                row = RecipientRow(recipient_id=recipient.recipient_id)
                session.add(row)
            row.name = recipient.name
            row.family_id = recipient.family_id
            row.phone = recipient.phone
            row.email = recipient.email
            row.whatsapp = recipient.whatsapp
            row.channels = [c.value for c in pref.channels] if pref else None
            row.enabled_types = sorted(t.value for t in pref.enabled_types) if pref else None
            row.quiet_hours = pref.quiet_hours.to_dict() if pref and pref.quiet_hours else None
            row.updated_at = _now()
        logger.info(
            "Recipient %s saved (channels=%s)",
            recipient.recipient_id,
            [c.value for c in pref.channels] if pref else "default",
            extra={"recipient_id": recipient.recipient_id},
        )
        return recipient

    def get(self, recipient_id: str) -> Optional[Recipient]:
        with session_scope(self._sessions) as session:
            row = session.get(RecipientRow, recipient_id)
            return _row_to_recipient(row) if row else None

    def preference_for(self, recipient_id: str) -> Optional[ChannelPreference]:
        recipient = self.get(recipient_id)
        return recipient.preference if recipient else None

    def members_of(self, family_id: str) -> List[str]:
        with session_scope(self._sessions) as session:
            rows = session.execute(
                select(RecipientRow.recipient_id).where(RecipientRow.family_id == family_id)
            ).scalars().all()
            return list(rows)
