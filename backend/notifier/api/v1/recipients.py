"""
FastAPI route: recipient addresses and channel preferences.

Provides endpoints to:
    PUT /api/v1/recipients/{recipient_id}   — create or replace
    GET /api/v1/recipients/{recipient_id}   — current record
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.notifier.api.dependencies import get_engine
from backend.notifier.api.schemas import RecipientInput, RecipientView
from backend.notifier.core.errors import NotFoundError
from backend.notifier.scheduling.engine import NotificationEngine
from backend.notifier.scheduling.models import (
    ChannelPreference,
    NotificationType,
    QuietHours,
    Recipient,
)
from backend.notifier.scheduling.recipients import parse_clock

router = APIRouter(prefix="/api/v1/recipients", tags=["recipients"])


def _to_recipient(recipient_id: str, body: RecipientInput, default_channels) -> Recipient:
    preference = None
    if body.channels is not None or body.enabled_types is not None or body.quiet_hours is not None:
        quiet = None
        if body.quiet_hours is not None:
            quiet = QuietHours(
                start=parse_clock(body.quiet_hours.start, "quiet_hours.start"),
                end=parse_clock(body.quiet_hours.end, "quiet_hours.end"),
                timezone=body.quiet_hours.timezone,
                enabled=body.quiet_hours.enabled,
            )
        preference = ChannelPreference(
            channels=list(body.channels) if body.channels is not None else list(default_channels),
            enabled_types=(
                frozenset(body.enabled_types)
                if body.enabled_types is not None
                else frozenset(NotificationType)
            ),
            quiet_hours=quiet,
        )
    return Recipient(
        recipient_id=recipient_id,
        name=body.name,
        family_id=body.family_id,
        phone=body.phone,
        email=body.email,
        whatsapp=body.whatsapp,
        preference=preference,
    )


@router.put("/{recipient_id}", response_model=RecipientView)
def upsert_recipient(
    recipient_id: str,
    body: RecipientInput,
    engine: NotificationEngine = Depends(get_engine),
):
    recipient = _to_recipient(recipient_id, body, engine.router.default_preference.channels)
    return RecipientView.model_validate(engine.upsert_recipient(recipient).to_dict())


@router.get("/{recipient_id}", response_model=RecipientView)
def get_recipient(recipient_id: str, engine: NotificationEngine = Depends(get_engine)):
    recipient = engine.recipient(recipient_id)
    if recipient is None:
        raise NotFoundError("Recipient", recipient_id=recipient_id)
    return RecipientView.model_validate(recipient.to_dict())
