"""
FastAPI route: provider delivery receipts.

    POST /api/v1/webhooks/delivery   — queue a receipt for the tracker (202)

Provider vocabularies are normalised here:

    Provider event                   Tracker event
    ──────────────────────────────   ─────────────
    sent, delivered                  sent
    read, opened                     opened
    clicked                          clicked
    failed, undelivered, bounced     failed
    queued, accepted, sending        (ignored)

The handler only enqueues; the tracker's consumer thread applies the
event, so a burst of callbacks never blocks request handling.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from backend.notifier.api.dependencies import get_engine
from backend.notifier.api.schemas import DeliveryWebhook, WebhookAck
from backend.notifier.scheduling.engine import NotificationEngine
from backend.notifier.scheduling.models import DeliveryOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])

EVENT_MAP = {
    "sent": DeliveryOutcome.SENT,
    "delivered": DeliveryOutcome.SENT,
    "read": DeliveryOutcome.OPENED,
    "opened": DeliveryOutcome.OPENED,
    "clicked": DeliveryOutcome.CLICKED,
    "failed": DeliveryOutcome.FAILED,
    "undelivered": DeliveryOutcome.FAILED,
    "bounced": DeliveryOutcome.FAILED,
}


@router.post("/delivery", response_model=WebhookAck, status_code=202)
async def delivery_webhook(
    body: DeliveryWebhook,
    engine: NotificationEngine = Depends(get_engine),
):
    event = EVENT_MAP.get(body.event.strip().lower())
    if event is None:
        logger.debug("Ignoring intermediate provider event '%s'", body.event)
        return WebhookAck(accepted=False)

    engine.handle_callback(body.provider_message_id, event, body.error_code)
    return WebhookAck(accepted=True, event=event.value)
