"""
FastAPI route: one-off messages and chore reminders.

Provides endpoints to:
    POST /api/v1/messages               — schedule a notification (202)
    GET  /api/v1/messages/upcoming      — pending messages in the next N hours
    GET  /api/v1/messages/{id}          — status, delivery status, attempts
    POST /api/v1/messages/{id}/cancel   — cancel a pending message (409 if terminal)
    POST /api/v1/reminders              — 24 h / 4 h / 1 h chore reminders
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from backend.notifier.api.dependencies import get_engine
from backend.notifier.api.schemas import (
    EnqueueRequest,
    EnqueueResponse,
    MessageView,
    ReminderRequest,
    ReminderResponse,
    UpcomingResponse,
)
from backend.notifier.scheduling.engine import NotificationEngine

router = APIRouter(prefix="/api/v1", tags=["messages"])


@router.post("/messages", response_model=EnqueueResponse, status_code=202)
def enqueue_message(
    body: EnqueueRequest,
    engine: NotificationEngine = Depends(get_engine),
):
    """Schedule a notification; it is delivered by a later dispatcher tick."""
    message_id = engine.enqueue(
        body.recipient_id,
        body.notification_type,
        body.template_id,
        body.data,
        schedule_at=body.schedule_at,
        priority=body.priority,
        force_channel=body.force_channel,
        max_attempts=body.max_attempts,
    )
    return EnqueueResponse(message_id=message_id)


@router.get("/messages/upcoming", response_model=UpcomingResponse)
def upcoming_messages(
    hours: float = Query(24.0, gt=0, le=24 * 31),
    recipient_id: Optional[str] = Query(None, alias="recipientId"),
    engine: NotificationEngine = Depends(get_engine),
):
    messages = engine.upcoming(hours, recipient_id=recipient_id)
    return UpcomingResponse(
        count=len(messages),
        hours=hours,
        messages=[MessageView.model_validate(m.to_dict()) for m in messages],
    )


@router.get("/messages/{message_id}", response_model=MessageView)
def message_status(message_id: str, engine: NotificationEngine = Depends(get_engine)):
    return MessageView.model_validate(engine.message_status(message_id))


@router.post("/messages/{message_id}/cancel", response_model=MessageView)
def cancel_message(message_id: str, engine: NotificationEngine = Depends(get_engine)):
    engine.cancel(message_id)
    return MessageView.model_validate(engine.message_status(message_id))


@router.post("/reminders", response_model=ReminderResponse, status_code=202)
def schedule_reminders(
    body: ReminderRequest,
    engine: NotificationEngine = Depends(get_engine),
):
    ids = engine.schedule_due_reminders(
        body.recipient_id,
        body.chore_title,
        body.due_at,
        recipient_name=body.recipient_name,
        points=body.points,
    )
    return ReminderResponse(message_ids=ids)
