"""
FastAPI route: recurring rules.

Provides endpoints to:
    POST  /api/v1/rules              — create a daily / weekly / monthly rule
    POST  /api/v1/rules/digest       — daily or weekly digest at a local time
    GET   /api/v1/rules/{rule_id}    — rule state
    PATCH /api/v1/rules/{rule_id}    — pause / resume
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from backend.notifier.api.dependencies import get_engine
from backend.notifier.api.schemas import (
    DigestRequest,
    RuleCreatedResponse,
    RuleRequest,
    RuleToggleRequest,
    RuleView,
)
from backend.notifier.scheduling.engine import NotificationEngine

router = APIRouter(prefix="/api/v1/rules", tags=["rules"])


def _created(engine: NotificationEngine, rule_id: str) -> RuleCreatedResponse:
    rule = engine.rule(rule_id)
    return RuleCreatedResponse(rule_id=rule.rule_id, next_fire_at=rule.next_fire_at)


@router.post("", response_model=RuleCreatedResponse, status_code=201)
def create_rule(body: RuleRequest, engine: NotificationEngine = Depends(get_engine)):
    rule_id = engine.enqueue_rule(
        body.recipient_id,
        body.notification_type,
        body.template_id,
        body.cadence,
        body.data,
        interval=body.interval,
        days_of_week=body.days_of_week,
        day_of_month=body.day_of_month,
        start_at=body.start_at,
        timezone=body.timezone,
        priority=body.priority,
    )
    return _created(engine, rule_id)


@router.post("/digest", response_model=RuleCreatedResponse, status_code=201)
def create_digest(body: DigestRequest, engine: NotificationEngine = Depends(get_engine)):
    rule_id = engine.schedule_digest(
        body.recipient_id,
        frequency=body.frequency,
        time_of_day=body.time_of_day,
        timezone=body.timezone,
        recipient_name=body.recipient_name,
    )
    return _created(engine, rule_id)


@router.get("/{rule_id}", response_model=RuleView)
def get_rule(rule_id: str, engine: NotificationEngine = Depends(get_engine)):
    return RuleView.model_validate(engine.rule(rule_id).to_dict())


@router.patch("/{rule_id}", response_model=RuleView)
def toggle_rule(
    rule_id: str,
    body: RuleToggleRequest,
    engine: NotificationEngine = Depends(get_engine),
):
    """Pause (``enabled=false``) or resume a rule."""
    return RuleView.model_validate(engine.set_rule_enabled(rule_id, body.enabled).to_dict())
