"""
FastAPI route: delivery and scheduler statistics.

Provides endpoints to:
    GET /api/v1/stats              — delivery stats for a recipient, family or everyone
    GET /api/v1/scheduler/stats    — message counts, rules, active throttles

Delivery stats are cached in Redis for STATS_CACHE_TTL seconds when
REDIS_URL is set; a newly recorded attempt moves the cache key on, so a
cached answer never hides it. Without Redis every request hits the database.
"""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.concurrency import run_in_threadpool

from backend.notifier.api.dependencies import get_engine
from backend.notifier.api.schemas import SchedulerStatsView, StatsView
from backend.notifier.core.cache import get_cached_stats, stats_cache_key, store_stats
from backend.notifier.scheduling.engine import NotificationEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["statistics"])


@router.get("/stats", response_model=StatsView)
async def delivery_stats(
    recipient_id: Optional[str] = Query(None, alias="recipientId"),
    family_id: Optional[str] = Query(None, alias="familyId"),
    window: Literal["hour", "day", "week", "month"] = Query("day"),
    engine: NotificationEngine = Depends(get_engine),
):
    """Totals, success rate and per-channel breakdown over ``window``."""
    key = stats_cache_key(
        recipient_id=recipient_id,
        family_id=family_id,
        window=window,
        generation=engine.tracker.generation,
    )
    cached = await get_cached_stats(key)
    if cached is not None:
        return StatsView.model_validate(cached)

    stats = await run_in_threadpool(
        engine.stats, recipient_id=recipient_id, family_id=family_id, window=window,
    )
    payload = stats.to_dict()
    await store_stats(key, payload, ttl=engine.settings.STATS_CACHE_TTL)
    return StatsView.model_validate(payload)


@router.get("/scheduler/stats", response_model=SchedulerStatsView)
def scheduler_stats(engine: NotificationEngine = Depends(get_engine)):
    return SchedulerStatsView.model_validate(engine.scheduler_stats())
