"""
Redis cache for delivery statistics.

``GET /api/v1/stats`` aggregates every attempt in a window, so its answer
is kept in Redis for STATS_CACHE_TTL seconds. The key holds the scope, the
window and the tracker's generation, which moves on every recorded attempt
(dispatcher sends and applied provider webhooks alike). A payload computed
before an attempt landed is therefore never read back; it just expires.

Caching is optional: with REDIS_URL unset, or Redis down, every helper
behaves as a miss and the stats come straight from the database.

Usage:
    from backend.notifier.core.cache import get_cached_stats, store_stats, stats_cache_key

    key = stats_cache_key(recipient_id="kid-1", family_id=None, window="day", generation=7)
    payload = await get_cached_stats(key)
"""

from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from backend.notifier.core.config import settings

logger = logging.getLogger(__name__)

STATS_PREFIX = "notifier:stats"

_client: Optional[aioredis.Redis] = None


def _redis() -> Optional[aioredis.Redis]:
    """The shared client, created on first call; None without REDIS_URL."""
    global _client
    if not settings.REDIS_URL:
        return None
    if _client is None:
        _client = aioredis.from_url(
            settings.REDIS_URL, encoding="utf-8", decode_responses=True,
        )
        # Strip credentials before logging
        logger.info("Stats cache on redis://%s", settings.REDIS_URL.rsplit("@", 1)[-1])
    return _client


def stats_cache_key(
    *,
    recipient_id: Optional[str],
    family_id: Optional[str],
    window: str,
    generation: int,
) -> str:
    scope: Dict[str, Any] = {"recipient": recipient_id, "family": family_id, "window": window}
    digest = hashlib.md5(json.dumps(scope, sort_keys=True).encode()).hexdigest()[:12]
    return f"{STATS_PREFIX}:g{generation}:{window}:{digest}"


async def get_cached_stats(key: str) -> Optional[Dict[str, Any]]:
    client = _redis()
    if client is None:
        return None
    try:
        raw = await client.get(key)
    except (RedisError, OSError) as e:
        logger.warning("Stats cache read failed for %s: %s", key, e)
        return None
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Discarding unreadable stats cache entry %s", key)
        return None


async def store_stats(key: str, payload: Dict[str, Any], ttl: Optional[int] = None) -> bool:
    """Cache one stats payload; False when caching is off or Redis fails."""
    client = _redis()
    if client is None:
        return False
    try:
        await client.set(
            key, json.dumps(payload, default=str), ex=ttl or settings.STATS_CACHE_TTL,
        )
    except (RedisError, OSError) as e:
        logger.warning("Stats cache write failed for %s: %s", key, e)
        return False
    return True


async def ping_redis() -> Optional[bool]:
    """True/False for reachability, None when caching is disabled."""
    client = _redis()
    if client is None:
        return None
    try:
        return bool(await client.ping())
    except (RedisError, OSError) as e:
        logger.warning("Redis ping failed: %s", e)
        return False


async def close_redis() -> None:
    global _client
    if _client is None:
        return
    await _client.aclose()
    _client = None
    logger.info("Stats cache connection closed")
