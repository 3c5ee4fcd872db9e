"""
Deep health check for the notifier.

Components, reported in this order:
    database           SELECT 1 through the engine's SQLAlchemy engine
    redis              stats cache; an unset REDIS_URL counts as healthy
    channel_providers  which channels can send, and whether for real
    dispatcher         how long ago the last tick ran
    disk_space         free space under the working directory

The overall status is the worst component status. ``/health/ready``
answers 503 only when that is UNHEALTHY; a DEGRADED notifier still
delivers (uncached stats, a missing fallback channel, a slow tick).
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Tuple

from sqlalchemy.exc import SQLAlchemyError

from backend.notifier.core.cache import ping_redis
from backend.notifier.core.config import settings
from backend.notifier.core.database import ping

if TYPE_CHECKING:
    from backend.notifier.scheduling.engine import NotificationEngine

logger = logging.getLogger(__name__)

_GB = 1024 ** 3
# Free-space thresholds in GB
_DISK_CRITICAL = 0.5
_DISK_LOW = 2.0
# Ticks missed before the dispatcher counts as stalled
_STALLED_TICKS = 3

_STARTED = time.monotonic()


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


_SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.DEGRADED: 1, HealthStatus.UNHEALTHY: 2}

# (status, message, details) as produced by each check
CheckResult = Tuple[HealthStatus, str, Dict[str, Any]]


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            out["message"] = self.message
        if self.details:
            out["details"] = self.details
        return out


@dataclass
class HealthReport:
    components: List[ComponentHealth] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def status(self) -> HealthStatus:
        if not self.components:
            return HealthStatus.HEALTHY
        return max((c.status for c in self.components), key=_SEVERITY.__getitem__)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "timestamp": self.checked_at.isoformat(),
            "uptime_seconds": round(time.monotonic() - _STARTED, 1),
            "components": [c.to_dict() for c in self.components],
        }


# ── Checks (blocking; run off the event loop) ──

def _database(engine: "NotificationEngine") -> CheckResult:
    db = engine.db_engine
    if db is None:
        return HealthStatus.UNHEALTHY, "engine has no bound database", {}
    backend = db.url.get_backend_name()
    try:
        ping(db)
    except SQLAlchemyError as exc:
        return HealthStatus.UNHEALTHY, str(exc), {"backend": backend}
    return HealthStatus.HEALTHY, "Connection OK", {"backend": backend}


def _providers(engine: "NotificationEngine") -> CheckResult:
    modes = {c.value: getattr(p, "mode", "custom") for c, p in engine.providers.items()}
    missing = [c for c in engine.settings.DEFAULT_CHANNEL_ORDER if c not in modes]
    details = {"modes": modes, "missing": missing}

    if not modes:
        return HealthStatus.UNHEALTHY, "No channel providers configured", details
    if missing:
        return HealthStatus.DEGRADED, f"Missing providers: {', '.join(missing)}", details
    simulated = sorted(c for c, m in modes.items() if m == "simulation")
    message = f"Simulated: {', '.join(simulated)}" if simulated else "All providers live"
    return HealthStatus.HEALTHY, message, details


def _dispatcher(engine: "NotificationEngine") -> CheckResult:
    interval = engine.settings.DISPATCH_INTERVAL_SECONDS
    details: Dict[str, Any] = {"running": engine.running, "interval_seconds": interval}
    last = engine.dispatcher.last_tick_at
    if last is None:
        status = HealthStatus.DEGRADED if engine.running else HealthStatus.HEALTHY
        return status, "No tick yet", details

    age = (engine.now() - last).total_seconds()
    details["last_tick_age_seconds"] = round(age, 1)
    stalled = engine.running and age > _STALLED_TICKS * interval
    status = HealthStatus.DEGRADED if stalled else HealthStatus.HEALTHY
    return status, f"Last tick {age:.0f}s ago", details


def _disk() -> CheckResult:
    try:
        usage = shutil.disk_usage(".")
    except OSError as exc:
        return HealthStatus.DEGRADED, str(exc), {}
    free_gb = usage.free / _GB
    details = {
        "total_gb": round(usage.total / _GB, 1),
        "free_gb": round(free_gb, 1),
        "used_pct": round(usage.used / usage.total * 100, 1),
    }
    if free_gb < _DISK_CRITICAL:
        return HealthStatus.UNHEALTHY, f"Low disk space: {free_gb:.1f} GB free", details
    if free_gb < _DISK_LOW:
        return HealthStatus.DEGRADED, f"Disk space warning: {free_gb:.1f} GB free", details
    return HealthStatus.HEALTHY, f"{free_gb:.1f} GB free", details


async def _redis() -> CheckResult:
    reachable = await ping_redis()
    if reachable is None:
        return HealthStatus.HEALTHY, "Caching disabled (REDIS_URL unset)", {}
    if not reachable:
        # Stats are recomputed uncached
        return HealthStatus.DEGRADED, "Redis unreachable", {}
    return HealthStatus.HEALTHY, "Cache available", {}


async def _timed(name: str, check: Callable[..., Any], *args: Any) -> ComponentHealth:
    """Run one check, in a worker thread unless it is a coroutine function."""
    start = time.perf_counter()
    if asyncio.iscoroutinefunction(check):
        status, message, details = await check(*args)
    else:
        status, message, details = await asyncio.to_thread(check, *args)
    component = ComponentHealth(
        name=name,
        status=status,
        latency_ms=(time.perf_counter() - start) * 1000,
        message=message,
        details=details,
    )
    if status is not HealthStatus.HEALTHY:
        logger.warning("Health: %s is %s (%s)", name, status.value, message)
    return component


async def run_health_check(engine: "NotificationEngine") -> HealthReport:
    """Check every component concurrently and collect them in fixed order."""
    components = await asyncio.gather(
        _timed("database", _database, engine),
        _timed("redis", _redis),
        _timed("channel_providers", _providers, engine),
        _timed("dispatcher", _dispatcher, engine),
        _timed("disk_space", _disk),
    )
    return HealthReport(components=list(components))
