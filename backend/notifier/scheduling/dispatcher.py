"""
dispatcher.py — The periodic tick that turns due schedule entries into deliveries.

═══════════════════════════════════════════════════════════════════════════
ONE TICK
═══════════════════════════════════════════════════════════════════════════

    1. Materialize rules     due rule occurrences → ScheduledMessages
                             (idempotency key = "{rule_id}:{occurrence}")
    2. Expire throttles      drop ended rate-limit windows
    3. Claim                 due + pending + unleased messages, oldest first,
                             each taken with a version compare-and-set lease
    4. Route                 recipient preference → channel list / deferral
    5. Deliver               hand claimed jobs to the worker pool, wait
    6. Report                TickReport with per-outcome counts

Only one tick runs at a time per dispatcher: an overlapping call returns
immediately with ``overlapped=True``. Across processes the claim lease
keeps two dispatchers off the same message; a crashed tick's leases simply
expire and the messages become due again.

A failure on one message or one rule is logged and skipped; it never
aborts the rest of the tick.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from backend.notifier.scheduling.models import (
    DeliveryJob,
    JobOutcome,
    JobResult,
    MessageStatus,
    RecurringRule,
    ScheduledMessage,
    _now,
)
from backend.notifier.scheduling.recurrence import due_occurrences, next_after
from backend.notifier.scheduling.router import ChannelRouter
from backend.notifier.scheduling.schedule_store import ScheduleStore
from backend.notifier.scheduling.throttle_store import ThrottleStore
from backend.notifier.scheduling.worker import DeliveryWorkerPool

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    """What one tick did."""
    started_at: Optional[datetime] = None
    materialized: int = 0
    dispatched: int = 0
    sent: int = 0
    failed: int = 0
    retried: int = 0
    deferred: int = 0
    cancelled: int = 0
    skipped: int = 0
    expired_throttles: int = 0
    overlapped: bool = False
    stopped: bool = False
    duration_ms: float = 0.0
    results: List[JobResult] = field(default_factory=list)

    def count(self, result: JobResult) -> None:
        if result.outcome == JobOutcome.SENT:
            self.sent += 1
        elif result.outcome == JobOutcome.FAILED:
            self.failed += 1
        elif result.outcome == JobOutcome.RETRY:
            self.retried += 1
        elif result.outcome == JobOutcome.DEFERRED:
            self.deferred += 1
        elif result.outcome == JobOutcome.CANCELLED:
            self.cancelled += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "materialized": self.materialized,
            "dispatched": self.dispatched,
            "sent": self.sent,
            "failed": self.failed,
            "retried": self.retried,
            "deferred": self.deferred,
            "cancelled": self.cancelled,
            "skipped": self.skipped,
            "expired_throttles": self.expired_throttles,
            "overlapped": self.overlapped,
            "stopped": self.stopped,
            "duration_ms": round(self.duration_ms, 1),
        }


class Dispatcher:
    """Periodic scan of the schedule store."""

    def __init__(
        self,
        store: ScheduleStore,
        router: ChannelRouter,
        worker_pool: DeliveryWorkerPool,
        throttle_store: ThrottleStore,
        *,
        clock: Callable[[], datetime] = _now,
        batch_limit: int = 200,
        rule_catchup_limit: int = 31,
        lease_seconds: int = 300,
        default_max_attempts: int = 3,
    ):
        self._store = store
        self._router = router
        self._workers = worker_pool
        self._throttles = throttle_store
        self._clock = clock
        self.batch_limit = batch_limit
        self.rule_catchup_limit = rule_catchup_limit
        self.lease = timedelta(seconds=lease_seconds)
        self.default_max_attempts = default_max_attempts
        self._tick_lock = threading.Lock()
        self._stopped = threading.Event()
        self.last_tick_at: Optional[datetime] = None
        self.last_report: Optional[TickReport] = None

    # ═══════════════════════════════════════════════════════════════════
    # Tick
    # ═══════════════════════════════════════════════════════════════════

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """
        Run one dispatch pass.

        Parameters
        ----------
        now : datetime | None
            Aware UTC "current time"; defaults to the dispatcher clock.

        Returns
        -------
        TickReport
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Previous tick still running, skipping this one")
            return TickReport(started_at=now, overlapped=True)

        try:
            if self._stopped.is_set():
                logger.debug("Dispatcher stopped, not ticking")
                return TickReport(started_at=now, stopped=True)

            now = now or self._clock()
            started = self._clock()
            report = TickReport(started_at=now)

            report.materialized = self.materialize_rules(now)

            try:
                report.expired_throttles = self._throttles.delete_expired(now)
            except Exception:
                logger.exception("Throttle cleanup failed")

            jobs = self._claim_and_route(now, report)
            report.dispatched = len(jobs)
            if jobs:
                for result in self._workers.run(jobs):
                    report.count(result)
                    report.results.append(result)

            report.duration_ms = (self._clock() - started).total_seconds() * 1000.0
            self.last_tick_at = now
            self.last_report = report

            if report.materialized or report.dispatched or report.deferred or report.cancelled:
                logger.info(
                    "Tick: %d materialized, %d dispatched → %d sent, %d retry, "
                    "%d deferred, %d failed, %d cancelled",
                    report.materialized, report.dispatched, report.sent, report.retried,
                    report.deferred, report.failed, report.cancelled,
                )
            return report
        finally:
            self._tick_lock.release()

    # ── Rules ──

    def materialize_rules(self, now: datetime) -> int:
        """Create messages for every due rule occurrence; returns how many were new."""
        created = 0
        for rule in self._store.due_rules(now, limit=self.batch_limit):
            try:
                created += self._materialize(rule, now)
            except Exception:
                logger.exception(
                    "Materializing rule %s failed", rule.rule_id,
                    extra={"rule_id": rule.rule_id},
                )
        return created

    def _materialize(self, rule: RecurringRule, now: datetime) -> int:
        occurrences = due_occurrences(rule, now, self.rule_catchup_limit)
        created = 0
        for occurrence in occurrences:
            message = ScheduledMessage(
                recipient_id=rule.recipient_id,
                notification_type=rule.notification_type,
                template_id=rule.template_id,
                data=dict(rule.data),
                priority=rule.priority,
                schedule_at=occurrence,
                max_attempts=self.default_max_attempts,
                rule_id=rule.rule_id,
                idempotency_key=f"{rule.rule_id}:{occurrence.isoformat()}",
                created_at=now,
                updated_at=now,
            )
            if self._store.insert_materialized(message):
                created += 1

        following = next_after(rule, now)
        if len(occurrences) >= self.rule_catchup_limit:
            logger.warning(
                "Rule %s: catch-up capped at %d occurrences, resuming at %s",
                rule.rule_id, self.rule_catchup_limit, following.isoformat(),
                extra={"rule_id": rule.rule_id},
            )
        advanced = self._store.advance_rule(
            rule.rule_id,
            expected_version=rule.version,
            next_fire_at=following,
            last_fired_at=occurrences[-1] if occurrences else None,
        )
        if not advanced:
            logger.debug("Rule %s advanced concurrently", rule.rule_id)
        return created

    # ── Messages ──

    def _claim_and_route(self, now: datetime, report: TickReport) -> List[DeliveryJob]:
        jobs: List[DeliveryJob] = []
        for message in self._store.due_messages(now, limit=self.batch_limit):
            try:
                job = self._prepare(message, now, report)
            except Exception:
                logger.exception(
                    "Preparing %s failed", message.message_id,
                    extra={"message_id": message.message_id},
                )
                continue
            if job is not None:
                jobs.append(job)
        return jobs

    def _prepare(
        self,
        message: ScheduledMessage,
        now: datetime,
        report: TickReport,
    ) -> Optional[DeliveryJob]:
        claimed = self._store.claim(
            message.message_id,
            expected_version=message.version,
            lease_until=now + self.lease,
        )
        if not claimed:
            report.skipped += 1
            return None
        message.version += 1

        decision = self._router.route(
            message.recipient_id,
            message.notification_type,
            now,
            priority=message.priority,
            snapshot=message.channels or None,
        )

        if decision.deferred:
            self._store.update_delivery_state(message.message_id, schedule_at=decision.defer_until)
            report.deferred += 1
            return None

        if not decision.channels:
            if decision.reason == "type_disabled":
                self._store.mark_status(
                    message.message_id, MessageStatus.CANCELLED,
                    last_error="notification type disabled by recipient",
                )
                report.cancelled += 1
            else:
                self._store.mark_status(
                    message.message_id, MessageStatus.FAILED,
                    last_error="no provider available for any preferred channel",
                )
                report.failed += 1
            return None

        if message.total_attempts == 0:
            # First dispatch freezes the fallback order for every later retry
            if decision.channels != message.channels:
                self._store.update_delivery_state(
                    message.message_id, channels=decision.channels, release=False,
                )
                message.channels = list(decision.channels)
            channels = list(decision.channels)
        else:
            channels = list(message.channels)

        return DeliveryJob(message=message, channels=channels, now=now)

    # ═══════════════════════════════════════════════════════════════════
    # Loop
    # ═══════════════════════════════════════════════════════════════════

    def stop(self, timeout: Optional[float] = None) -> bool:
        """
        Refuse further ticks and wait for a running one to finish.

        Returns False when the running tick is still going after
        ``timeout`` seconds.
        """
        self._stopped.set()
        if not self._tick_lock.acquire(timeout=-1 if timeout is None else timeout):
            return False
        self._tick_lock.release()
        return True

    async def run_forever(self, interval_seconds: float = 60.0) -> None:
        """
        Tick every ``interval_seconds`` until cancelled.

        Ticks run in a worker thread so the event loop stays responsive.
        """
        sleep_s = max(0.5, float(interval_seconds))
        logger.info("Dispatcher loop started (every %.1fs)", sleep_s)
        try:
            while True:
                try:
                    await asyncio.to_thread(self.tick)
                except Exception:
                    logger.exception("Dispatcher tick failed")
                await asyncio.sleep(sleep_s)
        finally:
            logger.info("Dispatcher loop stopped")
