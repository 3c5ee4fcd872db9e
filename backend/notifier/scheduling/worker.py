"""
worker.py — Delivery worker pool: one claimed message → one JobResult.

═══════════════════════════════════════════════════════════════════════════
DELIVERY FLOW (per job)
═══════════════════════════════════════════════════════════════════════════

    ┌──────────────────────────┐
    │  channel = channels[i]   │◄────────────────────────────┐
    └────────────┬─────────────┘                             │
                 ▼                                           │
    ┌──────────────────────────┐                             │
    │  Lock (recipient, chan)  │  status no longer pending → stop
    │  Re-read status          │                             │
    └────────────┬─────────────┘                             │
                 ▼                                           │
    ┌──────────────────────────┐  no provider / bad address  │
    │  Resolve address         │────── permanent ───────────►│ i += 1
    └────────────┬─────────────┘                             │
                 ▼                                           │
    ┌──────────────────────────┐  throttled                  │
    │  RateLimiter.admit       │────► reschedule at window end (DEFERRED)
    └────────────┬─────────────┘  limit 0 → permanent ──────►│
                 ▼                                           │
    ┌──────────────────────────┐  success → SENT             │
    │  render + provider.send  │  transient, attempts < max → RETRY (backoff)
    │  (hard timeout)          │  transient, attempts = max ─┤
    └──────────────────────────┘  permanent ─────────────────┘

    i == len(channels) → FAILED (all channels exhausted)

Every attempt, successful or not, is recorded through the tracker before
the message's status is moved.

A provider call that outlives the send timeout keeps its (recipient, channel)
key taken until it returns; the next job for that key waits for it.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

from backend.notifier.channels.base import ChannelProvider
from backend.notifier.core.errors import (
    ChannelDisabledError,
    ExhaustedError,
    NotifierError,
    ProviderError,
    ThrottledError,
)
from backend.notifier.scheduling.models import (
    Channel,
    DeliveryAttempt,
    DeliveryJob,
    DeliveryOutcome,
    ErrorClass,
    JobOutcome,
    JobResult,
    MessageStatus,
    Recipient,
    _now,
)
from backend.notifier.scheduling.rate_limiter import KeyHold, RateLimiter
from backend.notifier.scheduling.recipients import RecipientDirectory
from backend.notifier.scheduling.retry import RetryManager
from backend.notifier.scheduling.schedule_store import ScheduleStore
from backend.notifier.scheduling.templates import render
from backend.notifier.scheduling.tracker import DeliveryTracker

logger = logging.getLogger(__name__)


class _Failure(Exception):
    """Internal: one channel attempt failed."""

    def __init__(self, error_class: ErrorClass, code: Optional[str], message: str):
        super().__init__(message)
        self.error_class = error_class
        self.code = code
        self.message = message


class DeliveryWorkerPool:
    """
    Bounded pool of delivery workers.

    Parameters
    ----------
    store : ScheduleStore
    directory : RecipientDirectory
    providers : dict
        Channel → ChannelProvider.
    rate_limiter : RateLimiter
    retry_manager : RetryManager
    tracker : DeliveryTracker
    pool_size : int
        Concurrent deliveries.
    send_timeout : float
        Hard limit on one provider call, in seconds.
    clock : callable
        Returns the current aware UTC time.
    """

    def __init__(
        self,
        store: ScheduleStore,
        directory: RecipientDirectory,
        providers: Dict[Channel, ChannelProvider],
        rate_limiter: RateLimiter,
        retry_manager: RetryManager,
        tracker: DeliveryTracker,
        *,
        pool_size: int = 8,
        send_timeout: float = 10.0,
        clock: Callable[[], datetime] = _now,
    ):
        self._store = store
        self._directory = directory
        self._providers = dict(providers)
        self._rate_limiter = rate_limiter
        self._retry = retry_manager
        self._tracker = tracker
        self.send_timeout = send_timeout
        self._clock = clock
        self._pool = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="delivery")
        self._calls = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="provider")

    # ── Pool ──

    def run(self, jobs: Sequence[DeliveryJob]) -> List[JobResult]:
        """
        Deliver ``jobs`` concurrently and wait for all of them.

        A job that blows up (e.g. the database went away) is logged and
        reported as RETRY; its claim lease expires and a later tick picks
        the message up again.
        """
        futures: List[Future] = [self._pool.submit(self.send, job) for job in jobs]
        results: List[JobResult] = []
        for job, future in zip(jobs, futures):
            try:
                results.append(future.result())
            except Exception as exc:
                logger.exception(
                    "Worker crashed on %s", job.message.message_id,
                    extra={"message_id": job.message.message_id},
                )
                results.append(JobResult(job.message.message_id, JobOutcome.RETRY, error=str(exc)))
        return results

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
        self._calls.shutdown(wait=False)

    # ── One job ──

    def send(self, job: DeliveryJob) -> JobResult:
        message = job.message
        channels = list(job.channels)
        index = message.channel_index
        attempts = message.attempts
        total = message.total_attempts
        last_error = message.last_error
        made: List[DeliveryAttempt] = []
        recipient = self._directory.get(message.recipient_id)

        while index < len(channels):
            channel = channels[index]
            with self._rate_limiter.hold(message.recipient_id, channel) as hold:
                current = self._store.get(message.message_id)
                if current is None or current.status != MessageStatus.PENDING:
                    status = current.status if current else MessageStatus.CANCELLED
                    logger.info(
                        "Skipping %s: status is %s", message.message_id, status.value,
                        extra={"message_id": message.message_id},
                    )
                    return JobResult(message.message_id, JobOutcome(status.value), made)

                try:
                    provider, address = self._resolve(recipient, channel)
                    try:
                        self._rate_limiter.acquire(message.recipient_id, channel, self._clock())
                    except ChannelDisabledError as exc:
                        raise _Failure(ErrorClass.PERMANENT, "channel_disabled", exc.message) from exc
                    except ThrottledError as throttled:
                        self._store.update_delivery_state(
                            message.message_id,
                            schedule_at=throttled.retry_at,
                            channel_index=index,
                            attempts=attempts,
                            total_attempts=total,
                        )
                        return JobResult(
                            message.message_id, JobOutcome.DEFERRED, made,
                            next_attempt_at=throttled.retry_at,
                        )
                    attempt = self._attempt(message.message_id, message.recipient_id, channel,
                                            provider, address, message.template_id, message.data,
                                            made, hold)
                except _Failure as failure:
                    attempt = self._tracker.record(DeliveryAttempt(
                        message_id=message.message_id,
                        recipient_id=message.recipient_id,
                        channel=channel,
                        outcome=DeliveryOutcome.FAILED,
                        timestamp=self._timestamp(made),
                        error_class=failure.error_class,
                        error_code=failure.code,
                        error_message=failure.message,
                    ))
                    made.append(attempt)
                    total += 1
                    attempts += 1
                    last_error = f"{channel.value}: {failure.message}"

                    if failure.error_class == ErrorClass.TRANSIENT and self._retry.should_retry(
                        attempts, message.max_attempts
                    ):
                        next_at = self._retry.schedule_retry(
                            message, channel, attempts, self._clock(),
                            channel_index=index,
                            total_attempts=total,
                            last_error=last_error,
                        )
                        return JobResult(
                            message.message_id, JobOutcome.RETRY, made,
                            next_attempt_at=next_at, error=last_error,
                        )

                    logger.warning(
                        "Falling back from %s for %s (%s)",
                        channel.value, message.message_id, failure.message,
                        extra={
                            "message_id": message.message_id,
                            "channel": channel.value,
                            "error_code": failure.code,
                        },
                    )
                    index += 1
                    attempts = 0
                    continue

            made.append(attempt)
            total += 1
            self._store.mark_status(
                message.message_id, MessageStatus.SENT,
                channel_index=index, total_attempts=total,
            )
            logger.info(
                "Delivered %s via %s after %d attempt(s)",
                message.message_id, channel.value, total,
                extra={"message_id": message.message_id, "channel": channel.value},
            )
            return JobResult(message.message_id, JobOutcome.SENT, made)

        exhausted = ExhaustedError(message.message_id, [c.value for c in channels])
        self._store.mark_status(
            message.message_id, MessageStatus.FAILED,
            last_error=last_error or exhausted.message,
            channel_index=index,
            total_attempts=total,
        )
        logger.error(
            "%s (last error: %s)", exhausted.message, last_error,
            extra={"message_id": message.message_id},
        )
        return JobResult(message.message_id, JobOutcome.FAILED, made, error=last_error)

    # ── Helpers ──

    def _timestamp(self, made: List[DeliveryAttempt]) -> datetime:
        """Clock time, nudged past the previous attempt of this job so folding order is stable."""
        ts = self._clock()
        if made and ts <= made[-1].timestamp:
            ts = made[-1].timestamp + timedelta(microseconds=1)
        return ts

    def _resolve(self, recipient: Optional[Recipient], channel: Channel):
        provider = self._providers.get(channel)
        if provider is None:
            raise _Failure(ErrorClass.PERMANENT, "no_provider", "no provider configured")
        address = recipient.address_for(channel) if recipient else None
        if not address:
            raise _Failure(ErrorClass.PERMANENT, "no_address", "recipient has no address")
        if not provider.validate_address(address):
            raise _Failure(ErrorClass.PERMANENT, "invalid_address", f"invalid address '{address}'")
        return provider, address

    def _attempt(
        self,
        message_id: str,
        recipient_id: str,
        channel: Channel,
        provider: ChannelProvider,
        address: str,
        template_id: str,
        data: dict,
        made: List[DeliveryAttempt],
        hold: KeyHold,
    ) -> DeliveryAttempt:
        """
        Render and send once; raises _Failure on any failure.

        A call that outlives ``send_timeout`` cannot be interrupted; ``hold``
        then stays taken until it returns, so the next job for this key
        waits instead of sending alongside it.
        """
        try:
            content = render(template_id, data, channel)
        except (NotifierError, ValueError) as exc:
            raise _Failure(ErrorClass.PERMANENT, "render_failed", str(exc)) from exc

        started = time.perf_counter()
        future = self._calls.submit(provider.send, address, content)
        try:
            result = future.result(timeout=self.send_timeout)
        except FutureTimeout as exc:
            if not future.cancel():
                hold.release_when_done(future)
                future.add_done_callback(
                    lambda f: _log_late_call(f, message_id, channel, self.send_timeout)
                )
            raise _Failure(
                ErrorClass.TRANSIENT, "timeout",
                f"provider call exceeded {self.send_timeout:.1f}s",
            ) from exc
        except ProviderError as exc:
            error_class = ErrorClass.TRANSIENT if exc.transient else ErrorClass.PERMANENT
            raise _Failure(error_class, exc.provider_code, exc.message) from exc
        except Exception as exc:
            logger.exception("Provider %s raised unexpectedly", channel.value)
            raise _Failure(ErrorClass.TRANSIENT, "provider_exception", str(exc)) from exc
        latency_ms = (time.perf_counter() - started) * 1000.0

        if result.outcome == DeliveryOutcome.FAILED:
            raise _Failure(ErrorClass.PERMANENT, "provider_rejected", "provider reported failure")

        return self._tracker.record(DeliveryAttempt(
            message_id=message_id,
            recipient_id=recipient_id,
            channel=channel,
            outcome=DeliveryOutcome.SENT,
            timestamp=self._timestamp(made),
            latency_ms=latency_ms,
            provider_message_id=result.provider_message_id,
        ))


def _log_late_call(future: Future, message_id: str, channel: Channel, timeout: float) -> None:
    if future.cancelled():
        return
    if future.exception() is None:
        # The retry scheduled for this message may now duplicate the send
        logger.warning(
            "Provider call for %s via %s completed after the %.1fs timeout",
            message_id, channel.value, timeout,
            extra={"message_id": message_id, "channel": channel.value},
        )
    else:
        logger.info(
            "Timed-out provider call for %s via %s failed: %s",
            message_id, channel.value, future.exception(),
            extra={"message_id": message_id, "channel": channel.value},
        )
