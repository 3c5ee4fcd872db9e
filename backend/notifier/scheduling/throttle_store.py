"""
throttle_store.py — Persistence for per-(recipient, channel) throttle windows.

Writes are compare-and-set on ``version``: the rate limiter reads a state,
decides, and writes back only if nobody else wrote in between. A lost race
returns False and the limiter simply re-reads.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from backend.notifier.core.database import session_scope
from backend.notifier.scheduling.models import Channel, ThrottleState
from backend.notifier.scheduling.tables import ThrottleStateRow

logger = logging.getLogger(__name__)


def _row_to_state(row: ThrottleStateRow) -> ThrottleState:
    return ThrottleState(
        recipient_id=row.recipient_id,
        channel=Channel(row.channel),
        count=row.count,
        window_start=row.window_start,
        window_seconds=row.window_seconds,
        limit=row.limit,
        version=row.version,
    )


class ThrottleStore:
    """SQL-backed throttle windows."""

    def __init__(self, session_factory: sessionmaker):
        self._sessions = session_factory

    def get(self, recipient_id: str, channel: Channel) -> Optional[ThrottleState]:
        with session_scope(self._sessions) as session:
            row = session.get(ThrottleStateRow, (recipient_id, channel.value))
            return _row_to_state(row) if row else None

    def compare_and_set(self, state: ThrottleState, *, expected_version: int) -> bool:
        """
        Write ``state`` if the stored version still equals ``expected_version``.

        ``expected_version == 0`` means "no row yet": the insert fails on the
        primary key if another writer created it first.
        """
        if expected_version == 0:
            try:
                with session_scope(self._sessions) as session:
                    session.add(ThrottleStateRow(
                        recipient_id=state.recipient_id,
                        channel=state.channel.value,
                        count=state.count,
                        window_start=state.window_start,
                        window_seconds=state.window_seconds,
                        limit=state.limit,
                        version=1,
                    ))
            except IntegrityError:
                return False
            state.version = 1
            return True

        with session_scope(self._sessions) as session:
            result = session.execute(
                update(ThrottleStateRow)
                .where(
                    ThrottleStateRow.recipient_id == state.recipient_id,
                    ThrottleStateRow.channel == state.channel.value,
                    ThrottleStateRow.version == expected_version,
                )
                .values(
                    count=state.count,
                    window_start=state.window_start,
                    window_seconds=state.window_seconds,
                    limit=state.limit,
                    version=expected_version + 1,
                )
            )
            ok = result.rowcount == 1
        if ok:
            state.version = expected_version + 1
        return ok

    def delete_expired(self, now: datetime) -> int:
        """
        Drop rows whose window has ended.

        The window length is per row, so expiry is checked in Python on the
        (small) candidate set rather than with backend-specific date math.
        """
        removed = 0
        with session_scope(self._sessions) as session:
            rows = session.execute(
                select(ThrottleStateRow).where(ThrottleStateRow.window_start <= now)
            ).scalars().all()
            for row in rows:
                state = _row_to_state(row)
                if not state.is_expired(now):
                    continue
                result = session.execute(
                    delete(ThrottleStateRow).where(
                        ThrottleStateRow.recipient_id == row.recipient_id,
                        ThrottleStateRow.channel == row.channel,
                        ThrottleStateRow.version == row.version,
                    )
                )
                removed += result.rowcount
        if removed:
            logger.debug("Removed %d expired throttle windows", removed)
        return removed

    def active_by_channel(self, now: datetime) -> Dict[str, int]:
        """Number of recipients with an unexpired window, per channel."""
        counts = {c.value: 0 for c in Channel}
        with session_scope(self._sessions) as session:
            for row in session.execute(select(ThrottleStateRow)).scalars():
                if not _row_to_state(row).is_expired(now):
                    counts[row.channel] = counts.get(row.channel, 0) + 1
        return counts

    def count(self) -> int:
        with session_scope(self._sessions) as session:
            return session.execute(
                select(func.count()).select_from(ThrottleStateRow)
            ).scalar_one()
