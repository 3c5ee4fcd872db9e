"""
recurrence.py — Occurrence expansion for recurring rules.

═══════════════════════════════════════════════════════════════════════════
CADENCES
═══════════════════════════════════════════════════════════════════════════

    Cadence    Step                          Extra fields
    ───────    ───────────────────────────   ─────────────────────────────
    daily      every ``interval`` days       —
    weekly     listed weekdays, then jump    days_of_week (ISO 1=Mon…7=Sun)
               ``interval`` weeks
    monthly    every ``interval`` months     day_of_month (1–31)

Example (weekly, interval=2, days=[1, 3, 5], anchor Monday 3 June 18:00):

    Mon 3  Wed 5  Fri 7  │ (skip week of 10th) │  Mon 17  Wed 19  Fri 21 …

Monthly rules keep their target day and clamp per month:
    day_of_month=31 → Jan 31, Feb 28 (29), Mar 31, Apr 30 …

All arithmetic happens on local dates in the rule's timezone and the
anchor's wall-clock time is re-applied each time, so a 07:00 rule stays at
07:00 local across DST changes (the UTC instant shifts by an hour).
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, timezone
from typing import Iterator, List, Optional, Sequence

from backend.notifier.core.errors import ValidationError
from backend.notifier.scheduling.models import Cadence, RecurringRule, load_timezone


def _add_months(year: int, month: int, months: int) -> tuple:
    index = (year * 12 + (month - 1)) + months
    return index // 12, index % 12 + 1


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def validate_pattern(
    cadence: Cadence,
    interval: int,
    days_of_week: Sequence[int],
    day_of_month: Optional[int],
) -> None:
    """Raise ValidationError for an impossible recurrence pattern."""
    if interval < 1:
        raise ValidationError("interval must be at least 1", field="interval")
    if cadence == Cadence.WEEKLY:
        bad = [d for d in days_of_week if not 1 <= int(d) <= 7]
        if bad:
            raise ValidationError(
                f"days_of_week must be ISO weekdays 1-7, got {bad}",
                field="days_of_week",
            )
    elif days_of_week:
        raise ValidationError("days_of_week only applies to weekly rules", field="days_of_week")
    if day_of_month is not None:
        if cadence != Cadence.MONTHLY:
            raise ValidationError("day_of_month only applies to monthly rules", field="day_of_month")
        if not 1 <= day_of_month <= 31:
            raise ValidationError("day_of_month must be between 1 and 31", field="day_of_month")


def iter_occurrences(
    cadence: Cadence,
    anchor: datetime,
    *,
    interval: int = 1,
    days_of_week: Sequence[int] = (),
    day_of_month: Optional[int] = None,
    tz_name: str = "UTC",
) -> Iterator[datetime]:
    """
    Yield UTC occurrences at or after ``anchor``, ascending, forever.

    Parameters
    ----------
    cadence : Cadence
    anchor : datetime
        Aware datetime; its local wall-clock time is the time of day of every
        occurrence and its local date starts the first cycle.
    interval : int
    days_of_week : sequence of int
        Weekly only; empty means the anchor's weekday.
    day_of_month : int | None
        Monthly only; None means the anchor's day.
    tz_name : str
        IANA timezone the pattern is evaluated in.
    """
    tz = load_timezone(tz_name)
    local = anchor.astimezone(tz)
    tod = local.time().replace(tzinfo=None)
    start_date = local.date()

    def at(d: date) -> datetime:
        return datetime.combine(d, tod, tzinfo=tz).astimezone(timezone.utc)

    if cadence == Cadence.DAILY:
        k = 0
        while True:
            occ = at(start_date + timedelta(days=k * interval))
            if occ >= anchor:
                yield occ
            k += 1

    elif cadence == Cadence.WEEKLY:
        weekdays: List[int] = sorted({int(d) for d in days_of_week}) or [start_date.isoweekday()]
        monday = start_date - timedelta(days=start_date.isoweekday() - 1)
        w = 0
        while True:
            week_start = monday + timedelta(weeks=w * interval)
            for wd in weekdays:
                occ = at(week_start + timedelta(days=wd - 1))
                if occ >= anchor:
                    yield occ
            w += 1

    elif cadence == Cadence.MONTHLY:
        target = day_of_month or start_date.day
        k = 0
        while True:
            year, month = _add_months(start_date.year, start_date.month, k * interval)
            occ = at(_clamped(year, month, target))
            if occ >= anchor:
                yield occ
            k += 1

    else:
        raise ValidationError(f"Unsupported cadence: {cadence}", field="cadence")


def _rule_occurrences(rule: RecurringRule, anchor: Optional[datetime] = None) -> Iterator[datetime]:
    return iter_occurrences(
        rule.cadence,
        anchor or rule.next_fire_at,
        interval=rule.interval,
        days_of_week=rule.days_of_week,
        day_of_month=rule.day_of_month,
        tz_name=rule.timezone,
    )


def first_on_or_after(rule: RecurringRule, not_before: datetime) -> datetime:
    """First occurrence of the rule's pattern at or after ``not_before``."""
    for occ in _rule_occurrences(rule):
        if occ >= not_before:
            return occ
    raise AssertionError("occurrence iterator is unbounded")


def next_after(rule: RecurringRule, after: datetime) -> datetime:
    """First occurrence strictly after ``after``."""
    for occ in _rule_occurrences(rule):
        if occ > after:
            return occ
    raise AssertionError("occurrence iterator is unbounded")


def due_occurrences(rule: RecurringRule, now: datetime, limit: int) -> List[datetime]:
    """Occurrences in ``[next_fire_at, now]``, oldest first, at most ``limit``."""
    due: List[datetime] = []
    for occ in _rule_occurrences(rule):
        if occ > now or len(due) >= limit:
            break
        due.append(occ)
    return due
