"""Pure schedule arithmetic.

Everything here is a deterministic function of its arguments: no clock reads,
no store access. The scheduler feeds in the anchor (previous next_run) or the
current time and persists whatever comes back.

Rules (evaluated in the schedule's timezone, returned in UTC):
    daily:      anchor's local date + 1 day, at spec time
    weekly:     first spec weekday at least 7 days after the anchor's local date
    bi-weekly:  same, at least 14 days after
    monthly:    next month on day_of_month (or the anchor's day), clamped to
                the month's length
"""

import calendar
from datetime import date, datetime, timedelta, timezone

from models.stream import Frequency, ScheduleSpec


def utcnow() -> datetime:
    """Current UTC time truncated to whole seconds (store precision)."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def _at(day: date, spec: ScheduleSpec) -> datetime:
    local = datetime(day.year, day.month, day.day, spec.hour, spec.minute, tzinfo=spec.tz)
    return local.astimezone(timezone.utc)


def _clamped(year: int, month: int, day: int) -> date:
    return date(year, month, min(day, calendar.monthrange(year, month)[1]))


def _add_month(year: int, month: int) -> tuple[int, int]:
    return (year + 1, 1) if month == 12 else (year, month + 1)


def compute_next_run(spec: ScheduleSpec, anchor: datetime) -> datetime:
    """Next run strictly after `anchor`.

    Args:
        spec: Schedule to follow
        anchor: Start of the cycle that just ran (the previous next_run)

    Returns:
        Timezone-aware UTC datetime, always > anchor
    """
    if anchor.tzinfo is None:
        anchor = anchor.replace(tzinfo=timezone.utc)
    local = anchor.astimezone(spec.tz).date()

    if spec.frequency is Frequency.MONTHLY:
        year, month = _add_month(local.year, local.month)
        candidate = _at(_clamped(year, month, spec.day_of_month or local.day), spec)
        step = None
    else:
        earliest = local + timedelta(days=spec.frequency.period_days)
        if spec.day_of_week is not None:
            earliest += timedelta(days=(spec.day_of_week.index - earliest.weekday()) % 7)
        candidate = _at(earliest, spec)
        step = timedelta(days=spec.frequency.period_days)

    # DST gaps can pull a wall-clock time behind the anchor
    while candidate <= anchor:
        if step is None:
            next_local = candidate.astimezone(spec.tz).date()
            year, month = _add_month(next_local.year, next_local.month)
            candidate = _at(_clamped(year, month, spec.day_of_month or local.day), spec)
        else:
            candidate = _at(candidate.astimezone(spec.tz).date() + step, spec)
    return candidate


def first_run(spec: ScheduleSpec, now: datetime) -> datetime:
    """Earliest scheduled occurrence strictly after `now`.

    Used when a stream is created, re-scheduled or resumed, where there is no
    previous cycle to anchor on.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    today = now.astimezone(spec.tz).date()

    if spec.frequency is Frequency.MONTHLY:
        year, month = today.year, today.month
        while True:
            candidate = _at(_clamped(year, month, spec.day_of_month or today.day), spec)
            if candidate > now:
                return candidate
            year, month = _add_month(year, month)

    day = today
    if spec.day_of_week is not None:
        day += timedelta(days=(spec.day_of_week.index - day.weekday()) % 7)
        step = timedelta(days=7)
    else:
        step = timedelta(days=1)
    candidate = _at(day, spec)
    while candidate <= now:
        day += step
        candidate = _at(day, spec)
    return candidate


def backoff_delay(failures: int, base: float, cap: float) -> float:
    """Retry delay in seconds after `failures` consecutive failures.

    min(base * 2^(failures-1), cap); zero failures means no delay.
    """
    if failures <= 0:
        return 0.0
    return min(base * (2 ** (failures - 1)), cap)
