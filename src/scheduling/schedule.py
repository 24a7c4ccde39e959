"""
Schedule Calculator (src/scheduling/schedule.py)

Pure functions that turn a template's frequency + Schedule into concrete
UTC timestamps:

  next_run()         → first slot strictly after a timestamp
  previous_run()     → latest slot at or before a timestamp
  period_for()       → the [start, end) period a generation at `now` covers
  on_demand_period() → the [start, end) period an on-demand run covers
  upcoming_reports() → active templates ordered by next generation
  comparison_window() → the window a period is compared against

Wall-clock arithmetic happens in the schedule's IANA timezone, so "08:00"
stays 08:00 local across DST changes. Day-of-week uses 0 = Sunday.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.core.errors import ScheduleError
from src.reports.report_config import ReportTemplate, Schedule

DEFAULT_QUARTER_ANCHOR = 1  # quarters start Jan/Apr/Jul/Oct unless anchored

# Sentinel for "never auto-due" (on_demand templates).
NEVER = datetime.max.replace(tzinfo=timezone.utc)

_ONE_DAY = timedelta(days=1)
_ONE_WEEK = timedelta(days=7)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ScheduleError(f"Unknown timezone '{name}'") from exc


def _parse_time(text: str) -> time:
    try:
        hour, minute = (int(part) for part in text.split(":"))
        return time(hour, minute)
    except (TypeError, ValueError) as exc:
        raise ScheduleError(f"Invalid schedule time '{text}' (expected HH:MM)") from exc


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def _at(day: date, at: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, at, tzinfo=tz)


def _month_slot(year: int, month: int, day_of_month: int, at: time, tz: ZoneInfo) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return _at(date(year, month, min(day_of_month, last_day)), at, tz)


def _add_months(year: int, month: int, months: int) -> tuple[int, int]:
    index = year * 12 + (month - 1) + months
    return index // 12, index % 12 + 1


def _sunday_based_weekday(day: date) -> int:
    return (day.weekday() + 1) % 7


def _require(value: int | None, what: str, frequency: str) -> int:
    if value is None:
        raise ScheduleError(f"{frequency} schedule requires {what}")
    return value


def _month_step(frequency: str) -> int:
    return 3 if frequency == "quarterly" else 1


def _quarter_offset(month: int, anchor: int) -> int:
    return (month - anchor) % 3


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def next_run(
    frequency: str,
    schedule: Schedule,
    from_ts: datetime,
    anchor_month: int | None = None,
) -> datetime:
    """Return the first scheduled slot strictly after ``from_ts`` (in UTC).

    ``on_demand`` templates are never auto-due and return ``NEVER``.
    If ``from_ts`` is far in the past or future, whole periods are skipped
    until the result is strictly later than ``from_ts``.

    Raises:
        ScheduleError: unknown frequency/timezone, bad time, or a missing
            day_of_week / day_of_month for the frequency.
    """
    if frequency == "on_demand":
        return NEVER

    from_ts = _aware(from_ts)
    tz = _zone(schedule.timezone)
    at = _parse_time(schedule.time)
    local = from_ts.astimezone(tz)

    if frequency == "daily":
        day = local.date()
        candidate = _at(day, at, tz)
        while candidate <= from_ts:
            day += _ONE_DAY
            candidate = _at(day, at, tz)

    elif frequency == "weekly":
        dow = _require(schedule.day_of_week, "day_of_week", frequency)
        day = local.date() + timedelta(days=(dow - _sunday_based_weekday(local.date())) % 7)
        candidate = _at(day, at, tz)
        while candidate <= from_ts:
            day += _ONE_WEEK
            candidate = _at(day, at, tz)

    elif frequency in ("monthly", "quarterly"):
        dom = _require(schedule.day_of_month, "day_of_month", frequency)
        step = _month_step(frequency)
        year, month = local.year, local.month
        if frequency == "quarterly":
            anchor = schedule.anchor_month or anchor_month or DEFAULT_QUARTER_ANCHOR
            offset = _quarter_offset(month, anchor)
            if offset:
                year, month = _add_months(year, month, 3 - offset)
        candidate = _month_slot(year, month, dom, at, tz)
        while candidate <= from_ts:
            year, month = _add_months(year, month, step)
            candidate = _month_slot(year, month, dom, at, tz)

    else:
        raise ScheduleError(f"Unknown frequency '{frequency}'")

    return candidate.astimezone(timezone.utc)


def previous_run(
    frequency: str,
    schedule: Schedule,
    at_ts: datetime,
    anchor_month: int | None = None,
) -> datetime | None:
    """Return the latest scheduled slot at or before ``at_ts`` (in UTC).

    Returns None for ``on_demand`` templates, which have no slots.
    """
    if frequency == "on_demand":
        return None

    at_ts = _aware(at_ts)
    tz = _zone(schedule.timezone)
    at = _parse_time(schedule.time)
    local = at_ts.astimezone(tz)

    if frequency == "daily":
        day = local.date()
        candidate = _at(day, at, tz)
        while candidate > at_ts:
            day -= _ONE_DAY
            candidate = _at(day, at, tz)

    elif frequency == "weekly":
        dow = _require(schedule.day_of_week, "day_of_week", frequency)
        day = local.date() - timedelta(days=(_sunday_based_weekday(local.date()) - dow) % 7)
        candidate = _at(day, at, tz)
        while candidate > at_ts:
            day -= _ONE_WEEK
            candidate = _at(day, at, tz)

    elif frequency in ("monthly", "quarterly"):
        dom = _require(schedule.day_of_month, "day_of_month", frequency)
        step = _month_step(frequency)
        year, month = local.year, local.month
        if frequency == "quarterly":
            anchor = schedule.anchor_month or anchor_month or DEFAULT_QUARTER_ANCHOR
            year, month = _add_months(year, month, -_quarter_offset(month, anchor))
        candidate = _month_slot(year, month, dom, at, tz)
        while candidate > at_ts:
            year, month = _add_months(year, month, -step)
            candidate = _month_slot(year, month, dom, at, tz)

    else:
        raise ScheduleError(f"Unknown frequency '{frequency}'")

    return candidate.astimezone(timezone.utc)


def template_anchor_month(template: ReportTemplate) -> int | None:
    """Anchor month for quarterly schedules: explicit, else the creation month."""
    if template.schedule.anchor_month:
        return template.schedule.anchor_month
    if template.created_at is None:
        return None
    return template.created_at.astimezone(_zone(template.schedule.timezone)).month


def next_run_for(template: ReportTemplate, from_ts: datetime) -> datetime:
    """``next_run`` for a template, using its own anchor month."""
    return next_run(
        template.frequency, template.schedule, from_ts, template_anchor_month(template)
    )


def period_for(template: ReportTemplate, now: datetime) -> tuple[datetime, datetime]:
    """Return the [start, end) period a generation at ``now`` covers.

    For scheduled templates the end is the latest slot at or before ``now``
    and the start is the slot before that, so the same due period always
    maps to the same pair regardless of how late the scheduler runs.
    On-demand templates use on_demand_period().
    """
    now = _aware(now)
    if template.frequency == "on_demand":
        return on_demand_period(template, now)

    anchor = template_anchor_month(template)
    end = previous_run(template.frequency, template.schedule, now, anchor)
    start = previous_run(
        template.frequency, template.schedule, end - timedelta(microseconds=1), anchor
    )
    return start, end


def on_demand_period(template: ReportTemplate, now: datetime) -> tuple[datetime, datetime]:
    """Return the [start, end) period an on-demand run at ``now`` covers.

    The period runs from the template's last generation up to ``now``, or
    covers the last day when there is no earlier generation before ``now``.
    """
    now = _aware(now)
    start = template.last_generated
    if start is None or start >= now:
        start = now - _ONE_DAY
    return start, now


# ---------------------------------------------------------------------------
# Upcoming reports
# ---------------------------------------------------------------------------

@dataclass
class UpcomingReport:
    template: ReportTemplate
    next_run: datetime
    time_until: str


def format_time_until(delta: timedelta) -> str:
    """Humanise the time left before a run: '3 days', '4h 12m', '25m' or 'overdue'."""
    seconds = delta.total_seconds()
    if seconds < 0:
        return "overdue"
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    if hours > 24:
        days = hours // 24
        return f"{days} day{'s' if days != 1 else ''}"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def upcoming_reports(templates: Iterable[ReportTemplate], now: datetime) -> list[UpcomingReport]:
    """Active, auto-scheduled templates sorted by their next generation time."""
    now = _aware(now)
    upcoming = [
        UpcomingReport(
            template=t,
            next_run=t.next_generation,
            time_until=format_time_until(t.next_generation - now),
        )
        for t in templates
        if t.is_active and t.next_generation is not None and t.next_generation != NEVER
    ]
    return sorted(upcoming, key=lambda u: u.next_run)


# ---------------------------------------------------------------------------
# Comparison windows
# ---------------------------------------------------------------------------

def shift_years(ts: datetime, years: int) -> datetime:
    """Move ``ts`` by whole years; Feb 29 lands on Feb 28 in non-leap years."""
    try:
        return ts.replace(year=ts.year + years)
    except ValueError:
        return ts.replace(year=ts.year + years, day=28)


def comparison_window(
    basis: str, start: datetime, end: datetime
) -> tuple[datetime, datetime] | None:
    """Return the window ``[start, end)`` is compared against.

    ``previous_period`` is the equally long window immediately before,
    ``same_period_last_year`` the same window one year earlier. Any other
    basis (``none``, ``current``) has no comparison window.
    """
    if basis == "previous_period":
        return start - (end - start), start
    if basis == "same_period_last_year":
        return shift_years(start, -1), shift_years(end, -1)
    return None
