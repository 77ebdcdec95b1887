# recurrence.py
# Description: Occurrence arithmetic for recurring calendar events.
#
# Steps are taken on local wall-clock time in the owner's zone, so a 09:00 weekly event stays at 09:00
# across DST changes, and month/year steps clamp to the last day of a shorter month.
#
# Imports
import calendar
from datetime import datetime, timedelta, timezone, tzinfo
from typing import List, Optional, Tuple
#
########################################################################################################################
#
# Functions:

RECURRENCE_PATTERNS = ("daily", "weekly", "monthly", "yearly")


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    _, last_dom = calendar.monthrange(year, month)
    return value.replace(year=year, month=month, day=min(value.day, last_dom))


def step_wall_time(anchor: datetime, pattern: str, steps: int = 1) -> datetime:
    """Moves a naive wall-clock datetime `steps` pattern intervals from `anchor`."""
    if pattern == "daily":
        return anchor + timedelta(days=steps)
    if pattern == "weekly":
        return anchor + timedelta(weeks=steps)
    if pattern == "monthly":
        return _add_months(anchor, steps)
    if pattern == "yearly":
        return _add_months(anchor, 12 * steps)
    raise ValueError(f"Unknown recurrence pattern: {pattern}")


def next_occurrence(due_at: datetime, pattern: str, zone: tzinfo) -> datetime:
    """The occurrence after `due_at` (an aware instant), as an aware UTC datetime."""
    return occurrence_after(due_at, pattern, zone, 1)


def occurrence_after(due_at: datetime, pattern: str, zone: tzinfo, steps: int) -> datetime:
    # Steps count from `due_at`, so a catch-up walk from Jan 31 lands on Feb 29 then Mar 31. The scanner
    # stores each advanced date as the next anchor, so across ticks a month-end series settles on the
    # clamped day (Jan 31, Feb 29, Mar 29).
    anchor = due_at.astimezone(zone).replace(tzinfo=None)
    return step_wall_time(anchor, pattern, steps).replace(tzinfo=zone).astimezone(timezone.utc)


def occurrences_before(due_at: datetime, pattern: str, zone: tzinfo, until: datetime, limit: int,
                       since: Optional[datetime] = None) -> Tuple[List[datetime], datetime, int]:
    """
    Walks the series from `due_at` up to (but excluding) `until`.

    Returns:
        (occurrences, next_due, skipped): at most `limit` occurrences in [since, until) (from `due_at`
        when `since` is None), the first occurrence at or after `until`, and how many occurrences in
        that range were beyond the limit.
    """
    occurrences: List[datetime] = []
    skipped = 0
    current = due_at.astimezone(timezone.utc)
    steps = 0
    while current < until:
        if since is None or current >= since:
            if len(occurrences) < limit:
                occurrences.append(current)
            else:
                skipped += 1
        steps += 1
        current = occurrence_after(due_at, pattern, zone, steps)
    return occurrences, current, skipped

#
# End of recurrence.py
########################################################################################################################
