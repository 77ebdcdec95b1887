# test_recurrence.py
# Description: Occurrence arithmetic for recurring events.
#
# Imports
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo
#
# 3rd-party Libraries
import pytest
from hypothesis import given, strategies as st
#
# Local Imports
from putil_Server_API.app.core.Triggers.recurrence import (
    next_occurrence,
    occurrence_after,
    occurrences_before,
    step_wall_time,
)
#
########################################################################################################################

UTC = timezone.utc
BERLIN = ZoneInfo("Europe/Berlin")


@pytest.mark.parametrize("pattern, expected", [
    ("daily", datetime(2024, 1, 2, 9, 0)),
    ("weekly", datetime(2024, 1, 8, 9, 0)),
    ("monthly", datetime(2024, 2, 1, 9, 0)),
    ("yearly", datetime(2025, 1, 1, 9, 0)),
])
def test_single_step(pattern, expected):
    assert step_wall_time(datetime(2024, 1, 1, 9, 0), pattern) == expected


def test_unknown_pattern():
    with pytest.raises(ValueError):
        step_wall_time(datetime(2024, 1, 1), "fortnightly")


def test_month_end_clamps_to_shorter_month():
    jan_31 = datetime(2024, 1, 31, 9, 0, tzinfo=UTC)
    assert next_occurrence(jan_31, "monthly", UTC) == datetime(2024, 2, 29, 9, 0, tzinfo=UTC)
    # Counting from the original anchor, March gets its 31st back.
    assert occurrence_after(jan_31, "monthly", UTC, 2) == datetime(2024, 3, 31, 9, 0, tzinfo=UTC)
    assert occurrence_after(datetime(2023, 1, 31, tzinfo=UTC), "monthly", UTC, 1) == datetime(2023, 2, 28, tzinfo=UTC)


def test_month_end_settles_on_clamped_day_when_restarted_from_each_step():
    # Each tick re-anchors on the stored date, so the 29th carries forward.
    feb_29 = next_occurrence(datetime(2024, 1, 31, 9, 0, tzinfo=UTC), "monthly", UTC)
    assert next_occurrence(feb_29, "monthly", UTC) == datetime(2024, 3, 29, 9, 0, tzinfo=UTC)


def test_leap_day_yearly():
    leap = datetime(2024, 2, 29, 8, 0, tzinfo=UTC)
    assert next_occurrence(leap, "yearly", UTC) == datetime(2025, 2, 28, 8, 0, tzinfo=UTC)
    assert occurrence_after(leap, "yearly", UTC, 4) == datetime(2028, 2, 29, 8, 0, tzinfo=UTC)


def test_weekly_keeps_local_wall_time_across_dst():
    # 09:00 Berlin on the Monday before the spring change (31 March) is 08:00 UTC; a week later it is 07:00 UTC.
    before = datetime(2024, 3, 25, 8, 0, tzinfo=UTC)
    after = next_occurrence(before, "weekly", BERLIN)
    assert after == datetime(2024, 4, 1, 7, 0, tzinfo=UTC)
    assert after.astimezone(BERLIN).hour == 9


def test_occurrences_before_window():
    start = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
    occurrences, next_due, skipped = occurrences_before(start, "daily", UTC, start + timedelta(days=3), limit=10)
    assert occurrences == [start, start + timedelta(days=1), start + timedelta(days=2)]
    assert next_due == start + timedelta(days=3)
    assert skipped == 0


def test_occurrences_before_respects_limit():
    start = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
    occurrences, next_due, skipped = occurrences_before(start, "daily", UTC, start + timedelta(days=10), limit=3)
    assert len(occurrences) == 3
    assert skipped == 7
    assert next_due == start + timedelta(days=10)


def test_occurrences_before_only_counts_from_since():
    start = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)
    since = datetime(2024, 3, 1, 0, 0, tzinfo=UTC)
    until = datetime(2024, 3, 2, 0, 0, tzinfo=UTC)
    occurrences, next_due, skipped = occurrences_before(start, "daily", UTC, until, limit=1, since=since)
    assert occurrences == [datetime(2024, 3, 1, 12, 0, tzinfo=UTC)]
    assert skipped == 0
    assert next_due == datetime(2024, 3, 2, 12, 0, tzinfo=UTC)


def test_due_at_or_after_until_yields_nothing():
    start = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)
    occurrences, next_due, skipped = occurrences_before(start, "weekly", UTC, start, limit=5)
    assert occurrences == []
    assert next_due == start
    assert skipped == 0


@given(
    day=st.integers(min_value=1, max_value=31),
    steps=st.integers(min_value=1, max_value=60),
)
def test_monthly_never_overflows_into_next_month(day, steps):
    anchor = datetime(2023, 1, day, 10, 30)
    stepped = step_wall_time(anchor, "monthly", steps)
    expected_month = (anchor.month - 1 + steps) % 12 + 1
    assert stepped.month == expected_month
    assert stepped.day <= day
    assert (stepped.hour, stepped.minute) == (10, 30)

#
# End of test_recurrence.py
########################################################################################################################
