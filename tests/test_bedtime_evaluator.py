"""Tests for rest-window evaluation."""

from datetime import datetime, time, timedelta, timezone

import pytest

from family_screen_time.managers.bedtime_evaluator import current_window, in_rest_window
from family_screen_time.models.screen_time_models import BedtimeRestrictions, BedtimeWindow, ChildSettings
from family_screen_time.utils.datetime_utils import FamilyClock
from screen_time_factories import child_with

UTC_CLOCK = FamilyClock("UTC")


def _child(weekday=None, weekend=None):
    return child_with([], ChildSettings(bedtime_restrictions=BedtimeRestrictions(weekday=weekday, weekend=weekend)))


def test_overnight_window_every_minute_of_a_weekday():
    child = _child(weekday=BedtimeWindow(bedtime="21:30", wake_time="07:00"))
    midnight = datetime(2024, 3, 6, 0, 0, tzinfo=timezone.utc)

    for minute in range(24 * 60):
        instant = midnight + timedelta(minutes=minute)
        t = instant.time()
        expected = t >= time(21, 30) or t < time(7, 0)
        assert in_rest_window(child, instant, UTC_CLOCK) == expected, instant


@pytest.mark.parametrize(
    "hour,minute,inside",
    [(21, 29, False), (21, 30, True), (23, 59, True), (0, 0, True), (6, 59, True), (7, 0, False)],
)
def test_overnight_window_edges(hour, minute, inside):
    child = _child(weekday=BedtimeWindow(bedtime="21:30", wake_time="07:00"))
    instant = datetime(2024, 3, 6, hour, minute, 30, tzinfo=timezone.utc)
    assert in_rest_window(child, instant, UTC_CLOCK) is inside


def test_same_day_window_is_inclusive():
    child = _child(weekday=BedtimeWindow(bedtime="13:00", wake_time="15:00"))
    assert in_rest_window(child, datetime(2024, 3, 6, 13, 0, tzinfo=timezone.utc), UTC_CLOCK)
    assert in_rest_window(child, datetime(2024, 3, 6, 15, 0, tzinfo=timezone.utc), UTC_CLOCK)
    assert not in_rest_window(child, datetime(2024, 3, 6, 15, 1, tzinfo=timezone.utc), UTC_CLOCK)


def test_schedule_follows_local_calendar_day():
    child = _child(weekday=BedtimeWindow(bedtime="21:30", wake_time="07:00"))
    friday_night = datetime(2024, 3, 8, 23, 0, tzinfo=timezone.utc)
    saturday_early = datetime(2024, 3, 9, 1, 0, tzinfo=timezone.utc)

    assert in_rest_window(child, friday_night, UTC_CLOCK)
    # Saturday has no weekend window configured
    assert not in_rest_window(child, saturday_early, UTC_CLOCK)


def test_window_uses_family_zone():
    child = _child(weekday=BedtimeWindow(bedtime="22:00", wake_time="06:00"))
    berlin = FamilyClock("Europe/Berlin")
    # 21:15 UTC is 22:15 in Berlin in March (CET)
    instant = datetime(2024, 3, 6, 21, 15, tzinfo=timezone.utc)
    assert not in_rest_window(child, instant, UTC_CLOCK)
    window = current_window(child, instant, berlin)
    assert window is not None
    assert window.bedtime == "22:00"


def test_no_window_configured():
    assert current_window(_child(), datetime(2024, 3, 6, 23, 0, tzinfo=timezone.utc), UTC_CLOCK) is None
