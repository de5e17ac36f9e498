"""
Rest-window (bedtime) evaluation.

The weekday or weekend window is chosen by the family-local calendar day of the
instant being checked. An overnight window entered on Friday night is therefore
judged against the weekend schedule once the local clock passes midnight into
Saturday.
"""

from datetime import datetime
from typing import Optional

from family_screen_time.managers.limit_resolver import schedule_for
from family_screen_time.models.screen_time_models import BedtimeWindow, Child
from family_screen_time.utils.datetime_utils import FamilyClock


def current_window(child: Child, instant: datetime, clock: FamilyClock) -> Optional[BedtimeWindow]:
    """Return the window ``instant`` falls inside, or None."""
    local = clock.local(instant)
    window = child.settings.bedtime_restrictions.for_schedule(schedule_for(local.date()))
    if window is None:
        return None
    return window if window.contains(local.time()) else None


def in_rest_window(child: Child, instant: datetime, clock: FamilyClock) -> bool:
    return current_window(child, instant, clock) is not None
