"""
Centralized datetime utilities for timezone-aware datetime handling.

Every time read in the engine goes through a ``FamilyClock`` so that the
family's local calendar decides what "today" and "weekend" mean, and so tests
can pin "now" by injecting ``now_fn``.
"""

from datetime import date, datetime, time, timezone
import math
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from family_screen_time.managers.errors import ValidationError

SATURDAY = 5
SUNDAY = 6


class DateTimeUtils:
    """Centralized datetime utilities with timezone awareness."""

    @staticmethod
    def utc_now() -> datetime:
        """
        Get current UTC datetime with timezone awareness.

        Returns:
            datetime: Current UTC datetime with timezone information
        """
        return datetime.now(timezone.utc)

    @staticmethod
    def ensure_timezone_aware(dt: datetime, default_tz: Optional[timezone] = None) -> datetime:
        """
        Ensure datetime is timezone-aware.

        Args:
            dt: Datetime that may be naive
            default_tz: Zone assumed for naive values, UTC when omitted

        Returns:
            datetime: Timezone-aware datetime
        """
        if dt.tzinfo is None:
            return dt.replace(tzinfo=default_tz or timezone.utc)
        return dt

    @staticmethod
    def to_utc(dt: datetime) -> datetime:
        return DateTimeUtils.ensure_timezone_aware(dt).astimezone(timezone.utc)

    @staticmethod
    def format_iso(dt: datetime) -> str:
        """Format an instant as an ISO-8601 UTC string ending in ``Z``."""
        return DateTimeUtils.to_utc(dt).isoformat().replace("+00:00", "Z")

    @staticmethod
    def parse_clock_time(value: str) -> time:
        """
        Parse an ``HH:mm`` clock string.

        Raises:
            ValueError: If the string is not a valid 24h clock time
        """
        hours, sep, minutes = value.strip().partition(":")
        if not sep or not hours.isdigit() or not minutes.isdigit() or len(minutes) != 2:
            raise ValueError(f"'{value}' is not an HH:mm clock time")
        return time(int(hours), int(minutes))


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positive values."""
    return int(math.floor(value + 0.5))


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes between two instants, halves rounded up."""
    seconds = (DateTimeUtils.to_utc(end) - DateTimeUtils.to_utc(start)).total_seconds()
    return round_half_up(seconds / 60.0)


class FamilyClock:
    """
    Clock and calendar adapter bound to one family's time zone.

    Args:
        tz_name: IANA time zone name, e.g. ``Europe/Berlin``
        now_fn: Source of the current instant; defaults to the system UTC clock
    """

    def __init__(self, tz_name: str = "UTC", now_fn: Optional[Callable[[], datetime]] = None):
        try:
            self.tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValidationError(
                f"Unknown time zone '{tz_name}'", field="timezone", value=tz_name, constraint="iana_zone"
            ) from exc
        self.tz_name = tz_name
        self._now_fn = now_fn or DateTimeUtils.utc_now

    def now(self) -> datetime:
        return DateTimeUtils.to_utc(self._now_fn())

    def local(self, instant: datetime) -> datetime:
        """Convert an instant to the family's wall-clock time."""
        return DateTimeUtils.to_utc(instant).astimezone(self.tz)

    def local_date(self, instant: datetime) -> date:
        return self.local(instant).date()

    def today(self) -> date:
        return self.local_date(self.now())

    @staticmethod
    def is_weekend(day: date) -> bool:
        return day.weekday() in (SATURDAY, SUNDAY)

    @staticmethod
    def minutes_between(start: datetime, end: datetime) -> int:
        return minutes_between(start, end)

    def with_timezone(self, tz_name: Optional[str]) -> "FamilyClock":
        """Same time source, different zone. Falls back to this clock's zone."""
        if not tz_name or tz_name == self.tz_name:
            return self
        return FamilyClock(tz_name, self._now_fn)
