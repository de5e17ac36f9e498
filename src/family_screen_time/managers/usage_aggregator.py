"""
Usage aggregation over a child's sessions.

Every function here is a pure function of the child's sessions and settings for
the requested day. Nothing is cached, so results can be recomputed whenever
family state is read.

Accounting rules:
    - used time sums ``duration`` of the day's sessions that count toward the
      total, which includes punishments and excludes bonuses
    - bonus earned sums ``bonusTimeAwarded`` of the day's bonus sessions
    - effective limit is the resolved daily total plus the bonus earned,
      clipped to the bonus cap when one is configured
"""

from datetime import date, datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from family_screen_time.config import settings
from family_screen_time.managers.errors import ValidationError
from family_screen_time.managers.limit_resolver import resolve_bonus_cap, resolve_limits
from family_screen_time.models.screen_time_models import (
    Child,
    DailyUsageSummary,
    HistoryDay,
    Session,
    SessionKind,
    SessionState,
    UsageHistory,
)
from family_screen_time.utils.datetime_utils import minutes_between, round_half_up

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MAX_HISTORY_DAYS = 366


def sessions_on(child: Child, day: date) -> List[Session]:
    return [s for s in child.sessions if s.date == day]


def _counted(sessions: Iterable[Session]) -> List[Session]:
    return [s for s in sessions if s.counts_toward_total]


def used_time(child: Child, day: date) -> int:
    return sum(s.duration for s in _counted(sessions_on(child, day)))


def bonus_earned(child: Child, day: date) -> int:
    return sum(
        s.bonus_time_awarded or 0 for s in sessions_on(child, day) if s.kind == SessionKind.BONUS
    )


def punishment_time(child: Child, day: date) -> int:
    return sum(s.duration for s in sessions_on(child, day) if s.kind == SessionKind.PUNISHMENT)


def effective_daily_limit(child: Child, day: date) -> int:
    bonus = bonus_earned(child, day)
    cap = resolve_bonus_cap(child)
    if cap is not None:
        bonus = min(bonus, cap)
    return resolve_limits(child, day).daily_total + bonus


def remaining_time(child: Child, day: date) -> int:
    return max(0, effective_daily_limit(child, day) - used_time(child, day))


def usage_percentage(child: Child, day: date) -> float:
    effective = effective_daily_limit(child, day)
    if effective <= 0:
        return 0.0
    return min(100.0, 100.0 * used_time(child, day) / effective)


def used_time_by_device(child: Child, day: date) -> Dict[str, int]:
    totals: Dict[str, int] = {}
    for s in _counted(sessions_on(child, day)):
        if s.device:
            totals[s.device] = totals.get(s.device, 0) + s.duration
    return totals


def used_time_by_app(child: Child, day: date) -> Dict[str, int]:
    totals: Dict[str, int] = {}
    for s in _counted(sessions_on(child, day)):
        if s.app:
            totals[s.app] = totals.get(s.app, 0) + s.duration
    return totals


def device_remaining(child: Child, day: date, device: str) -> Optional[int]:
    """Minutes left under the device cap, or None when the device has no cap."""
    cap = resolve_limits(child, day).per_device.get(device)
    if cap is None:
        return None
    return max(0, cap - used_time_by_device(child, day).get(device, 0))


def app_remaining(child: Child, day: date, app: str) -> Optional[int]:
    """Minutes left under the app cap, or None when the app has no cap."""
    cap = resolve_limits(child, day).per_app.get(app)
    if cap is None:
        return None
    return max(0, cap - used_time_by_app(child, day).get(app, 0))


def running_minutes(child: Child, day: date, now: datetime) -> int:
    """Elapsed minutes of the day's still-active sessions, up to ``now``."""
    return sum(
        max(0, minutes_between(s.time_started, now))
        for s in sessions_on(child, day)
        if s.state == SessionState.ACTIVE and s.time_started is not None
    )


def daily_summary(child: Child, day: date, now: Optional[datetime] = None, thresholds: List[int] = None) -> DailyUsageSummary:
    """
    Compute every usage metric for ``child`` on ``day``.

    Args:
        child: Child with sessions loaded
        day: Family-local calendar day
        now: Current instant, used for running sessions and warnings
        thresholds: Remaining-minute warning marks, defaults to the configured ones

    Returns:
        DailyUsageSummary: metrics plus limit source and warning state
    """
    limits = resolve_limits(child, day)
    used = used_time(child, day)
    effective = effective_daily_limit(child, day)
    remaining = max(0, effective - used)
    running = running_minutes(child, day, now) if now is not None else 0
    marks = settings.DEFAULT_WARNING_THRESHOLDS if thresholds is None else thresholds
    projected_remaining = max(0, remaining - running)

    by_device = used_time_by_device(child, day)
    by_app = used_time_by_app(child, day)

    return DailyUsageSummary(
        child_id=child.id,
        date=day,
        schedule=limits.schedule,
        limit_source=limits.source,
        daily_total=limits.daily_total,
        bonus_earned=bonus_earned(child, day),
        bonus_cap=resolve_bonus_cap(child),
        effective_daily_limit=effective,
        used_time=used,
        remaining_time=remaining,
        usage_percentage=round_half_up(usage_percentage(child, day)),
        punishment_time=punishment_time(child, day),
        used_time_by_device=by_device,
        used_time_by_app=by_app,
        device_remaining={d: max(0, cap - by_device.get(d, 0)) for d, cap in limits.per_device.items()},
        app_remaining={a: max(0, cap - by_app.get(a, 0)) for a, cap in limits.per_app.items()},
        active_sessions=sum(1 for s in sessions_on(child, day) if s.state == SessionState.ACTIVE),
        running_minutes=running,
        warnings_crossed=sorted((m for m in marks if projected_remaining <= m), reverse=True),
    )


def history(child: Child, start: date, end: date) -> UsageHistory:
    """Per-day usage for the inclusive range ``start``..``end``."""
    if end < start:
        raise ValidationError("History end date is before start date", field="end", value=end.isoformat())
    if (end - start).days >= MAX_HISTORY_DAYS:
        raise ValidationError(
            f"History range is limited to {MAX_HISTORY_DAYS} days", field="end", constraint="max_range"
        )
    days: List[HistoryDay] = []
    day = start
    while day <= end:
        day_sessions = sorted(
            sessions_on(child, day),
            key=lambda s: s.time_started or s.created_at or EPOCH,
        )
        days.append(
            HistoryDay(
                date=day,
                used_time=used_time(child, day),
                bonus_earned=bonus_earned(child, day),
                punishment_time=punishment_time(child, day),
                effective_daily_limit=effective_daily_limit(child, day),
                session_count=len(day_sessions),
                sessions=day_sessions,
            )
        )
        day += timedelta(days=1)

    total = sum(d.used_time for d in days)
    return UsageHistory(
        child_id=child.id,
        start=start,
        end=end,
        total_used=total,
        average_daily_use=round(total / len(days), 1) if days else 0.0,
        days=days,
    )
